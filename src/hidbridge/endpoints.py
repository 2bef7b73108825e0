"""Bulk endpoint classification for a claimed interface."""
from __future__ import annotations

import logging
from typing import Iterable, List, Tuple

from .core.models import Device, Direction, EndpointDescriptor
from .usb_backend import UsbBackend

log = logging.getLogger(__name__)

EndpointSets = Tuple[List[EndpointDescriptor], List[EndpointDescriptor]]


def partition_bulk(endpoints: Iterable[EndpointDescriptor]) -> EndpointSets:
    """Split *endpoints* into (bulk_in, bulk_out), dropping non-bulk ones.

    Order inside each list follows the input order; any number of
    endpoints per direction is accepted.
    """
    bulk_in: List[EndpointDescriptor] = []
    bulk_out: List[EndpointDescriptor] = []
    for ep in endpoints:
        if not ep.is_bulk:
            continue
        if ep.direction is Direction.IN:
            bulk_in.append(ep)
        else:
            bulk_out.append(ep)
    return bulk_in, bulk_out


class EndpointClassifier:
    """Reads an interface's endpoint descriptors and buckets the bulk ones."""

    def __init__(self, backend: UsbBackend):
        self._backend = backend

    def classify(self, device: Device, interface_index: int = 0) -> EndpointSets:
        endpoints = self._backend.list_endpoints(device, interface_index)
        bulk_in, bulk_out = partition_bulk(endpoints)
        log.debug("Interface %d of %s: %d endpoint(s), %d bulk IN, %d bulk OUT",
                  interface_index, device.vid_pid, len(endpoints),
                  len(bulk_in), len(bulk_out))
        for ep in endpoints:
            log.debug("  %s", ep.describe())
        return bulk_in, bulk_out
