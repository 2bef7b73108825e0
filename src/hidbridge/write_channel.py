"""
On-demand writes to every bulk-out endpoint of the bound device.

Each call owns a short-lived connection:

    open → claim (shared ClaimRegistry, waits for a reader's poll to end)
         → one bulk write of the whole frame per bulk-out endpoint
         → release → close   (always, even when a write fails)

Writes carry an explicit timeout (``write_timeout_ms``); a transfer that
does not complete in time is recorded as ``WriteTimeout`` for that
endpoint instead of blocking the caller forever.  A failure on one
endpoint never stops the attempt on the others.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from .conf import BridgeConfig
from .connection import ClaimRegistry, Connection
from .core.errors import (
    BridgeError,
    ConnectionUnavailable,
    PermissionDenied,
    TransientRaceFailure,
    WriteTimeout,
)
from .core.models import Device, EndpointDescriptor, WriteResult
from .diagnostics import Reporter, compose_hex
from .usb_backend import UsbBackend

log = logging.getLogger(__name__)


class WriteChannel:
    """Writes caller-supplied frames as-is (no header, no padding)."""

    def __init__(self, backend: UsbBackend, registry: ClaimRegistry,
                 config: BridgeConfig, reporter: Optional[Reporter] = None):
        self._backend = backend
        self._registry = registry
        self._config = config
        self._report = reporter.child(log) if reporter else Reporter(log)

    def write(self, device: Optional[Device], endpoints: Iterable[EndpointDescriptor],
              data: bytes) -> WriteResult:
        """Write *data* to every endpoint in *endpoints*.

        Raises:
            ConnectionUnavailable: no bound device, or open/claim failed
                (PermissionDenied and TransientRaceFailure are folded in).
        """
        if device is None:
            raise ConnectionUnavailable("No device bound")

        payload = bytes(data)
        result = WriteResult(frame_length=len(payload))
        conn = Connection(self._backend, device, self._config.interface_index,
                          self._registry, holder="writer",
                          claim_timeout=self._config.claim_timeout_s)
        try:
            conn.open()
            conn.claim()
        except (PermissionDenied, TransientRaceFailure) as e:
            conn.close()
            raise ConnectionUnavailable(str(e)) from e
        except ConnectionUnavailable:
            conn.close()
            raise

        try:
            result.connected = True
            for ep in endpoints:
                self._write_endpoint(conn, ep, payload, result)
        finally:
            conn.close()

        if not result.per_endpoint:
            self._report.warning("No bulk OUT endpoint to write to")
        return result

    def _write_endpoint(self, conn: Connection, ep: EndpointDescriptor,
                        payload: bytes, result: WriteResult) -> None:
        try:
            written = conn.handle.bulk_write(
                ep.address, payload, self._config.write_timeout_ms)
        except WriteTimeout as e:
            result.per_endpoint[ep.address] = None
            result.errors[ep.address] = str(e)
            self._report.warning("EP 0x%02x: write timed out after %d ms",
                                 ep.address, self._config.write_timeout_ms)
            return
        except BridgeError as e:
            result.per_endpoint[ep.address] = None
            result.errors[ep.address] = str(e)
            self._report.warning("EP 0x%02x: error happened while writing data. No ACK (%s)",
                                 ep.address, e)
            return

        if written < 0:
            result.per_endpoint[ep.address] = None
            result.errors[ep.address] = f"transport returned {written}"
            self._report.warning("EP 0x%02x: error happened while writing data. No ACK",
                                 ep.address)
            return

        result.per_endpoint[ep.address] = written
        if written != len(payload):
            result.errors[ep.address] = f"short write ({written}/{len(payload)})"
        self._report.debug("EP 0x%02x: written %d bytes to the device. Data written: %s",
                           ep.address, written, compose_hex(payload))
