"""Permission gate: one-shot, asynchronous access grants per device.

The platform answers a permission request later, possibly on another
thread.  Each request is modelled as a ``concurrent.futures.Future``
resolving to a ``PermissionOutcome``; the Bridge attaches a done-callback
and applies the outcome under its own state lock.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Dict, Set, Tuple

from .core.models import Device, PermissionOutcome
from .usb_backend import UsbBackend

log = logging.getLogger(__name__)


class PermissionGate:
    """Tracks granted devices and outstanding requests.

    Idempotent: a device already granted resolves immediately with
    GRANTED, and a device with a request still in flight gets that same
    future back instead of a second platform request.  A DENIED outcome
    is final for the request; nothing is retried automatically.
    """

    def __init__(self, backend: UsbBackend):
        self._backend = backend
        self._lock = threading.Lock()
        self._granted: Set[Tuple[int, int]] = set()
        self._pending: Dict[Tuple[int, int], Future] = {}
        self.requests_issued = 0

    def request_access(self, device: Device) -> Future:
        key = device.identity
        with self._lock:
            if key in self._granted:
                done: Future = Future()
                done.set_result(PermissionOutcome.GRANTED)
                return done
            pending = self._pending.get(key)
            if pending is not None and not pending.done():
                log.debug("Permission request for %s already pending", device.vid_pid)
                return pending
            future: Future = Future()
            self._pending[key] = future
            self.requests_issued += 1

        log.debug("Requesting permission for %s", device.vid_pid)
        try:
            self._backend.request_permission(
                device, lambda outcome: self._complete(key, future, outcome))
        except Exception as e:
            log.error("Permission request for %s failed: %s", device.vid_pid, e)
            self._complete(key, future, PermissionOutcome.DENIED)
        return future

    def _complete(self, key: Tuple[int, int], future: Future,
                  outcome: PermissionOutcome) -> None:
        with self._lock:
            # only the first answer for a request gets through
            if self._pending.get(key) is not future:
                return
            del self._pending[key]
            if outcome is PermissionOutcome.GRANTED:
                self._granted.add(key)
        # resolved outside the lock: done-callbacks may call back into the gate
        future.set_result(outcome)

    def is_granted(self, device: Device) -> bool:
        with self._lock:
            return device.identity in self._granted

    def revoke(self, device: Device) -> None:
        """Forget a grant (device detached); the next request goes to the platform."""
        with self._lock:
            self._granted.discard(device.identity)
