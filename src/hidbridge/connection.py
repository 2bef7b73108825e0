"""Exclusive interface claims and the connections that hold them.

``ClaimRegistry`` is the lock shared by the read and write paths: one
``threading.Lock`` per (device identity, interface).  A ``Connection``
takes the registry lock *before* asking the platform to claim the
interface, so a read worker and a write call can never both believe
they own the same interface.  Acquiring a held claim blocks up to the
claim timeout and then fails with ``InterfaceBusy``.

Usage::

    conn = Connection(backend, device, 0, registry, holder="writer")
    with conn:                  # open + claim
        conn.handle.bulk_write(0x01, b"Hello", 1000)
                                # release + close, exactly once
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Dict, Optional, Tuple

from .core.errors import ClaimRefused, ConnectionUnavailable, InterfaceBusy
from .core.models import Device
from .usb_backend import UsbBackend, UsbConnection

log = logging.getLogger(__name__)

ClaimKey = Tuple[Tuple[int, int], int]


class ClaimRegistry:
    """Per-interface mutual exclusion plus claim/release instrumentation."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[ClaimKey, threading.Lock] = {}
        self._holders: Dict[ClaimKey, str] = {}
        self.claims: Counter = Counter()
        self.releases: Counter = Counter()

    @staticmethod
    def key_for(device: Device, interface_index: int) -> ClaimKey:
        return (device.identity, interface_index)

    def _lock_for(self, key: ClaimKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def acquire(self, key: ClaimKey, holder: str, timeout: float) -> None:
        """Take the claim for *key*, waiting up to *timeout* seconds.

        Raises:
            InterfaceBusy: another holder kept it for the whole wait.
        """
        lock = self._lock_for(key)
        if not lock.acquire(timeout=max(timeout, 0)):
            with self._guard:
                current = self._holders.get(key, "?")
            raise InterfaceBusy(
                f"interface {key[1]} busy (held by {current}) after {timeout:.2f}s")
        with self._guard:
            self._holders[key] = holder
            self.claims[key] += 1

    def release(self, key: ClaimKey, holder: str) -> None:
        """Give the claim back.  Only the current holder may release."""
        with self._guard:
            if self._holders.get(key) != holder:
                log.warning("Ignoring release of interface %d by %s (holder: %s)",
                            key[1], holder, self._holders.get(key))
                return
            del self._holders[key]
            self.releases[key] += 1
            lock = self._locks[key]
        lock.release()

    def holder(self, key: ClaimKey) -> Optional[str]:
        with self._guard:
            return self._holders.get(key)

    def outstanding(self) -> int:
        """Claims taken and not yet released, across all interfaces."""
        with self._guard:
            return sum(self.claims.values()) - sum(self.releases.values())


class Connection:
    """An open handle plus (at most) one interface claim.

    The handle may outlive several claim/release cycles (read workers
    release between polls so writers get a turn), but ``close()`` runs
    its release-and-close sequence exactly once.
    """

    def __init__(self, backend: UsbBackend, device: Device, interface_index: int,
                 registry: ClaimRegistry, holder: str, claim_timeout: float = 1.0):
        self._backend = backend
        self.device = device
        self.interface_index = interface_index
        self._registry = registry
        self.holder = holder
        self.claim_timeout = claim_timeout
        self._key = ClaimRegistry.key_for(device, interface_index)
        self._handle: Optional[UsbConnection] = None
        self._claimed = False
        self._closed = False
        self._state_lock = threading.Lock()

    @property
    def handle(self) -> UsbConnection:
        if self._handle is None:
            raise ConnectionUnavailable("Connection not open")
        return self._handle

    @property
    def is_open(self) -> bool:
        return self._handle is not None and not self._closed

    @property
    def claimed(self) -> bool:
        return self._claimed

    def open(self) -> 'Connection':
        """Open the platform handle (PermissionDenied / ConnectionUnavailable propagate)."""
        if self._closed:
            raise ConnectionUnavailable("Connection already closed")
        if self._handle is None:
            self._handle = self._backend.open(self.device)
            log.debug("%s: opened %s", self.holder, self.device.vid_pid)
        return self

    def claim(self, timeout: Optional[float] = None) -> None:
        """Registry lock first, then the platform claim."""
        if self._claimed:
            return
        handle = self.handle
        self._registry.acquire(self._key, self.holder,
                               self.claim_timeout if timeout is None else timeout)
        try:
            if not handle.claim_interface(self.interface_index, exclusive=True):
                raise ClaimRefused(
                    f"platform refused claim on interface {self.interface_index}")
        except BaseException:
            self._registry.release(self._key, self.holder)
            raise
        self._claimed = True

    def release(self) -> None:
        """Release the claim if held; a second call is a no-op."""
        with self._state_lock:
            if not self._claimed:
                return
            self._claimed = False
        try:
            if self._handle is not None:
                self._handle.release_interface(self.interface_index)
        finally:
            self._registry.release(self._key, self.holder)

    def close(self) -> None:
        """Release (if claimed) and close the handle, exactly once."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.release()
        finally:
            if self._handle is not None:
                self._handle.close()
                log.debug("%s: closed %s", self.holder, self.device.vid_pid)

    def __enter__(self) -> 'Connection':
        self.open()
        try:
            self.claim()
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, *exc) -> None:
        self.close()
