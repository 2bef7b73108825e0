"""
Bridge — the one object a host application talks to.

Observer pattern, like the device protocols: the host sets
``on_log_message`` (every diagnostic line, as text) and optionally
``on_state_changed`` (BridgeState transitions).

Usage::

    from hidbridge import Bridge, PyUsbBackend

    bridge = Bridge(PyUsbBackend(), vendor_id=1155, product_id=22336)
    bridge.on_log_message = print
    if bridge.open():                 # locate + classify + ask permission
        bridge.start_reading()        # one reader per bulk-in endpoint
        bridge.write(b"Hello")        # every bulk-out endpoint
        while bridge.has_data():
            print(bridge.pop_data())
    bridge.close()

All state mutations (including the asynchronous permission outcome)
happen under one ``threading.RLock``.  Log lines and state changes raised
while it is held are queued and handed to the observers once it is
released, so a callback may call back into the bridge from any thread.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Any, Callable, Deque, Iterator, List, Optional, Tuple

from .conf import BridgeConfig
from .connection import ClaimRegistry
from .core.errors import ConnectionUnavailable
from .core.models import (
    BridgeState,
    Device,
    EndpointDescriptor,
    Frame,
    PermissionOutcome,
    WriteResult,
)
from .device_locator import DeviceLocator
from .diagnostics import Reporter
from .endpoints import EndpointClassifier
from .permission import PermissionGate
from .read_worker import ReadWorker, SweepReader, _ReaderBase
from .received_queue import ReceivedQueue
from .usb_backend import UsbBackend
from .write_channel import WriteChannel

log = logging.getLogger(__name__)

READ_MODES = ("per_endpoint", "sweep")


class Bridge:
    """Binds to exactly one (vendor_id, product_id) device at a time."""

    def __init__(self, backend: UsbBackend, vendor_id: Optional[int] = None,
                 product_id: Optional[int] = None,
                 config: Optional[BridgeConfig] = None):
        config = config or BridgeConfig()
        if vendor_id is not None:
            config.vendor_id = vendor_id
        if product_id is not None:
            config.product_id = product_id
        self.config = config

        # Observer callbacks
        self.on_log_message: Optional[Callable[[str], None]] = None
        self.on_state_changed: Optional[Callable[[BridgeState], None]] = None

        self._backend = backend
        self._report = Reporter(log, self._forward_log)
        self._lock = threading.RLock()
        self._owner = threading.local()
        self._outbox: Deque[Tuple[str, Any]] = deque()
        self._state = BridgeState.IDLE

        self.locator = DeviceLocator(backend)
        self.classifier = EndpointClassifier(backend)
        self.permissions = PermissionGate(backend)
        self.claims = ClaimRegistry()
        self.queue = ReceivedQueue(config.queue_capacity, config.overflow_policy)
        self._writer = WriteChannel(backend, self.claims, config, self._report)

        self._device: Optional[Device] = None
        self._bulk_in: List[EndpointDescriptor] = []
        self._bulk_out: List[EndpointDescriptor] = []
        self._permission: Optional[Future] = None
        self._permission_device: Optional[Device] = None
        self._permission_applied = False
        self._workers: List[_ReaderBase] = []
        self._stop_event = threading.Event()

    # ── Observer plumbing ────────────────────────────────────────────

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the state lock; queued notifications go out after the outermost release."""
        try:
            with self._lock:
                self._owner.depth = getattr(self._owner, "depth", 0) + 1
                try:
                    yield
                finally:
                    self._owner.depth -= 1
        finally:
            if not getattr(self._owner, "depth", 0):
                self._flush()

    def _notify(self, kind: str, value: Any) -> None:
        self._outbox.append((kind, value))
        if not getattr(self._owner, "depth", 0):
            self._flush()

    def _flush(self) -> None:
        while True:
            try:
                kind, value = self._outbox.popleft()
            except IndexError:
                return
            callback = self.on_log_message if kind == "log" else self.on_state_changed
            if callback is None:
                continue
            try:
                callback(value)
            except Exception:
                log.exception("%s observer raised", kind)

    def _forward_log(self, text: str) -> None:
        self._notify("log", text)

    def _set_state(self, state: BridgeState) -> None:
        with self._locked():
            if state is self._state:
                return
            log.debug("Bridge: %s → %s", self._state.name, state.name)
            self._state = state
            self._notify("state", state)

    # ── Read-only views ──────────────────────────────────────────────

    @property
    def state(self) -> BridgeState:
        with self._locked():
            return self._state

    @property
    def device(self) -> Optional[Device]:
        with self._locked():
            return self._device

    @property
    def bulk_in(self) -> List[EndpointDescriptor]:
        with self._locked():
            return list(self._bulk_in)

    @property
    def bulk_out(self) -> List[EndpointDescriptor]:
        with self._locked():
            return list(self._bulk_out)

    @property
    def permission(self) -> Optional[Future]:
        """Future of the latest permission request, if any."""
        with self._locked():
            return self._permission

    @property
    def workers(self) -> List[_ReaderBase]:
        with self._locked():
            return list(self._workers)

    @property
    def is_reading(self) -> bool:
        with self._locked():
            return any(w.is_alive() for w in self._workers)

    # ── Open / permission ────────────────────────────────────────────

    def open(self) -> bool:
        """Locate → classify → request permission.

        Returns True iff the device was located; the permission outcome
        arrives later through ``permission``.  Calling again on an
        authorized device, or while readers run, is a no-op returning True.
        """
        vid, pid = self.config.vendor_id, self.config.product_id
        with self._locked():
            if self._device is not None and self._state in (
                    BridgeState.AUTHORIZED, BridgeState.CONNECTED,
                    BridgeState.READING, BridgeState.PERMISSION_REQUESTED):
                log.debug("open(): %s already %s", self._device.vid_pid,
                          self._state.name)
                return True
            if not self._stop_event.is_set() and any(w.is_alive() for w in self._workers):
                # the readers re-acquire a lost device themselves
                log.debug("open(): readers running, device %s",
                          "bound" if self._device else "being re-located")
                return True

            device = self.locator.locate(vid, pid)
            if device is None:
                self._report.warning("Cannot find the device. Did you forget to plug it?")
                self._report.warning("\t I search for VendorId: %d and ProductId: %d", vid, pid)
                self._device = None
                self._bulk_in, self._bulk_out = [], []
                self._set_state(BridgeState.IDLE)
                return False

            self._bind(device)
            self._report.info("Found the device: %s [%s]", device.display_name, device.vid_pid)
            future = self.permissions.request_access(device)
            self._permission = future
            self._permission_device = device
            self._permission_applied = False
            if not future.done():
                self._set_state(BridgeState.PERMISSION_REQUESTED)

        future.add_done_callback(self._on_permission)
        return True

    def _bind(self, device: Device) -> None:
        self._device = device
        self._bulk_in, self._bulk_out = self.classifier.classify(
            device, self.config.interface_index)
        self._set_state(BridgeState.LOCATED)
        for ep in self._bulk_in + self._bulk_out:
            self._report.debug("  %s", ep.describe())
        if not self._bulk_in and not self._bulk_out:
            self._report.warning("Interface %d of %s has no bulk endpoints",
                                 self.config.interface_index, device.vid_pid)

    def _on_permission(self, future: Future) -> None:
        """Apply a permission outcome once, under the state lock."""
        outcome = future.result()
        with self._locked():
            if future is not self._permission or self._permission_applied:
                return  # superseded by a newer request, or already applied
            self._permission_applied = True
            device = self._permission_device
            if self._device is None or self._device.identity != device.identity:
                return  # rebound to another device meanwhile
            if outcome is PermissionOutcome.GRANTED:
                self._report.info("Permission granted for %s", device.vid_pid)
                if self._state in (BridgeState.LOCATED, BridgeState.PERMISSION_REQUESTED):
                    self._set_state(BridgeState.AUTHORIZED)
            else:
                self._report.warning("Permission denied for the device %s", device.vid_pid)
                if self._state is BridgeState.PERMISSION_REQUESTED:
                    self._set_state(BridgeState.LOCATED)

    def wait_for_permission(self, timeout: Optional[float] = None) -> Optional[PermissionOutcome]:
        """Block until the pending permission request resolves (None on timeout)."""
        future = self.permission
        if future is None:
            return None
        try:
            outcome = future.result(timeout)
        except FutureTimeout:
            return None
        # waiters can wake before the done-callback has run on the resolving thread
        self._on_permission(future)
        return outcome

    # ── Device provider for readers ──────────────────────────────────

    def _current_device(self) -> Optional[Device]:
        """Bound device, re-locating it first if it was lost."""
        with self._locked():
            if self._device is not None:
                return self._device
            device = self.locator.locate(self.config.vendor_id, self.config.product_id)
            if device is not None:
                self._device = device
                self._report.info("Re-acquired the device %s", device.vid_pid)
            return device

    def _device_lost(self, device: Device) -> None:
        with self._locked():
            if self._device is not None and self._device.identity == device.identity:
                self._device = None
            self.permissions.revoke(device)

    # ── Reading ──────────────────────────────────────────────────────

    def start_reading(self, mode: str = "per_endpoint") -> bool:
        """Spawn the readers. No-op (False) without a device or while readers live."""
        if mode not in READ_MODES:
            raise ValueError(f"Unknown read mode {mode!r} (use one of {READ_MODES})")
        with self._locked():
            if self._device is None:
                self._report.warning("No device to read from")
                return False
            if any(w.is_alive() for w in self._workers):
                log.debug("start_reading(): readers already running")
                return False
            if not self._bulk_in:
                self._report.warning("No bulk IN endpoint to read from")
                return False

            self._stop_event = threading.Event()
            common = dict(
                backend=self._backend, registry=self.claims, queue=self.queue,
                config=self.config, stop_event=self._stop_event,
                device_provider=self._current_device,
                on_device_lost=self._device_lost, on_exit=self._worker_exited,
                reporter=self._report,
            )
            if mode == "sweep":
                self._workers = [SweepReader(self._bulk_in,
                                             is_attached=self.locator.is_attached,
                                             **common)]
            else:
                self._workers = [ReadWorker(ep, **common) for ep in self._bulk_in]
            self._set_state(BridgeState.READING)
            for worker in self._workers:
                worker.start()
        self._report.info("Started %d reader(s) (%s)", len(self._workers), mode)
        return True

    def stop_reading(self, join: bool = False, timeout: Optional[float] = None) -> None:
        """Signal every reader to stop; with *join*, also wait for them."""
        with self._locked():
            workers = list(self._workers)
            if not workers:
                return
            if any(w.is_alive() for w in workers):
                self._set_state(BridgeState.STOPPING)
            self._stop_event.set()
        if join:
            for worker in workers:
                worker.join(timeout)
        self._settle_after_readers()

    def _worker_exited(self, worker: _ReaderBase) -> None:
        if worker.error is not None:
            self._report.error("%s ended with %s", worker.name, worker.error)
        self._settle_after_readers()

    def _settle_after_readers(self) -> None:
        with self._locked():
            if any(w.is_alive() and not w.finished.is_set() for w in self._workers):
                return
            if self._state in (BridgeState.READING, BridgeState.STOPPING):
                device = self._device
                if device is not None and self.permissions.is_granted(device):
                    self._set_state(BridgeState.AUTHORIZED)
                else:
                    self._set_state(BridgeState.LOCATED if device else BridgeState.IDLE)

    # ── Writing ──────────────────────────────────────────────────────

    def write(self, data: bytes) -> bool:
        """Write *data* as-is to every bulk-out endpoint. No retry on failure."""
        return self.write_frame(data).ok

    def write_frame(self, data: bytes) -> WriteResult:
        """Like write() but returns this call's per-endpoint outcome.

        ``connected`` is False when the device could not be opened or
        claimed; nothing was written then.
        """
        with self._locked():
            device = self._device
            endpoints = list(self._bulk_out)
        try:
            result = self._writer.write(device, endpoints, data)
        except ConnectionUnavailable as e:
            self._report.error(
                "Error happened while writing. Could not connect to the device "
                "or interface is busy? (%s)", e)
            return WriteResult(frame_length=len(data))

        with self._locked():
            if result.connected and self._state is BridgeState.AUTHORIZED:
                self._set_state(BridgeState.CONNECTED)
        return result

    # ── Received data ────────────────────────────────────────────────

    def has_data(self) -> bool:
        return not self.queue.is_empty()

    def pop_data(self) -> Optional[bytes]:
        frame = self.queue.pop()
        return frame.data if frame is not None else None

    def pop_frame(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Like pop_data() but keeps the source endpoint and sequence."""
        return self.queue.pop(timeout)

    # ── Shutdown ─────────────────────────────────────────────────────

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop and join readers, then mark the bridge CLOSED.

        The queue is left intact so the host can still drain it.
        """
        self.stop_reading(join=True, timeout=timeout)
        with self._locked():
            self._set_state(BridgeState.CLOSED)
        self._report.info("Bridge closed")

    def __enter__(self) -> 'Bridge':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return (f"Bridge({self.config.vendor_id:04x}:{self.config.product_id:04x}, "
                f"state={self.state.name})")
