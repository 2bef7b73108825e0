"""
Background readers that poll bulk-in endpoints into the ReceivedQueue.

``ReadWorker``: one thread per bulk-in endpoint.  Keeps one handle open
for its lifetime, claims the interface for each bounded read and gives
the claim back before its cooperative sleep so a writer can take it.

``SweepReader``: the always-on variant: a single thread visits every
bulk-in endpoint per pass, with a fresh open/claim/read/release/close
per endpoint and a 10 ms pause between passes.

Worker state machine::

    NO_DEVICE → CONNECT_FAILED | PERMISSION_FAILED | CONNECTED → POLLING
    POLLING → POLLING (data or benign timeout) | STOPPING → CLOSED

Failure handling per iteration:
    no device                   → log, wait no_device_backoff_s (10 s)
    open/claim/permission error → log, wait connect_backoff_s (2 s)
    claim registry timeout      → wait poll_interval_s, keep the handle
    read timeout                → nothing, keep polling
    device vanished mid-read    → drop handle, unbind device, relocate
    anything else               → release + close, then log and end
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from .conf import BridgeConfig
from .connection import ClaimRegistry, Connection
from .core.errors import (
    ConnectionUnavailable,
    FatalTermination,
    InterfaceBusy,
    PermissionDenied,
    TransferTimeout,
    TransientRaceFailure,
)
from .core.models import Device, EndpointDescriptor, Frame, WorkerState
from .diagnostics import Reporter, compose_hex
from .received_queue import ReceivedQueue
from .usb_backend import UsbBackend

log = logging.getLogger(__name__)

DeviceProvider = Callable[[], Optional[Device]]


class _ReaderBase(threading.Thread):
    """Shared plumbing: stop event, state, frame push, exit notification."""

    def __init__(self, name: str, *, backend: UsbBackend, registry: ClaimRegistry,
                 queue: ReceivedQueue, config: BridgeConfig,
                 stop_event: threading.Event, device_provider: DeviceProvider,
                 on_device_lost: Optional[Callable[[Device], None]] = None,
                 on_exit: Optional[Callable[['_ReaderBase'], None]] = None,
                 reporter: Optional[Reporter] = None):
        super().__init__(name=name, daemon=True)
        self._backend = backend
        self._registry = registry
        self._queue = queue
        self._config = config
        self._stop_event = stop_event
        self._device_provider = device_provider
        self._on_device_lost = on_device_lost
        self._on_exit = on_exit
        self._report = reporter.child(log) if reporter else Reporter(log)
        self.state = WorkerState.NO_DEVICE
        self.error: Optional[FatalTermination] = None
        self.frames_read = 0
        self.finished = threading.Event()

    # -- helpers ----------------------------------------------------------

    def _set_state(self, state: WorkerState) -> None:
        if state is not self.state:
            log.debug("%s: %s → %s", self.name, self.state.name, state.name)
            self.state = state

    def _wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; returns True as soon as a stop is signalled."""
        return self._stop_event.wait(seconds)

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def _push(self, endpoint: EndpointDescriptor, data: bytes) -> None:
        frame = Frame(data=bytes(data), endpoint=endpoint.address)
        self._queue.push(frame)
        self.frames_read += 1
        self._report.debug("EP 0x%02x: message received of length %d and content: %s",
                           endpoint.address, len(frame.data), compose_hex(frame.data))

    def _device_lost(self, device: Device, reason: Exception) -> None:
        self._report.warning("%s: device %s vanished (%s)", self.name, device.vid_pid, reason)
        if self._on_device_lost:
            self._on_device_lost(device)

    def _no_device(self) -> None:
        self._set_state(WorkerState.NO_DEVICE)
        self._report.warning("No device. Rechecking in %.0f sec...",
                             self._config.no_device_backoff_s)
        self._wait(self._config.no_device_backoff_s)

    def _connect_failed(self, state: WorkerState, reason: Exception) -> None:
        self._set_state(state)
        if state is WorkerState.PERMISSION_FAILED:
            self._report.warning(
                "Cannot start reader because permission was not granted. "
                "Retrying in %.0f sec... (%s)", self._config.connect_backoff_s, reason)
        else:
            self._report.warning(
                "Cannot start reader because the device is busy or not present. "
                "Retrying in %.0f sec... (%s)", self._config.connect_backoff_s, reason)
        self._wait(self._config.connect_backoff_s)

    # -- thread body ------------------------------------------------------

    def run(self) -> None:
        try:
            self._loop()
        except Exception as e:
            self._cleanup()
            if isinstance(e, FatalTermination):
                self.error = e
            else:
                self.error = FatalTermination(f"{type(e).__name__}: {e}")
                self.error.__cause__ = e
            log.debug("%s: fatal error", self.name, exc_info=True)
            self._report.error("%s: reader terminated: %s", self.name, self.error)
        finally:
            self._set_state(WorkerState.STOPPING)
            self._cleanup()
            self._set_state(WorkerState.CLOSED)
            self.finished.set()
            self._report.info("%s: reader stopped (%d frame(s))", self.name, self.frames_read)
            if self._on_exit:
                self._on_exit(self)

    def _loop(self) -> None:
        raise NotImplementedError

    def _cleanup(self) -> None:
        """Release + close whatever is held. Must be safe to call twice."""


class ReadWorker(_ReaderBase):
    """Polls one bulk-in endpoint until the stop event is set."""

    def __init__(self, endpoint: EndpointDescriptor, **kwargs):
        super().__init__(f"reader-ep{endpoint.address:02x}", **kwargs)
        self.endpoint = endpoint
        self._conn: Optional[Connection] = None
        self._started_shown = False

    def _drop_connection(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _cleanup(self) -> None:
        self._drop_connection()

    def _ensure_claimed(self, device: Device) -> bool:
        """Open (once) and claim the interface; False means retry from the top."""
        try:
            if self._conn is None:
                self._conn = Connection(
                    self._backend, device, self._config.interface_index,
                    self._registry, holder=self.name,
                    claim_timeout=self._config.claim_timeout_s)
            self._conn.open()
            self._conn.claim()
        except InterfaceBusy as e:
            # a writer kept the claim for the whole wait; keep the handle
            log.debug("%s: %s", self.name, e)
            self._wait(self._config.poll_interval_s)
            return False
        except PermissionDenied as e:
            self._drop_connection()
            self._connect_failed(WorkerState.PERMISSION_FAILED, e)
            return False
        except TransientRaceFailure as e:
            self._drop_connection()
            self._device_lost(device, e)
            return False
        except ConnectionUnavailable as e:
            self._drop_connection()
            self._connect_failed(WorkerState.CONNECT_FAILED, e)
            return False

        if self.state not in (WorkerState.CONNECTED, WorkerState.POLLING):
            self._set_state(WorkerState.CONNECTED)
        if not self._started_shown:
            self._report.info("!!! Reader was started on EP 0x%02x !!!", self.endpoint.address)
            self._started_shown = True
        return True

    def _loop(self) -> None:
        ep = self.endpoint
        while not self.stop_requested:
            device = self._device_provider()
            if device is None:
                self._drop_connection()
                self._no_device()
                continue

            if self._conn is not None and self._conn.device.identity != device.identity:
                self._drop_connection()

            if not self._ensure_claimed(device):
                continue

            self._set_state(WorkerState.POLLING)
            try:
                data = self._conn.handle.bulk_read(
                    ep.address, ep.max_packet_size, self._config.read_timeout_ms)
            except TransferTimeout:
                data = None
            except TransientRaceFailure as e:
                self._drop_connection()
                self._device_lost(device, e)
                continue
            except ConnectionUnavailable as e:
                self._drop_connection()
                self._connect_failed(WorkerState.CONNECT_FAILED, e)
                continue
            except PermissionDenied as e:
                self._drop_connection()
                self._connect_failed(WorkerState.PERMISSION_FAILED, e)
                continue

            if data is not None:
                self._push(ep, data[:ep.max_packet_size])

            # give the interface back so a writer can claim it while we sleep
            self._conn.release()
            self._wait(self._config.poll_interval_s)


class SweepReader(_ReaderBase):
    """Visits every bulk-in endpoint in turn, one short-lived connection each."""

    def __init__(self, endpoints: List[EndpointDescriptor],
                 is_attached: Optional[Callable[[Device], bool]] = None, **kwargs):
        super().__init__("reader-sweep", **kwargs)
        self.endpoints = list(endpoints)
        self._is_attached = is_attached
        self._conn: Optional[Connection] = None
        self._started_shown = False

    def _cleanup(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _read_once(self, device: Device, ep: EndpointDescriptor) -> Optional[bytes]:
        self._conn = Connection(
            self._backend, device, self._config.interface_index, self._registry,
            holder=self.name, claim_timeout=self._config.claim_timeout_s)
        try:
            with self._conn as conn:
                if not self._started_shown:
                    self._report.info("!!! Reader was started !!!")
                    self._started_shown = True
                self._set_state(WorkerState.POLLING)
                try:
                    return conn.handle.bulk_read(
                        ep.address, ep.max_packet_size, self._config.read_timeout_ms)
                except TransferTimeout:
                    return None
        finally:
            self._conn = None

    def _loop(self) -> None:
        while not self.stop_requested:
            device = self._device_provider()
            if device is None:
                self._no_device()
                continue

            for ep in self.endpoints:
                if self.stop_requested:
                    break
                if self._is_attached is not None and not self._is_attached(device):
                    self._device_lost(device, TransientRaceFailure("not enumerated"))
                    break
                try:
                    data = self._read_once(device, ep)
                except InterfaceBusy as e:
                    log.debug("%s: %s", self.name, e)
                    continue
                except PermissionDenied as e:
                    self._connect_failed(WorkerState.PERMISSION_FAILED, e)
                    continue
                except TransientRaceFailure as e:
                    self._device_lost(device, e)
                    break
                except ConnectionUnavailable as e:
                    self._connect_failed(WorkerState.CONNECT_FAILED, e)
                    continue
                if data is not None:
                    self._push(ep, data[:ep.max_packet_size])

            self._wait(self._config.sweep_interval_s)
