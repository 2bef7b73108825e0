"""In-memory USB backend for tests.

``FakeBackend`` stands in for the platform USB subsystem: a scripted
enumeration snapshot, per-endpoint read scripts, recorded writes and
claim bookkeeping that notices two handles holding the same interface.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import replace

from hidbridge.conf import BridgeConfig
from hidbridge.core.errors import TransferTimeout, TransientRaceFailure
from hidbridge.core.models import (
    Device,
    Direction,
    EndpointDescriptor,
    PermissionOutcome,
    TransferType,
)
from hidbridge.usb_backend import UsbBackend, UsbConnection

STM32_VID = 1155
STM32_PID = 22336


# =========================================================================
# Builders
# =========================================================================

def make_device(vid=STM32_VID, pid=STM32_PID, bus=1, address=4, **kwargs) -> Device:
    return Device(vendor_id=vid, product_id=pid, bus=bus, address=address,
                  interface_count=kwargs.pop('interface_count', 1), **kwargs)


def make_endpoint(address, mps=64, transfer_type=TransferType.BULK) -> EndpointDescriptor:
    return EndpointDescriptor(
        address=address,
        direction=Direction.from_address(address),
        transfer_type=transfer_type,
        max_packet_size=mps,
    )


def fast_config(**overrides) -> BridgeConfig:
    """BridgeConfig with millisecond-scale waits so threaded tests stay quick."""
    values = dict(
        vendor_id=STM32_VID,
        product_id=STM32_PID,
        read_timeout_ms=5,
        write_timeout_ms=100,
        poll_interval_s=0.005,
        sweep_interval_s=0.002,
        no_device_backoff_s=0.02,
        connect_backoff_s=0.02,
        claim_timeout_s=1.0,
    )
    values.update(overrides)
    return BridgeConfig(**values)


def wait_until(predicate, timeout=2.0, interval=0.005) -> bool:
    """Poll *predicate* until true or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


# =========================================================================
# Fake platform
# =========================================================================

class FakeConnection(UsbConnection):
    """One open handle on a FakeBackend."""

    def __init__(self, backend, device):
        self._backend = backend
        self.device = device
        self._is_open = True
        self.claimed = set()

    def claim_interface(self, index, exclusive=True):
        return self._backend._claim(self, index)

    def release_interface(self, index):
        self._backend._release(self, index)

    def bulk_read(self, endpoint, length, timeout_ms):
        b = self._backend
        with b._lock:
            b.reads += 1
            if not self.claimed:
                b.unclaimed_transfers += 1
            script = b.read_scripts[endpoint]
            item = script.popleft() if script else None
        if item is None:
            time.sleep(timeout_ms / 1000.0)
            raise TransferTimeout(f"read EP 0x{endpoint:02x} timed out")
        if isinstance(item, BaseException):
            raise item
        return bytes(item)

    def bulk_write(self, endpoint, data, timeout_ms):
        b = self._backend
        with b._lock:
            if not self.claimed:
                b.unclaimed_transfers += 1
            outcome = b.write_outcomes.get(endpoint)
            b.writes.append((endpoint, bytes(data)))
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        return len(data)

    def close(self):
        with self._backend._lock:
            if not self._is_open:
                self._backend.double_closes += 1
            self._is_open = False
            self._backend.closes += 1

    @property
    def is_open(self):
        return self._is_open


class FakeBackend(UsbBackend):
    """Scriptable UsbBackend.

    Args:
        devices: enumeration snapshot (mutable; unplug by removing).
        endpoints: {interface_index: [EndpointDescriptor, ...]}.
        permission: outcome delivered to permission callbacks.
        defer_permission: keep callbacks in ``pending_permission`` until
            the test calls ``answer_permission()``.
    """

    def __init__(self, devices=None, endpoints=None,
                 permission=PermissionOutcome.GRANTED, defer_permission=False):
        self._lock = threading.Lock()
        self.devices = list(devices or [])
        self.endpoints = dict(endpoints or {})
        self.permission = permission
        self.defer_permission = defer_permission
        self.pending_permission = []
        self.permission_requests = 0

        self.read_scripts = defaultdict(deque)
        self.write_outcomes = {}
        self.writes = []
        self.open_error = None

        self.opens = 0
        self.closes = 0
        self.double_closes = 0
        self.reads = 0
        self.claims = 0
        self.releases = 0
        self.refused_claims = 0
        self.unclaimed_transfers = 0
        self.max_concurrent_claims = 0
        self._holders = {}

    # -- scripting ---------------------------------------------------------

    def queue_read(self, endpoint, *items):
        """Script bulk reads on *endpoint*: bytes are returned, exceptions raised."""
        with self._lock:
            self.read_scripts[endpoint].extend(items)

    def answer_permission(self, outcome=None):
        callbacks, self.pending_permission = self.pending_permission, []
        for callback in callbacks:
            callback(outcome or self.permission)

    def unplug(self):
        self.devices = []

    def writes_to(self, endpoint):
        return [data for ep, data in self.writes if ep == endpoint]

    # -- UsbBackend --------------------------------------------------------

    def enumerate(self):
        return [replace(d) for d in self.devices]

    def list_endpoints(self, device, interface_index):
        return list(self.endpoints.get(interface_index, []))

    def request_permission(self, device, callback):
        self.permission_requests += 1
        if self.defer_permission:
            self.pending_permission.append(callback)
        else:
            callback(self.permission)

    def open(self, device):
        with self._lock:
            self.opens += 1
        if self.open_error is not None:
            raise self.open_error
        if not any(d.identity == device.identity for d in self.devices):
            raise TransientRaceFailure(f"USB device {device.vid_pid} is gone")
        return FakeConnection(self, device)

    # -- claim bookkeeping -------------------------------------------------

    def _claim(self, conn, index):
        key = (conn.device.identity, index)
        with self._lock:
            holder = self._holders.get(key)
            if holder is not None and holder is not conn:
                self.refused_claims += 1
                return False
            self._holders[key] = conn
            conn.claimed.add(index)
            self.claims += 1
            self.max_concurrent_claims = max(
                self.max_concurrent_claims,
                sum(1 for k in self._holders if k[0] == conn.device.identity))
            return True

    def _release(self, conn, index):
        key = (conn.device.identity, index)
        with self._lock:
            if self._holders.get(key) is conn:
                del self._holders[key]
                self.releases += 1
            conn.claimed.discard(index)

    @property
    def outstanding_claims(self):
        with self._lock:
            return len(self._holders)


def stm32_backend(**kwargs) -> FakeBackend:
    """The reference board: interface 0 with EP 0x81 (bulk IN) and EP 0x01 (bulk OUT)."""
    return FakeBackend(
        devices=[make_device()],
        endpoints={0: [make_endpoint(0x81), make_endpoint(0x01)]},
        **kwargs,
    )
