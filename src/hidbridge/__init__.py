"""
hidbridge - USB bulk bridge for HID-class devices

Locates a device by vendor/product ID, asks for permission to use it,
classifies its bulk endpoints, then polls every bulk-in endpoint in the
background while the host writes frames on demand.

Features:
- One reader thread per bulk-in endpoint (or a single sweeping reader)
- Writes fanned out to every bulk-out endpoint, with a timeout
- Read and write never hold the same interface claim at once
- Thread-safe, bounded queue of received frames
- Every diagnostic line forwarded to a host log sink

Usage:
    # As a library
    from hidbridge import Bridge, PyUsbBackend
    bridge = Bridge(PyUsbBackend(), vendor_id=0x0483, product_id=0x5740)
    bridge.open()
    bridge.start_reading()

    # Command line
    hidbridge detect         # List attached USB devices
    hidbridge listen         # Print frames as they arrive
    hidbridge send 48656c6c6f --hex
"""

from hidbridge.__version__ import __version__
from hidbridge.bridge import Bridge
from hidbridge.conf import BridgeConfig
from hidbridge.core.errors import (
    BridgeError,
    ClaimRefused,
    ConnectionUnavailable,
    DeviceNotFound,
    FatalTermination,
    InterfaceBusy,
    PermissionDenied,
    TransferTimeout,
    TransientRaceFailure,
    WriteTimeout,
)
from hidbridge.core.models import (
    BridgeState,
    Device,
    Direction,
    EndpointDescriptor,
    Frame,
    OverflowPolicy,
    PermissionOutcome,
    TransferType,
    WriteResult,
)
from hidbridge.received_queue import ReceivedQueue
from hidbridge.usb_backend import PyUsbBackend, UsbBackend, UsbConnection

__all__ = [
    # Version
    "__version__",
    # Core
    "Bridge",
    "BridgeConfig",
    "ReceivedQueue",
    # Platform boundary
    "UsbBackend",
    "UsbConnection",
    "PyUsbBackend",
    # Models
    "BridgeState",
    "Device",
    "Direction",
    "EndpointDescriptor",
    "Frame",
    "OverflowPolicy",
    "PermissionOutcome",
    "TransferType",
    "WriteResult",
    # Errors
    "BridgeError",
    "ClaimRefused",
    "ConnectionUnavailable",
    "DeviceNotFound",
    "FatalTermination",
    "InterfaceBusy",
    "PermissionDenied",
    "TransferTimeout",
    "TransientRaceFailure",
    "WriteTimeout",
]
