"""Bridge error taxonomy.

Transient classes (DeviceNotFound, ConnectionUnavailable, TransferTimeout,
TransientRaceFailure) are handled inside the read/write paths and never
reach the caller as exceptions. PermissionDenied ends the current session
until access is requested again. FatalTermination ends a read worker
after its claim has been released.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base class for every hidbridge error."""


class DeviceNotFound(BridgeError):
    """No device with the requested (vendor_id, product_id) is attached."""

    def __init__(self, vendor_id: int, product_id: int) -> None:
        self.vendor_id = vendor_id
        self.product_id = product_id
        super().__init__(
            f"USB device not found: VID={vendor_id:#06x} PID={product_id:#06x}"
        )


class PermissionDenied(BridgeError):
    """The platform refused access to the device node."""


class ConnectionUnavailable(BridgeError):
    """Opening the device or claiming its interface failed."""


class InterfaceBusy(ConnectionUnavailable):
    """The interface is claimed by another holder and the wait timed out."""


class ClaimRefused(ConnectionUnavailable):
    """The platform refused the interface claim (held by another process)."""


class TransferTimeout(BridgeError):
    """A bulk transfer did not complete within its timeout."""


class WriteTimeout(TransferTimeout):
    """A bulk write did not complete within the write timeout."""


class TransientRaceFailure(BridgeError):
    """The device vanished in the middle of an operation."""


class FatalTermination(BridgeError):
    """Unrecoverable condition inside a read worker."""
