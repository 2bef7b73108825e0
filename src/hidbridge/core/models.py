"""
hidbridge models - pure data classes with no USB backend dependencies.

These models are shared by the locator, the classifier, the read/write
paths and the adapters (CLI, REST).
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional

# =============================================================================
# USB descriptor constants (USB 2.0 spec, table 9-13)
# =============================================================================

ENDPOINT_DIR_MASK = 0x80
ENDPOINT_TYPE_MASK = 0x03


class Direction(Enum):
    """Endpoint direction, from bit 7 of bEndpointAddress."""
    OUT = 0x00
    IN = 0x80

    @classmethod
    def from_address(cls, address: int) -> 'Direction':
        return cls(address & ENDPOINT_DIR_MASK)


class TransferType(Enum):
    """Endpoint transfer type, from bits 0-1 of bmAttributes."""
    CONTROL = 0
    ISOCHRONOUS = 1
    BULK = 2
    INTERRUPT = 3

    @classmethod
    def from_attributes(cls, attributes: int) -> 'TransferType':
        return cls(attributes & ENDPOINT_TYPE_MASK)


class BridgeState(Enum):
    """Lifecycle of a Bridge (one bound device at a time)."""
    IDLE = auto()
    LOCATED = auto()
    PERMISSION_REQUESTED = auto()
    AUTHORIZED = auto()
    CONNECTED = auto()
    READING = auto()
    STOPPING = auto()
    CLOSED = auto()


class WorkerState(Enum):
    """Per-endpoint read worker state machine."""
    NO_DEVICE = auto()
    CONNECT_FAILED = auto()
    PERMISSION_FAILED = auto()
    CONNECTED = auto()
    POLLING = auto()
    STOPPING = auto()
    CLOSED = auto()


class PermissionOutcome(Enum):
    GRANTED = "granted"
    DENIED = "denied"


class OverflowPolicy(Enum):
    """What ReceivedQueue does when a push would exceed its capacity."""
    DROP_OLDEST = "drop_oldest"
    REJECT = "reject"


# =============================================================================
# Device / endpoint / frame
# =============================================================================

@dataclass
class Device:
    """An attached USB device as reported by the enumeration snapshot.

    ``system_handle`` is whatever the backend needs to open the device
    again (a ``usb.core.Device`` for pyusb, a fake object in tests).
    """
    vendor_id: int
    product_id: int
    system_handle: Any = field(default=None, repr=False, compare=False)
    display_name: str = ""
    interface_count: int = 0
    bus: Optional[int] = None
    address: Optional[int] = None

    @property
    def identity(self) -> tuple:
        """(vendor_id, product_id) - how the bridge matches devices."""
        return (self.vendor_id, self.product_id)

    @property
    def vid_pid(self) -> str:
        return f"{self.vendor_id:04x}:{self.product_id:04x}"

    @property
    def node_path(self) -> Optional[str]:
        """usbfs device node, e.g. /dev/bus/usb/001/004 (Linux only)."""
        if self.bus is None or self.address is None:
            return None
        return f"/dev/bus/usb/{self.bus:03d}/{self.address:03d}"


@dataclass(frozen=True)
class EndpointDescriptor:
    """One endpoint of a claimed interface. Immutable after classification."""
    address: int
    direction: Direction
    transfer_type: TransferType
    max_packet_size: int

    @property
    def number(self) -> int:
        return self.address & 0x0F

    @property
    def is_bulk(self) -> bool:
        return self.transfer_type is TransferType.BULK

    def describe(self) -> str:
        """Human-readable form for log lines, e.g. 'EP 0x81 BULK IN (64B)'."""
        return (f"EP 0x{self.address:02x} {self.transfer_type.name} "
                f"{self.direction.name} ({self.max_packet_size}B)")


@dataclass(frozen=True)
class Frame:
    """One inbound payload, exactly as many bytes as the transport reported."""
    data: bytes
    endpoint: int = 0
    sequence: int = 0

    def __len__(self) -> int:
        return len(self.data)

    def hex(self, sep: str = " ") -> str:
        return self.data.hex(sep) if self.data else ""


# =============================================================================
# Write outcome
# =============================================================================

@dataclass
class WriteResult:
    """Outcome of one WriteChannel.write() call.

    ``per_endpoint`` maps each bulk-out address to the byte count the
    transport reported, or None when that endpoint failed (the reason
    is in ``errors``). ``ok`` is true only when the connection was
    opened and claimed and every endpoint accepted the whole frame.
    """
    frame_length: int = 0
    per_endpoint: Dict[int, Optional[int]] = field(default_factory=dict)
    errors: Dict[int, str] = field(default_factory=dict)
    connected: bool = False

    @property
    def ok(self) -> bool:
        if not self.connected or not self.per_endpoint:
            return False
        return all(n == self.frame_length for n in self.per_endpoint.values())

    @property
    def endpoints_written(self) -> int:
        return sum(1 for n in self.per_endpoint.values() if n is not None)


@dataclass
class DeviceEntry:
    """Registry entry describing a known USB device."""
    vendor: str
    product: str
    interface_index: int = 0
