#!/usr/bin/env python3
"""
USB platform boundary for the bridge.

The ``UsbBackend`` / ``UsbConnection`` ABCs abstract the platform USB
subsystem so that:
  • Tests can inject a fake backend (no real hardware needed).
  • ``PyUsbBackend`` provides real USB via pyusb (libusb backend).

Everything above this module speaks in ``Device`` / ``EndpointDescriptor``
and the ``hidbridge.core.errors`` taxonomy; pyusb exceptions never leak
past ``PyUsbConnection``.

Linux dependencies:
  • pyusb:  ``pip install pyusb``  (needs libusb1: ``apt install libusb-1.0-0``)
  • udev rule granting rw access to the device node, or run as root
"""

import errno
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from .core.errors import (
    ConnectionUnavailable,
    PermissionDenied,
    TransferTimeout,
    TransientRaceFailure,
    WriteTimeout,
)
from .core.models import (
    Device,
    Direction,
    EndpointDescriptor,
    PermissionOutcome,
    TransferType,
)

# pyusb is the only real backend; PyUsbBackend refuses to start without it
try:
    import usb.core
    import usb.util
    PYUSB_AVAILABLE = True
except ImportError:
    PYUSB_AVAILABLE = False

log = logging.getLogger(__name__)

# USB configuration value used when the device is still unconfigured
USB_CONFIGURATION = 1

PermissionCallback = Callable[[PermissionOutcome], None]


# =========================================================================
# Abstract platform boundary
# =========================================================================

class UsbConnection(ABC):
    """One open handle to a device, mockable for testing."""

    @abstractmethod
    def claim_interface(self, index: int, exclusive: bool = True) -> bool:
        """Claim an interface. Returns False when another holder has it."""

    @abstractmethod
    def release_interface(self, index: int) -> None:
        """Release a previously claimed interface."""

    @abstractmethod
    def bulk_read(self, endpoint: int, length: int, timeout_ms: int) -> bytes:
        """Bulk read.  Returns exactly the bytes the device sent.

        Raises:
            TransferTimeout: nothing arrived within *timeout_ms*.
        """

    @abstractmethod
    def bulk_write(self, endpoint: int, data: bytes, timeout_ms: int) -> int:
        """Bulk write.  Returns bytes transferred.

        Raises:
            WriteTimeout: the transfer did not complete within *timeout_ms*.
        """

    @abstractmethod
    def close(self) -> None:
        """Close the handle."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the handle is currently open."""


class UsbBackend(ABC):
    """Platform USB subsystem: enumeration, permission, open."""

    @abstractmethod
    def enumerate(self) -> List[Device]:
        """Snapshot of attached devices, in platform enumeration order."""

    @abstractmethod
    def list_endpoints(self, device: Device, interface_index: int) -> List[EndpointDescriptor]:
        """Every endpoint of *interface_index*, in descriptor order."""

    @abstractmethod
    def request_permission(self, device: Device, callback: PermissionCallback) -> None:
        """Ask the platform for access; *callback* fires once, maybe on another thread."""

    @abstractmethod
    def open(self, device: Device) -> UsbConnection:
        """Open a fresh handle.

        Raises:
            PermissionDenied: the platform refused access.
            TransientRaceFailure: the device is gone.
            ConnectionUnavailable: any other open failure.
        """


# =========================================================================
# Helpers
# =========================================================================

def _usb_errno(exc: Exception) -> Optional[int]:
    return getattr(exc, 'errno', None)


def translate_usb_error(exc: Exception, context: str):
    """Map a pyusb ``USBError`` onto the bridge error taxonomy."""
    code = _usb_errno(exc)
    message = f"{context}: {exc}"
    if code in (errno.EACCES, errno.EPERM):
        return PermissionDenied(message)
    if code in (errno.ENODEV, errno.ENOENT, errno.ESHUTDOWN):
        return TransientRaceFailure(message)
    if code == errno.ETIMEDOUT:
        return TransferTimeout(message)
    return ConnectionUnavailable(message)


def node_accessible(path: Optional[str]) -> bool:
    """True when the usbfs node is readable and writable by this process.

    Platforms without usbfs nodes (path is None) don't gate access here;
    refusals then surface from ``open()`` instead.
    """
    if path is None:
        return True
    return os.access(path, os.R_OK | os.W_OK)


# =========================================================================
# Real backend: PyUSB  (libusb backend)
# =========================================================================
# Flow per connection:
#   usb.core.find(bus, address)        → fresh handle (own resource manager)
#   detach kernel driver / set config  → first claim
#   claim_interface(N)
#   read/write endpoints
#   release_interface(N)
#   dispose_resources

class PyUsbConnection(UsbConnection):
    """One libusb handle obtained through pyusb."""

    def __init__(self, dev, device: Device):
        self._dev = dev
        self._device = device
        self._is_open = True

    def claim_interface(self, index: int, exclusive: bool = True) -> bool:
        """Claim *index*; with *exclusive*, detach any kernel driver first."""
        self._check_open()
        try:
            if exclusive and self._dev.is_kernel_driver_active(index):
                self._dev.detach_kernel_driver(index)
                log.debug("Detached kernel driver from interface %d", index)
        except NotImplementedError:
            pass  # not supported on this platform
        except usb.core.USBError as e:
            raise translate_usb_error(e, f"detach interface {index}") from e

        try:
            usb.util.claim_interface(self._dev, index)
        except usb.core.USBError as e:
            if _usb_errno(e) == errno.EBUSY:
                log.debug("Interface %d of %s busy", index, self._device.vid_pid)
                return False
            raise translate_usb_error(e, f"claim interface {index}") from e
        return True

    def release_interface(self, index: int) -> None:
        if not self._is_open:
            return
        try:
            usb.util.release_interface(self._dev, index)
        except usb.core.USBError as e:
            log.debug("release_interface(%d) failed: %s", index, e)

    def bulk_read(self, endpoint: int, length: int, timeout_ms: int) -> bytes:
        self._check_open()
        try:
            return bytes(self._dev.read(endpoint, length, timeout=timeout_ms))
        except usb.core.USBTimeoutError as e:
            raise TransferTimeout(f"read EP 0x{endpoint:02x} timed out") from e
        except usb.core.USBError as e:
            raise translate_usb_error(e, f"read EP 0x{endpoint:02x}") from e

    def bulk_write(self, endpoint: int, data: bytes, timeout_ms: int) -> int:
        self._check_open()
        try:
            return self._dev.write(endpoint, data, timeout=timeout_ms)
        except usb.core.USBTimeoutError as e:
            raise WriteTimeout(
                f"write EP 0x{endpoint:02x} timed out after {timeout_ms} ms") from e
        except usb.core.USBError as e:
            err = translate_usb_error(e, f"write EP 0x{endpoint:02x}")
            if isinstance(err, TransferTimeout):
                raise WriteTimeout(str(err)) from e
            raise err from e

    def close(self) -> None:
        if self._dev is not None:
            try:
                usb.util.dispose_resources(self._dev)
            except usb.core.USBError as e:
                log.debug("dispose_resources failed: %s", e)
            self._dev = None
        self._is_open = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    def _check_open(self) -> None:
        if not self._is_open or self._dev is None:
            raise ConnectionUnavailable("Connection not open")


class PyUsbBackend(UsbBackend):
    """Real USB backend using pyusb (libusb backend).

    Every ``open()`` re-finds the device by bus/address so each
    connection owns its own libusb handle; a writer closing its handle
    never tears down a reader's.

    Requires: ``pip install pyusb`` + ``apt install libusb-1.0-0``
    """

    def __init__(self, usb_backend=None):
        if not PYUSB_AVAILABLE:
            raise ImportError(
                "pyusb is not installed. Install with: pip install pyusb\n"
                "Also need libusb: apt install libusb-1.0-0 (Debian/Ubuntu) "
                "or dnf install libusb1 (Fedora)"
            )
        # Optional explicit libusb backend (usb.backend.libusb1.get_backend())
        self._usb_backend = usb_backend

    def _find(self, **kwargs):
        if self._usb_backend is not None:
            kwargs['backend'] = self._usb_backend
        return usb.core.find(**kwargs)

    def enumerate(self) -> List[Device]:
        devices = []
        for dev in self._find(find_all=True):
            devices.append(Device(
                vendor_id=dev.idVendor,
                product_id=dev.idProduct,
                system_handle=dev,
                display_name=self._product_name(dev),
                interface_count=self._interface_count(dev),
                bus=getattr(dev, 'bus', None),
                address=getattr(dev, 'address', None),
            ))
        log.debug("pyusb enumeration: %d device(s)", len(devices))
        return devices

    @staticmethod
    def _product_name(dev) -> str:
        # String descriptors need an open handle; unreadable without access
        try:
            if dev.iProduct:
                return usb.util.get_string(dev, dev.iProduct) or ""
        except (usb.core.USBError, ValueError, NotImplementedError):
            pass
        return ""

    @staticmethod
    def _interface_count(dev) -> int:
        try:
            return dev[0].bNumInterfaces
        except (usb.core.USBError, IndexError):
            return 0

    def list_endpoints(self, device: Device, interface_index: int) -> List[EndpointDescriptor]:
        dev = device.system_handle
        try:
            intf = dev[0][(interface_index, 0)]
        except (usb.core.USBError, IndexError, KeyError) as e:
            log.warning("Interface %d not found on %s: %s",
                        interface_index, device.vid_pid, e)
            return []
        return [
            EndpointDescriptor(
                address=ep.bEndpointAddress,
                direction=Direction.from_address(ep.bEndpointAddress),
                transfer_type=TransferType.from_attributes(ep.bmAttributes),
                max_packet_size=ep.wMaxPacketSize,
            )
            for ep in intf
        ]

    def request_permission(self, device: Device, callback: PermissionCallback) -> None:
        """Check usbfs node access on a helper thread, then call back.

        Linux has no interactive grant: access is decided by udev rules,
        so the outcome is known immediately but is still delivered off
        the caller's thread like any other platform grant.
        """
        def check():
            granted = node_accessible(device.node_path)
            if not granted:
                log.info("No rw access to %s (install a udev rule or run as root)",
                         device.node_path)
            callback(PermissionOutcome.GRANTED if granted else PermissionOutcome.DENIED)

        threading.Thread(target=check, name=f"permission-{device.vid_pid}",
                         daemon=True).start()

    def open(self, device: Device) -> UsbConnection:
        kwargs = {'idVendor': device.vendor_id, 'idProduct': device.product_id}
        if device.bus is not None and device.address is not None:
            kwargs['custom_match'] = (
                lambda d: d.bus == device.bus and d.address == device.address)
        dev = self._find(**kwargs)
        if dev is None:
            raise TransientRaceFailure(f"USB device {device.vid_pid} is gone")

        try:
            try:
                dev.get_active_configuration()
            except usb.core.USBError:
                dev.set_configuration(USB_CONFIGURATION)
        except usb.core.USBError as e:
            usb.util.dispose_resources(dev)
            raise translate_usb_error(e, f"open {device.vid_pid}") from e

        return PyUsbConnection(dev, device)
