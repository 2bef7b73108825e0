#!/usr/bin/env python3
"""
USB device locator.

Finds the bridge's target device in the platform's enumeration snapshot
by (vendor_id, product_id).  Matching is pure: no handle is opened and no
permission is requested here.

Known devices (display names for ``hidbridge detect``):
- STMicroelectronics: VID=0x0483, PID=0x5740  (1155:22336, STM32 board)
"""

import logging
from typing import Dict, List, Optional, Tuple

from .core.errors import DeviceNotFound
from .core.models import Device, DeviceEntry
from .usb_backend import UsbBackend

log = logging.getLogger(__name__)


KNOWN_DEVICES: Dict[Tuple[int, int], DeviceEntry] = {
    # 1155:22336, STM32 firmware exposing one bulk IN and one bulk OUT endpoint
    (0x0483, 0x5740): DeviceEntry(
        vendor="STMicroelectronics", product="STM32 Bulk Bridge",
    ),
}


def display_name_for(device: Device) -> str:
    """Best available name: descriptor string, registry entry, or VID:PID."""
    if device.display_name:
        return device.display_name
    entry = KNOWN_DEVICES.get(device.identity)
    if entry:
        return f"{entry.vendor} {entry.product}"
    return f"USB device {device.vid_pid}"


class DeviceLocator:
    """Matches devices by (vendor_id, product_id) over a backend snapshot."""

    def __init__(self, backend: UsbBackend):
        self._backend = backend

    def enumerate(self) -> List[Device]:
        """Every attached device, display names filled in."""
        devices = self._backend.enumerate()
        for dev in devices:
            dev.display_name = display_name_for(dev)
        return devices

    def locate(self, vendor_id: int, product_id: int) -> Optional[Device]:
        """First device matching (vendor_id, product_id), or None.

        Among duplicates the platform's enumeration order decides, and that
        order is not guaranteed stable between calls.
        """
        for dev in self._backend.enumerate():
            if dev.vendor_id == vendor_id and dev.product_id == product_id:
                dev.display_name = display_name_for(dev)
                log.debug("Located %s (%s)", dev.vid_pid, dev.display_name)
                return dev
        log.debug("No device %04x:%04x in enumeration", vendor_id, product_id)
        return None

    def is_attached(self, device: Device) -> bool:
        """Whether *device* (same identity and bus position) is still enumerated."""
        for dev in self._backend.enumerate():
            if dev.identity != device.identity:
                continue
            if device.bus is None or (dev.bus, dev.address) == (device.bus, device.address):
                return True
        return False

    def require(self, vendor_id: int, product_id: int) -> Device:
        """Like locate(), but raises DeviceNotFound when absent."""
        device = self.locate(vendor_id, product_id)
        if device is None:
            raise DeviceNotFound(vendor_id, product_id)
        return device
