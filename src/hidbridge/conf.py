"""Application settings and config persistence for hidbridge.

Single source of truth for the target device, the interface to claim,
and every timing constant of the read/write paths.
Config is stored at ~/.config/hidbridge/config.json (XDG-compliant).

Usage:
    from hidbridge.conf import settings

    settings.vendor_id          # target VID
    settings.product_id         # target PID
    settings.bridge_config()    # BridgeConfig for Bridge(...)

    # Low-level config access
    from hidbridge.conf import load_config, save_config
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Optional

from .core.models import OverflowPolicy

log = logging.getLogger(__name__)

# =========================================================================
# Config file location (XDG-compliant)
# =========================================================================

_XDG_CONFIG = os.environ.get('XDG_CONFIG_HOME', os.path.expanduser('~/.config'))
CONFIG_DIR = os.path.join(_XDG_CONFIG, 'hidbridge')
CONFIG_PATH = os.path.join(CONFIG_DIR, 'config.json')

# STM32 bulk board (1155:22336)
DEFAULT_VENDOR_ID = 0x0483
DEFAULT_PRODUCT_ID = 0x5740


# =========================================================================
# Bridge configuration value object
# =========================================================================

@dataclass
class BridgeConfig:
    """Everything a Bridge needs besides its backend.

    Times ending in ``_ms`` are passed straight to the USB transfer calls;
    times ending in ``_s`` are thread waits.
    """
    vendor_id: int = DEFAULT_VENDOR_ID
    product_id: int = DEFAULT_PRODUCT_ID
    interface_index: int = 0

    read_timeout_ms: int = 50
    write_timeout_ms: int = 1000
    poll_interval_s: float = 0.100
    sweep_interval_s: float = 0.010
    no_device_backoff_s: float = 10.0
    connect_backoff_s: float = 2.0
    claim_timeout_s: float = 1.0

    queue_capacity: Optional[int] = 1024
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST

    def __post_init__(self) -> None:
        if isinstance(self.overflow_policy, str):
            self.overflow_policy = OverflowPolicy(self.overflow_policy)
        if self.read_timeout_ms <= 0:
            raise ValueError("read_timeout_ms must be positive")
        if self.write_timeout_ms <= 0:
            raise ValueError("write_timeout_ms must be positive (0 would block forever)")
        if self.queue_capacity is not None and self.queue_capacity <= 0:
            raise ValueError("queue_capacity must be positive or None")

    @classmethod
    def from_dict(cls, data: dict) -> 'BridgeConfig':
        """Build from a config dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        data = asdict(self)
        data['overflow_policy'] = self.overflow_policy.value
        return data


# =========================================================================
# Low-level config persistence
# =========================================================================

def load_config() -> dict:
    """Load user config from disk. Returns empty dict on missing/corrupt file."""
    try:
        with open(CONFIG_PATH, 'r') as f:
            return json.load(f)
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        return {}


def save_config(config: dict):
    """Save user config to disk."""
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_PATH, 'w') as f:
        json.dump(config, f, indent=2)


# =========================================================================
# Target device persistence
# =========================================================================

def get_saved_target() -> tuple[int, int]:
    """Get saved (vendor_id, product_id), defaulting to the STM32 board."""
    config = load_config()
    try:
        return (int(config.get('vendor_id', DEFAULT_VENDOR_ID)),
                int(config.get('product_id', DEFAULT_PRODUCT_ID)))
    except (TypeError, ValueError):
        log.warning("Ignoring malformed vendor_id/product_id in %s", CONFIG_PATH)
        return (DEFAULT_VENDOR_ID, DEFAULT_PRODUCT_ID)


def save_target(vendor_id: int, product_id: int):
    """Persist the target device to config."""
    config = load_config()
    config['vendor_id'] = vendor_id
    config['product_id'] = product_id
    save_config(config)


def get_saved_api_token() -> Optional[str]:
    """Token required by the REST adapter, or None for no auth."""
    return load_config().get('api_token')


# =========================================================================
# Settings singleton
# =========================================================================

class Settings:
    """Application-wide settings singleton.

    Adapters (CLI, REST) read from here; the bridge itself only ever sees
    the ``BridgeConfig`` built by ``bridge_config()``.
    """

    def __init__(self) -> None:
        self._vendor_id, self._product_id = get_saved_target()
        self._overrides = load_config().get('bridge', {})

    @property
    def vendor_id(self) -> int:
        return self._vendor_id

    @property
    def product_id(self) -> int:
        return self._product_id

    def set_target(self, vendor_id: int, product_id: int, persist: bool = True) -> None:
        """Update the target device and optionally persist it."""
        if (vendor_id, product_id) == (self._vendor_id, self._product_id):
            return
        log.info("Settings: target %04x:%04x → %04x:%04x",
                 self._vendor_id, self._product_id, vendor_id, product_id)
        self._vendor_id = vendor_id
        self._product_id = product_id
        if persist:
            save_target(vendor_id, product_id)

    def bridge_config(self, **overrides) -> BridgeConfig:
        """BridgeConfig from saved target + saved ``bridge`` section + overrides."""
        data = dict(self._overrides)
        data['vendor_id'] = self._vendor_id
        data['product_id'] = self._product_id
        data.update({k: v for k, v in overrides.items() if v is not None})
        return BridgeConfig.from_dict(data)


# Module-level singleton, import and use directly
settings = Settings()
