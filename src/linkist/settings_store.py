"""System settings storage for linkist."""

import copy
import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .errors import InvalidSchemaVersionError, InvalidSettingsError
from .models import _utc_now

SCHEMA_VERSION = 1
SETTINGS_FILE = "settings.json"

SECRET_MASK = "********"

# (section, key) pairs never returned in clear text
SECRET_FIELDS = {
    ("email", "smtp_password"),
    ("payment", "stripe_secret_key"),
    ("payment", "paypal_client_secret"),
}

DEFAULT_SETTINGS: dict[str, dict[str, Any]] = {
    "general": {
        "site_name": "Linkist",
        "site_description": "Smart NFC business cards",
        "admin_email": "admin@linkist.ai",
        "timezone": "UTC",
        "date_format": "MM/DD/YYYY",
        "currency": "USD",
    },
    "branding": {
        "logo": "/logo.svg",
        "favicon": "/favicon.ico",
        "primary_color": "#ff0000",
        "secondary_color": "#000000",
        "company_name": "Linkist",
    },
    "email": {
        "provider": "smtp",
        "smtp_host": "",
        "smtp_port": 587,
        "smtp_user": "",
        "smtp_password": "",
        "from_email": "noreply@linkist.ai",
        "from_name": "Linkist",
        "templates": {
            "order_confirmation": True,
            "order_shipped": True,
            "order_delivered": True,
            "order_cancelled": True,
        },
    },
    "payment": {
        "stripe_public_key": "",
        "stripe_secret_key": "",
        "paypal_enabled": False,
        "paypal_client_id": "",
        "paypal_client_secret": "",
        "currency": "USD",
        "tax_rate": 5,
    },
    "shipping": {
        "free_shipping_threshold": 0,
        "domestic_rate": 0,
        "international_rate": 0,
        "processing_days": 7,
        "carriers": ["DHL", "FedEx"],
    },
    "security": {
        "two_factor_enabled": False,
        "password_min_length": 8,
        "session_timeout": 60,
        "max_login_attempts": 5,
        "ip_whitelist": [],
    },
    "notifications": {
        "email_notifications": True,
        "sms_notifications": False,
        "push_notifications": False,
        "order_alerts": True,
        "low_stock_alerts": False,
        "new_customer_alerts": True,
    },
}


def _merge(base: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    """Recursively overlay `changes` on `base`, keeping only keys `base` knows."""
    result = copy.deepcopy(base)
    for key, value in changes.items():
        if key not in result:
            continue
        if isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _check_shape(base: dict[str, Any], changes: dict[str, Any], prefix: str = "") -> None:
    """Sections that hold objects must be updated with objects."""
    for key, value in changes.items():
        if key in base and isinstance(base[key], dict):
            path = f"{prefix}{key}"
            if not isinstance(value, dict):
                raise InvalidSettingsError(path)
            _check_shape(base[key], value, f"{path}.")


def mask_secrets(settings: dict[str, Any]) -> dict[str, Any]:
    """Return a copy with secret fields replaced by a mask when set."""
    masked = copy.deepcopy(settings)
    for section, key in SECRET_FIELDS:
        if masked.get(section, {}).get(key):
            masked[section][key] = SECRET_MASK
    return masked


class SettingsStore:
    """Manages reading and writing the system settings record."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.settings_path = self.data_dir / SETTINGS_FILE

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Acquire exclusive lock on the settings file for read-modify-write operations."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with open(self.data_dir / ".settings.lock", "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def load(self) -> dict[str, Any]:
        """
        Load settings, filling anything not yet saved with defaults.

        Raises:
            InvalidSchemaVersionError: If the file has an unsupported schema version.
        """
        if not self.settings_path.exists():
            return copy.deepcopy(DEFAULT_SETTINGS)

        with open(self.settings_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise InvalidSchemaVersionError(version, SCHEMA_VERSION)

        return _merge(DEFAULT_SETTINGS, data.get("settings", {}))

    def save(self, settings: dict[str, Any]) -> None:
        """Save settings to disk atomically."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        data = {"schema_version": SCHEMA_VERSION, "updated_at": _utc_now(), "settings": settings}
        fd, temp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".settings_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.settings_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def update(self, changes: dict[str, Any]) -> dict[str, Any]:
        """
        Apply a partial update and save.

        Unknown sections and keys are ignored. A secret field sent back as the
        mask keeps its stored value.

        Raises:
            InvalidSettingsError: If the update or one of its sections isn't an object.
        """
        if not isinstance(changes, dict):
            raise InvalidSettingsError("settings")
        _check_shape(DEFAULT_SETTINGS, changes)

        changes = copy.deepcopy(changes)
        for section, key in SECRET_FIELDS:
            if changes.get(section, {}).get(key) == SECRET_MASK:
                del changes[section][key]

        with self._lock():
            updated = _merge(self.load(), changes)
            self.save(updated)
        return updated
