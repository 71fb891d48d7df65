"""User preferences, persisted as one versioned record in storage.

Settings change at runtime (the daemon reloads them from the storage change
feed), unlike ``tabvault.config`` which is read once at startup.
"""

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any

from tabvault.errors import InvalidStateError, VersionMismatchError
from tabvault.storage import Storage

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
SETTINGS_TYPE = "TabVaultSettings"
LATEST_VERSION = 1
SUPPORTED_VERSIONS = (1, 2)


@dataclass
class Settings:
    """Preferences that change how the store backs up and restores."""
    lazy_tab_loading_on_restore: bool = True
    auto_restore_on_startup: bool = False
    enable_schedule_backup: bool = True
    enable_on_change_backup: bool = True
    version: int = LATEST_VERSION

    @classmethod
    def of_latest(cls) -> "Settings":
        return cls()

    @classmethod
    def upgrade_with(cls, d: dict[str, Any]) -> "Settings":
        """Start from the latest defaults, then apply what ``d`` sets."""
        loaded = cls.load_as(d)
        loaded.version = LATEST_VERSION
        return loaded

    @classmethod
    def load_as(cls, d: dict[str, Any]) -> "Settings":
        """Load ``d`` keeping its declared version."""
        version = d.get("_version")
        if version not in SUPPORTED_VERSIONS:
            raise VersionMismatchError(SETTINGS_TYPE, version)
        known = {f.name for f in fields(cls)} - {"version"}
        values = {k: bool(v) for k, v in d.items() if k in known}
        return cls(version=version, **values)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d.pop("version")
        return {"_type": SETTINGS_TYPE, "_version": self.version, **d}

    def with_value(self, name: str, value: Any) -> "Settings":
        if name == "version" or name not in {f.name for f in fields(self)}:
            raise InvalidStateError(f"Unknown setting {name!r}")
        values = asdict(self)
        values[name] = bool(value)
        return Settings(**values)


async def load_settings(storage: Storage) -> Settings:
    stored = (await storage.get(SETTINGS_KEY)).get(SETTINGS_KEY)
    if stored is None:
        return Settings.of_latest()
    return Settings.upgrade_with(stored)


async def save_settings(storage: Storage, settings: Settings) -> None:
    await storage.set({SETTINGS_KEY: settings.to_dict()})


async def remove_settings(storage: Storage) -> None:
    await storage.remove(SETTINGS_KEY)


async def update_setting(storage: Storage, name: str, value: Any) -> Settings:
    settings = (await load_settings(storage)).with_value(name, value)
    await save_settings(storage, settings)
    logger.info(f"setting {name} = {settings.to_dict()[name]}")
    return settings
