"""Startup configuration.

Read once from ``~/.tabvault/config.yaml``; every key is optional::

    data_dir: ~/.tabvault/data
    log_level: INFO
    max_user_sessions: 20
    max_onchange_sessions: 8
    max_snapshots: 50

``TABVAULT_DATA_DIR`` and ``TABVAULT_LOG_LEVEL`` override the file.
"""

import logging
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

CONFIG_DIR = Path.home() / ".tabvault"
CONFIG_FILE = CONFIG_DIR / "config.yaml"

MAX_USER_SESSIONS = 20
MAX_ONCHANGE_SESSIONS = 8
MAX_SNAPSHOTS = 50


@dataclass
class TabVaultConfig:
    data_dir: Path = field(default_factory=lambda: CONFIG_DIR / "data")
    log_level: str = "INFO"
    max_user_sessions: int = MAX_USER_SESSIONS
    max_onchange_sessions: int = MAX_ONCHANGE_SESSIONS
    max_snapshots: int = MAX_SNAPSHOTS

    # Timers (seconds)
    backup_interval_s: float = 5 * 60
    gc_interval_s: float = 3 * 60
    auto_restore_delays_s: tuple[float, ...] = (0.25, 0.5, 1.0, 2.0)
    change_quiet_s: float = 30
    change_ceiling_s: float = 60
    remove_ceiling_s: float = 60
    restore_grace_s: float = 60

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TabVaultConfig":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in d.items() if k in known}
        if "data_dir" in values:
            values["data_dir"] = Path(values["data_dir"]).expanduser()
        if "auto_restore_delays_s" in values:
            values["auto_restore_delays_s"] = tuple(values["auto_restore_delays_s"])
        if "log_level" in values:
            values["log_level"] = str(values["log_level"]).upper()
        return cls(**values)


def load_config(path: Path | None = None) -> TabVaultConfig:
    """Load the config file, then apply environment overrides."""
    path = path or CONFIG_FILE
    data: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}

    if os.environ.get("TABVAULT_DATA_DIR"):
        data["data_dir"] = os.environ["TABVAULT_DATA_DIR"]
    if os.environ.get("TABVAULT_LOG_LEVEL"):
        data["log_level"] = os.environ["TABVAULT_LOG_LEVEL"]

    return TabVaultConfig.from_dict(data)


def save_config(config: TabVaultConfig, path: Path | None = None) -> None:
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "data_dir": str(config.data_dir),
        "log_level": config.log_level,
        "max_user_sessions": config.max_user_sessions,
        "max_onchange_sessions": config.max_onchange_sessions,
        "max_snapshots": config.max_snapshots,
    }
    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False)


def setup_logging(config: TabVaultConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
