"""Time-bucketed backup rotation.

Scheduled backups are kept in five tiers: 15-minute, hourly, daily, weekly
and monthly. Each tier (``RotationGroup``) holds ``interval_count`` slots;
slot 0 is the current interval, slot i the interval i units back.

On every scheduler tick each tier propagates: a backup whose timestamp
falls before its slot's interval moves one slot older (or is evicted from
the last slot), repeating until nothing moves. A tier whose slot 0 ends
up empty needs a fresh backup. The store takes one live capture per tick
and gives every needy tier its own clone with a fresh durable id, so tiers
never share a Session instance.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from tabvault.errors import VersionMismatchError
from tabvault.session import Session

logger = logging.getLogger(__name__)

GROUP_TYPE = "SessionGroup"
GROUP_VERSION = 1


@dataclass(frozen=True)
class TierConfig:
    """Fixed shape of one rotation tier."""
    group_type: str
    interval_count: int
    time_unit: str  # minute, hour, day, week, month
    units: int


BACKUP_15MIN = 0
BACKUP_HOURLY = 1
BACKUP_DAILY = 2
BACKUP_WEEKLY = 3
BACKUP_MONTHLY = 4

TIER_CONFIGS: list[TierConfig] = [
    TierConfig("15-minute", 4, "minute", 15),
    TierConfig("hourly", 4, "hour", 1),
    TierConfig("daily", 4, "day", 1),
    TierConfig("weekly", 4, "week", 1),
    TierConfig("monthly", 4, "month", 1),
]
TIER_MAP: dict[str, TierConfig] = {cfg.group_type: cfg for cfg in TIER_CONFIGS}
TIER_TYPES: list[str] = [cfg.group_type for cfg in TIER_CONFIGS]


@dataclass(frozen=True)
class IntervalRange:
    begin: datetime
    end: datetime


def _add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def shift(dt: datetime, time_unit: str, amount: int) -> datetime:
    """Move ``dt`` by ``amount`` calendar units (negative goes back)."""
    if time_unit == "minute":
        return dt + timedelta(minutes=amount)
    if time_unit == "hour":
        return dt + timedelta(hours=amount)
    if time_unit == "day":
        return dt + timedelta(days=amount)
    if time_unit == "week":
        return dt + timedelta(weeks=amount)
    if time_unit == "month":
        return _add_months(dt, amount)
    raise ValueError(f"Unknown time unit {time_unit!r}")


def interval_range(cfg: TierConfig, now: datetime) -> IntervalRange:
    """The interval of tier ``cfg`` that contains ``now``."""
    if cfg.time_unit == "minute":
        step = cfg.units * 60
        begin = datetime.fromtimestamp((int(now.timestamp()) // step) * step)
    elif cfg.time_unit == "hour":
        begin = now.replace(minute=0, second=0, microsecond=0)
    elif cfg.time_unit == "day":
        begin = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elif cfg.time_unit == "week":
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        begin = day - timedelta(days=day.weekday())
    elif cfg.time_unit == "month":
        begin = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    else:
        raise ValueError(f"Unknown time unit {cfg.time_unit!r}")
    return IntervalRange(begin=begin, end=shift(begin, cfg.time_unit, cfg.units))


def current_interval_range_map(now: datetime | None = None) -> dict[str, IntervalRange]:
    now = now or datetime.now()
    return {cfg.group_type: interval_range(cfg, now) for cfg in TIER_CONFIGS}


class RotationGroup:
    """One tier of the backup rotation."""

    def __init__(self, group_type: str):
        cfg = TIER_MAP.get(group_type)
        if cfg is None:
            raise ValueError(f"Invalid group type {group_type!r}")
        self.group_type = group_type
        self.sessions: list[Session | None] = [None] * cfg.interval_count

    @property
    def config(self) -> TierConfig:
        return TIER_MAP[self.group_type]

    def __len__(self) -> int:
        return len(self.sessions)

    @property
    def newest(self) -> Session | None:
        return self.sessions[0]

    @newest.setter
    def newest(self, sess: Session) -> None:
        self.sessions[0] = sess.set_group(self.group_type)

    @property
    def ui_sessions(self) -> list[Session]:
        # Slot 0 of the coarser tiers duplicates the newest 15-minute backup
        visible = self.sessions if self.group_type == TIER_CONFIGS[BACKUP_15MIN].group_type else self.sessions[1:]
        return [s for s in visible if s]

    def occupied(self) -> list[Session]:
        return [s for s in self.sessions if s]

    def remove(self, session_id: str) -> bool:
        removed = False
        for i, sess in enumerate(self.sessions):
            if sess and sess.session_id == session_id:
                self.sessions[i] = None
                removed = True
        return removed

    def propagate(self, now_range: IntervalRange) -> bool:
        """Age backups into older slots. Returns True if any slot changed."""
        cfg = self.config
        changed = False
        last = len(self.sessions) - 1

        moved = True
        while moved:
            moved = False
            # Oldest slot first so a moved backup is rechecked on the next pass
            for i in range(last, -1, -1):
                sess = self.sessions[i]
                if sess is None:
                    continue
                slot_begin = shift(now_range.begin, cfg.time_unit, -i * cfg.units)
                session_dt = datetime.fromtimestamp(sess.session_time / 1000)
                if session_dt >= slot_begin:
                    continue
                if i < last:
                    self.sessions[i + 1] = sess
                    self.sessions[i] = None
                    moved = True
                else:
                    logger.debug(f"{self.group_type}: evicting {sess.session_id}")
                    self.sessions[i] = None
                changed = True

        self.update_session_group_info()
        return changed

    def update_session_group_info(self) -> None:
        for i, sess in enumerate(self.sessions):
            if sess:
                sess.group_title = f"group:{sess.group} backup interval{' ' + str(i) if i > 0 else ''}"
                sess.session_name = f"backup {sess.short_time} {self.group_type}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "_type": GROUP_TYPE,
            "_version": GROUP_VERSION,
            "group_type": self.group_type,
            "sessions": [s.to_dict() if s else None for s in self.sessions],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "RotationGroup":
        version = d.get("_version")
        if version != GROUP_VERSION:
            raise VersionMismatchError(GROUP_TYPE, version)
        group = cls(d.get("group_type", ""))
        stored = d.get("sessions") or []
        for i in range(min(len(stored), len(group.sessions))):
            group.sessions[i] = Session.from_dict(stored[i]) if stored[i] else None
        return group


def create_backup_groups() -> list[RotationGroup]:
    return [RotationGroup(cfg.group_type) for cfg in TIER_CONFIGS]
