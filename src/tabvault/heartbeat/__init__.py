"""Timers for the background daemon.

Exports:
    Scheduler - Named periodic and one-shot timers
    Timer - A registered timer
    Debouncer - Request-merge layer for bursts of host events
"""

from .manager import Scheduler, Timer, TimerStatus
from .wake import Debouncer

__all__ = [
    "Scheduler",
    "Timer",
    "TimerStatus",
    "Debouncer",
]
