"""Named timer scheduler.

Timers are registered by name and all fire into one callback,
``on_timer(name)``, the way a host alarm API delivers named alarms:

- periodic timers fire every ``interval_s`` until cancelled;
- one-shot timers fire once after ``delay_s``.

Each timer runs as its own asyncio task. A failing callback is logged and
recorded on the timer; periodic timers keep running.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[str], Awaitable[Any]]


class TimerStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Timer:
    """A registered timer."""
    name: str
    timer_type: str  # "periodic", "oneshot"
    interval_s: float = 300.0  # periodic period, or one-shot delay

    # State
    status: TimerStatus = TimerStatus.PENDING
    run_count: int = 0
    last_run: float = 0.0
    last_error: str = ""
    created_at: float = field(default_factory=time.time)

    @property
    def is_periodic(self) -> bool:
        return self.timer_type == "periodic"


class Scheduler:
    """Runs named timers and delivers them to ``on_timer``.

    Usage:
        scheduler = Scheduler(on_timer)
        scheduler.add_periodic("scheduled-backup", 5 * 60)
        scheduler.add_oneshot("auto-restore-1", 0.25)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, on_timer: TimerCallback):
        self.on_timer = on_timer
        self._timers: dict[str, Timer] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False

    def add_periodic(self, name: str, interval_s: float) -> Timer:
        return self._add(Timer(name=name, timer_type="periodic", interval_s=interval_s))

    def add_oneshot(self, name: str, delay_s: float) -> Timer:
        return self._add(Timer(name=name, timer_type="oneshot", interval_s=delay_s))

    def _add(self, timer: Timer) -> Timer:
        self.cancel(timer.name)
        self._timers[timer.name] = timer
        if self._running:
            self._spawn(timer)
        return timer

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        timer = self._timers.get(name)
        if timer and timer.status in (TimerStatus.PENDING, TimerStatus.RUNNING):
            timer.status = TimerStatus.CANCELLED
        if task and not task.done():
            task.cancel()
            return True
        return False

    async def start(self) -> None:
        self._running = True
        for timer in self._timers.values():
            if timer.status == TimerStatus.PENDING:
                self._spawn(timer)

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks.values())
        for name in list(self._tasks):
            self.cancel(name)
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def timers(self) -> dict[str, Timer]:
        return dict(self._timers)

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "timers": {
                name: {
                    "type": t.timer_type,
                    "status": t.status.value,
                    "run_count": t.run_count,
                    "last_error": t.last_error,
                }
                for name, t in self._timers.items()
            },
        }

    def _spawn(self, timer: Timer) -> None:
        self._tasks[timer.name] = asyncio.create_task(self._run(timer))

    async def _run(self, timer: Timer) -> None:
        while True:
            await asyncio.sleep(timer.interval_s)
            await self._fire(timer)
            if not timer.is_periodic:
                if timer.status != TimerStatus.FAILED:
                    timer.status = TimerStatus.COMPLETED
                self._tasks.pop(timer.name, None)
                return

    async def _fire(self, timer: Timer) -> None:
        timer.status = TimerStatus.RUNNING
        try:
            await self.on_timer(timer.name)
            timer.status = TimerStatus.PENDING
        except Exception as e:
            logger.error(f"timer {timer.name} failed: {e}")
            timer.last_error = str(e)
            timer.status = TimerStatus.FAILED
        timer.run_count += 1
        timer.last_run = time.time()
