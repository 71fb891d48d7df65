"""Debounced request merging.

A ``Debouncer`` collapses a burst of calls into one run of its operation.
Only the last call's arguments are used.

- ``reset_wait=True``: every call restarts the wait, so the operation runs
  once the calls go quiet for ``wait_s``. ``max_wait_s`` caps how long a
  steady stream of calls can hold it off.
- ``reset_wait=False``: the wait starts at the first call and later calls
  don't move it, so the operation runs at most ``wait_s`` after the first.

A call that arrives while the operation is running starts a new burst.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class Debouncer:
    """Coalesce calls to an async operation.

    Usage:
        backup_soon = Debouncer(store_backup, wait_s=30, max_wait_s=60)
        backup_soon()          # many times during a burst
        await backup_soon.flush()
    """

    def __init__(
        self,
        operation: Callable[..., Awaitable[Any]],
        wait_s: float,
        reset_wait: bool = True,
        max_wait_s: float | None = None,
        name: str = "",
    ):
        self.operation = operation
        self.wait_s = wait_s
        self.reset_wait = reset_wait
        self.max_wait_s = max_wait_s
        self.name = name or getattr(operation, "__name__", "debounced")

        self._args: tuple[Any, ...] = ()
        self._kwargs: dict[str, Any] = {}
        self._first_call = 0.0
        self._deadline = 0.0
        self._waiter: asyncio.Task | None = None
        self._runs: set[asyncio.Task] = set()
        self.run_count = 0

    @property
    def pending(self) -> bool:
        """Whether calls are waiting to be run."""
        return self._waiter is not None and not self._waiter.done()

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        self._args = args
        self._kwargs = kwargs
        now = time.monotonic()

        if not self.pending:
            self._first_call = now
            self._deadline = now + self.wait_s
            self._waiter = asyncio.create_task(self._wait())
            return

        if self.reset_wait:
            deadline = now + self.wait_s
            if self.max_wait_s is not None:
                deadline = min(deadline, self._first_call + self.max_wait_s)
            self._deadline = deadline

    async def _wait(self) -> None:
        while True:
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)
        self._waiter = None
        run = asyncio.create_task(self._run(self._args, self._kwargs))
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)

    async def _run(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        self.run_count += 1
        try:
            await self.operation(*args, **kwargs)
        except Exception as e:
            logger.error(f"debounced {self.name} failed: {e}")

    def cancel(self) -> None:
        """Drop waiting calls. A run already in progress finishes."""
        if self.pending:
            self._waiter.cancel()
        self._waiter = None

    async def flush(self) -> None:
        """Run waiting calls now, and wait for any run in progress."""
        if self.pending:
            self.cancel()
            await self._run(self._args, self._kwargs)
        if self._runs:
            await asyncio.gather(*self._runs)
