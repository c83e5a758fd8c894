"""Retention sweeper: bounds storage by deleting messages past the retention window."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable

from store import MessageStore
from utils import days_to_ms, now_ms


class RetentionSweeper:
    def __init__(
        self,
        store: MessageStore,
        retention_days: float,
        interval_hours: float = 24,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.retention_days = retention_days
        self.interval_hours = interval_hours
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def unbounded(self) -> bool:
        return self.retention_days <= 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def cutoff(self) -> int:
        return self._clock() - days_to_ms(self.retention_days)

    def sweep(self) -> int:
        """Purge once, now. Returns the number of messages deleted."""
        if self.unbounded:
            return 0
        return self.store.purge_older_than(self.cutoff())

    def start(self) -> None:
        if self.unbounded or self.running:
            return
        self._task = asyncio.create_task(self._run(), name="retention-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        """Periodically delete expired messages."""
        while True:
            try:
                await asyncio.to_thread(self.sweep)
            except Exception as e:
                print(f"[relay-memory] Cleanup error: {e}", file=sys.stderr)
            await asyncio.sleep(self.interval_hours * 3600)
