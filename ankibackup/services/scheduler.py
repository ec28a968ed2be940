"""Periodic tick scheduling aligned to wall-clock boundaries."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ankibackup.exceptions import MetadataFailure
from ankibackup.services.datetime_service import as_utc, now_utc
from ankibackup.services.orchestrator import Trigger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ankibackup.services.metadata_store import MetadataStore
    from ankibackup.services.orchestrator import BackupOrchestrator, TickResult

logger = logging.getLogger(__name__)


def next_boundary(now: datetime, interval_seconds: int) -> datetime:
    """Return the first multiple of ``interval_seconds`` since the epoch strictly after ``now``."""
    ts = as_utc(now).timestamp()
    boundary = (math.floor(ts / interval_seconds) + 1) * interval_seconds
    return datetime.fromtimestamp(boundary, tz=timezone.utc)


def missed_boundary(last_run_at: datetime | None, now: datetime, interval_seconds: int) -> bool:
    """True if a boundary fell in ``(last_run_at, now]``.

    Without a previous run nothing is owed: the first tick waits for the
    next boundary.
    """
    if last_run_at is None:
        return False
    return next_boundary(last_run_at, interval_seconds) <= as_utc(now)


class BackupScheduler:
    """Drives ``BackupOrchestrator.run_tick`` on an aligned cadence.

    On start, at most one catch-up tick runs for boundaries missed while the
    daemon was down; there is no back-fill of every missed interval.
    """

    def __init__(
        self,
        orchestrator: BackupOrchestrator,
        store: MetadataStore,
        *,
        interval_seconds: int = 3600,
        clock: Callable[[], datetime] = now_utc,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.next_run_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="backup-scheduler")
        logger.info("Scheduler started (interval=%ds)", self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the loop. A commit already in progress finishes first."""
        task, self._task = self._task, None
        self.next_run_at = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Scheduler stopped")

    async def trigger_now(self) -> TickResult:
        """Run one manual tick outside the cadence."""
        return await self.orchestrator.run_tick(Trigger.MANUAL)

    async def catch_up(self) -> TickResult | None:
        """Run one tick if a boundary was missed since the last recorded run."""
        try:
            last = await self.store.latest_run()
        except MetadataFailure as exc:
            logger.warning("Cannot determine last run, skipping catch-up: %s", exc)
            return None
        last_run_at = last.started_at if last is not None else None
        if not missed_boundary(last_run_at, self._clock(), self.interval_seconds):
            return None
        logger.info("Missed a scheduled tick since %s, running catch-up", last_run_at)
        return await self._safe_tick(Trigger.CATCH_UP)

    async def _run(self) -> None:
        await self.catch_up()
        while True:
            target = next_boundary(self._clock(), self.interval_seconds)
            self.next_run_at = target
            await self._sleep_until(target)
            await self._safe_tick(Trigger.SCHEDULED)

    async def _sleep_until(self, target: datetime) -> None:
        while True:
            remaining = (target - self._clock()).total_seconds()
            if remaining <= 0:
                return
            await self._sleep(remaining)

    async def _safe_tick(self, trigger: Trigger) -> TickResult | None:
        try:
            return await self.orchestrator.run_tick(trigger)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unexpected error during %s tick", trigger)
            return None
