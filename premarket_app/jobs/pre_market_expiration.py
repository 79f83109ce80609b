"""Recurring sweep that retires pre-market requests past their moving window.

Overlapping runs are skipped, never queued. The guard is process-local, so
running several app instances against one database means several sweeps;
each item update is conditional, so that only costs duplicate work.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from premarket_app.core.events import EventBus, event_bus
from premarket_app.core.get_db import AsyncSessionLocal
from premarket_app.core.settings import settings
from premarket_app.services.pre_market_service import ExpirationResult, PreMarketService

logger = logging.getLogger(__name__)

JOB_ID = "pre-market-expiration"


class SweepGuard:
    """Non-blocking try-acquire flag around one sweep."""

    def __init__(self):
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def try_acquire(self) -> bool:
        # no await between the check and the set, so this cannot interleave
        if self._running:
            return False
        self._running = True
        return True

    def release(self) -> None:
        self._running = False


sweep_guard = SweepGuard()


async def run_expiration_sweep(
    session_factory=AsyncSessionLocal,
    guard: SweepGuard = sweep_guard,
    events: Optional[EventBus] = None,
    now: Optional[datetime] = None,
) -> Optional[ExpirationResult]:
    """Run one sweep. Returns None when skipped or when the batch query failed."""
    if not guard.try_acquire():
        logger.warning("Pre-market expiration sweep already running, skipping this tick")
        return None

    started = datetime.now(timezone.utc)
    try:
        async with session_factory() as db:
            service = PreMarketService(db, events=events or event_bus)
            try:
                result = await service.expire_requests(
                    now=now, hard_retire_days=settings.SWEEP_HARD_RETIRE_DAYS
                )
            except Exception:
                logger.exception("Pre-market expiration sweep could not load its batch")
                return None

        elapsed = (datetime.now(timezone.utc) - started).total_seconds()
        logger.info(
            f"Pre-market expiration sweep finished in {elapsed:.2f}s: "
            f"expired={result.expired_count} deleted={result.deleted_count} "
            f"failed={result.failed_count}"
        )
        return result
    finally:
        guard.release()


class ExpirationScheduler:
    def __init__(self, interval_seconds: Optional[int] = None):
        self.interval_seconds = interval_seconds or settings.SWEEP_INTERVAL_SECONDS
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    def start(self):
        self.scheduler.add_job(
            run_expiration_sweep,
            IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            f"Pre-market expiration sweep scheduled every {self.interval_seconds}s"
        )

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Pre-market expiration scheduler stopped.")


expiration_scheduler = ExpirationScheduler()
