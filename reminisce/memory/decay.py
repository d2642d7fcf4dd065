"""DecayScheduler — periodic expiry, staleness and statistics sweeps.

Three APScheduler interval jobs run independently of request handling.  Each
job is limited to one running instance and coalesces missed runs, and each
catches and logs its own failures so the next interval simply retries.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from reminisce.config import settings
from reminisce.memory.models import to_iso, utcnow

if TYPE_CHECKING:
    from reminisce.memory.store import MemoryStore

logger = logging.getLogger(__name__)

JOB_EXPIRED = "memory_expired_sweep"
JOB_STALE = "memory_stale_sweep"
JOB_STATS = "memory_stats_refresh"


@dataclass
class MemoryStats:
    """Snapshot of aggregate store statistics."""

    total: int = 0
    by_tier: dict[str, int] = field(
        default_factory=lambda: {"short": 0, "medium": 0, "long": 0, "archived": 0}
    )
    by_confidence: dict[str, int] = field(
        default_factory=lambda: {"high": 0, "medium": 0, "low": 0}
    )
    validated: int = 0
    expired: int = 0
    total_access_count: int = 0
    avg_confidence: float = 0.0
    last_cleanup: str | None = None
    last_refresh: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DecayScheduler:
    """Owns the maintenance jobs for a MemoryStore.

    Args:
        store: The store to sweep.
        timezone: IANA timezone for the scheduler (default from settings).
    """

    def __init__(self, store: MemoryStore, timezone: str | None = None) -> None:
        self._store = store
        self._timezone = timezone or settings.scheduler_timezone
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._running = False
        self.stats = MemoryStats()

    @property
    def running(self) -> bool:
        return self._running

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Register the sweep jobs, start the scheduler and refresh stats once."""
        jobs = (
            (JOB_EXPIRED, self.sweep_expired, settings.expired_sweep_interval_seconds),
            (JOB_STALE, self.sweep_stale, settings.stale_sweep_interval_seconds),
            (JOB_STATS, self.refresh_stats, settings.stats_interval_seconds),
        )
        for job_id, func, seconds in jobs:
            self._scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=seconds, timezone=self._timezone),
                id=job_id,
                name=job_id,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self._scheduler.start()
        self._running = True
        logger.info("Decay scheduler started (tz=%s)", self._timezone)
        await self.refresh_stats()

    async def stop(self) -> None:
        """Shut down the scheduler."""
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Decay scheduler stopped")

    # -- Sweeps ----------------------------------------------------------------
    #
    # ``run_*`` and ``compute_stats`` raise on store failure; the scheduled
    # job wrappers below log it and return empty counts.

    async def run_expired_sweep(self) -> dict[str, int]:
        """Delete expired untrusted units; downgrade expired trusted ones.

        Archived units are left alone.  A downgraded unit moves to the short
        tier with floor confidence and a fresh expiry, so it is never
        promoted by this sweep.
        """
        floor = settings.expired_confidence_floor
        now = utcnow()
        deleted = await self._store.delete_expired_untrusted(now, floor)
        downgraded = await self._store.downgrade_expired(
            now, floor, timedelta(days=settings.downgrade_extension_days)
        )

        self.stats.last_cleanup = to_iso(now)
        if deleted or downgraded:
            logger.info(
                "Expired-memory sweep: deleted %d, downgraded %d", deleted, downgraded
            )
        return {"deleted": deleted, "downgraded": downgraded}

    async def run_stale_sweep(
        self,
        after_days: int | None = None,
        confidence_threshold: float | None = None,
    ) -> int:
        """Delete low-confidence units nobody has recalled for a long time.

        Long-tier and archived units are exempt.
        """
        days = after_days if after_days is not None else settings.stale_after_days
        threshold = (
            confidence_threshold
            if confidence_threshold is not None
            else settings.stale_confidence_threshold
        )
        now = utcnow()
        deleted = await self._store.delete_stale(now - timedelta(days=days), threshold)

        self.stats.last_cleanup = to_iso(now)
        if deleted:
            logger.info("Stale-memory sweep: deleted %d", deleted)
        return deleted

    async def compute_stats(self) -> MemoryStats:
        """Recompute the statistics snapshot. Read-only."""
        now = utcnow()
        aggregate = await self._store.aggregate_stats(
            now, settings.high_confidence_threshold, settings.low_confidence_threshold
        )
        self.stats = MemoryStats(
            total=aggregate["total"],
            by_tier=aggregate["by_tier"],
            by_confidence=aggregate["by_confidence"],
            validated=aggregate["validated"],
            expired=aggregate["expired"],
            total_access_count=aggregate["total_access_count"],
            avg_confidence=aggregate["avg_confidence"],
            last_cleanup=self.stats.last_cleanup,
            last_refresh=to_iso(now),
        )
        logger.debug("Memory stats refreshed: %d units", self.stats.total)
        return self.stats

    # -- Scheduled jobs --------------------------------------------------------

    async def sweep_expired(self) -> dict[str, int]:
        try:
            return await self.run_expired_sweep()
        except Exception:
            logger.exception("Expired-memory sweep failed")
            return {"deleted": 0, "downgraded": 0}

    async def sweep_stale(
        self,
        after_days: int | None = None,
        confidence_threshold: float | None = None,
    ) -> int:
        try:
            return await self.run_stale_sweep(after_days, confidence_threshold)
        except Exception:
            logger.exception("Stale-memory sweep failed")
            return 0

    async def refresh_stats(self) -> MemoryStats:
        """Refresh the snapshot; on failure the previous one is kept."""
        try:
            return await self.compute_stats()
        except Exception:
            logger.exception("Memory statistics refresh failed")
            return self.stats
