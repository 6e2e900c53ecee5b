"""Scheduled eviction sweeps for the asset cache."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from studio_core.asset_cache import AssetCache

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None
SWEEP_JOB_ID = "sweep_asset_cache"


async def sweep_asset_cache(cache: AssetCache) -> None:
    """Run one eviction pass so bounds recover after a failed background sweep."""
    await cache.evict()
    stats = await cache.stats()
    logger.info(
        "asset_cache.sweep entries=%s total_kb=%.1f max_kb=%.1f",
        stats.entry_count,
        stats.total_bytes / 1024,
        stats.max_bytes / 1024,
    )


def setup_scheduler(cache: AssetCache, interval_minutes: int = 30) -> AsyncIOScheduler:
    """Create and start APScheduler with a periodic cache sweep.

    Must be called from a running event loop.
    """
    global _scheduler
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        sweep_asset_cache,
        "interval",
        minutes=interval_minutes,
        args=[cache],
        id=SWEEP_JOB_ID,
    )
    _scheduler.start()
    logger.info("Scheduler started: asset cache sweep every %s minutes", interval_minutes)
    return _scheduler


def shutdown_scheduler() -> None:
    """Shut down the scheduler cleanly."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")
