from __future__ import annotations
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from trafficguard.services.engine import ProtectionEngine

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "trafficguard-sweep"
AUTO_TUNE_JOB_ID = "trafficguard-autotune"


def build_scheduler(engine: ProtectionEngine, *, sweep_interval_sec: int = 300,
                    auto_tune_interval_sec: int = 3600) -> AsyncIOScheduler:
    """Eviction sweep and auto-tune run as interval jobs on the app's event loop."""

    async def _sweep_job():
        engine.sweep()

    async def _auto_tune_job():
        engine.run_auto_tune()

    scheduler = AsyncIOScheduler()
    scheduler.add_job(_sweep_job, IntervalTrigger(seconds=sweep_interval_sec),
                      id=SWEEP_JOB_ID, max_instances=1, coalesce=True)
    scheduler.add_job(_auto_tune_job, IntervalTrigger(seconds=auto_tune_interval_sec),
                      id=AUTO_TUNE_JOB_ID, max_instances=1, coalesce=True)
    logger.info("scheduler configured sweep=%ss auto_tune=%ss", sweep_interval_sec, auto_tune_interval_sec)
    return scheduler
