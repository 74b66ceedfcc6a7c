# scheduler/comm_scheduler.py
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from helpers.config import APS_TIMEZONE, SCHED_ENABLED, _env_int, get_logger

logger = get_logger("comm_scheduler")

SCHEDULER_JOB_ID = "comm:scheduled-messages"
SWEEPER_JOB_ID = "comm:stuck-sweeper"
RECOVERY_JOB_ID = "comm:pipeline-recovery"

_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler

    _scheduler = AsyncIOScheduler(
        timezone=APS_TIMEZONE,
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": _env_int("APS_MISFIRE_GRACE_SECONDS", 60),
        },
    )
    _scheduler.start()
    return _scheduler


async def _guarded(job_id: str, load: Callable[[], Callable[[], Awaitable]]):
    """Run one periodic pass; a failing pass is logged and the next tick retries."""
    try:
        await load()()
    except Exception:
        logger.exception("[scheduler] %s failed", job_id)


# Lazy imports to avoid circulars at module import time
def _message_pass():
    from helpers.message_dispatcher import run_scheduler_pass
    return run_scheduler_pass


def _sweeper_pass():
    from helpers.stuck_sweeper import sweep_stuck_messages
    return sweep_stuck_messages


def _recovery_pass():
    from helpers.pipeline_jobs import recover_jobs
    return recover_jobs


PERIODIC_JOBS = (
    (SCHEDULER_JOB_ID, _message_pass, False),
    (SWEEPER_JOB_ID, _sweeper_pass, False),
    # also runs right after boot to pick up jobs a previous process left queued
    (RECOVERY_JOB_ID, _recovery_pass, True),
)


def start_comm_scheduler() -> bool:
    """Lifespan hook. Returns False when COMM_SCHED_ENABLED is off."""
    if not SCHED_ENABLED:
        logger.info("[scheduler] disabled by COMM_SCHED_ENABLED")
        return False

    sch = get_scheduler()
    soon = datetime.now(timezone.utc) + timedelta(seconds=1)
    for job_id, load, run_at_boot in PERIODIC_JOBS:
        extra = {"next_run_time": soon} if run_at_boot else {}
        sch.add_job(
            _guarded,
            CronTrigger(minute="*/1", timezone=APS_TIMEZONE),
            args=[job_id, load],
            id=job_id,
            replace_existing=True,
            **extra,
        )
    logger.info("[scheduler] %d minutely jobs registered tz=%s", len(PERIODIC_JOBS), APS_TIMEZONE)
    return True


def shutdown_scheduler(wait: bool = False):
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=wait)
    _scheduler = None
