"""
APScheduler job that materialises pitch expiry.

Pitches are also expired lazily on read; the sweep keeps list views and
counters honest for pitches nobody opens. Runs every
EXPIRY_SWEEP_INTERVAL_MINUTES on the application's event loop and is
started inside the FastAPI lifespan.
"""
import logging
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pitchdesk.core.config import get_settings
from pitchdesk.models.schemas import utcnow

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None
_last_result: Optional[dict] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    return _scheduler


def get_last_result() -> Optional[dict]:
    return _last_result


async def run_expiry_sweep(workflow_getter: Callable) -> dict:
    """One sweep over active pitches. Errors are logged so the next run still fires."""
    global _last_result
    run_at = utcnow()
    try:
        expired = await workflow_getter().pitches.expire_stale_pitches(run_at)
        _last_result = {"run_at": run_at.isoformat(), "expired": expired, "error": None}
    except Exception as e:
        logger.error(f"Expiry sweep failed: {e}", exc_info=True)
        _last_result = {"run_at": run_at.isoformat(), "expired": 0, "error": str(e)}
    return _last_result


def start_scheduler(workflow_getter: Callable) -> AsyncIOScheduler:
    """
    Create and start the scheduler.

    Args:
        workflow_getter: Callable[[], Workflow], resolved on every run so the
            sweep always uses the live store.
    """
    global _scheduler
    interval = get_settings().expiry_sweep_interval_minutes

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        func=run_expiry_sweep,
        trigger=IntervalTrigger(minutes=interval),
        args=[workflow_getter],
        id="expiry_sweep",
        name="Pitch expiry sweep",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=60,
    )
    _scheduler.start()
    logger.info(
        f"Scheduler started: expiry sweep every {interval}m "
        f"(next: {_scheduler.get_job('expiry_sweep').next_run_time})"
    )
    return _scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
