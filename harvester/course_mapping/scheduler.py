"""
Background quota reset using APScheduler.

The allocator already resets lazily when a credential is looked at after
its boundary; this job keeps stored counters honest for credentials
nobody touched overnight.
"""
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .quota import QuotaAllocator

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[BackgroundScheduler] = None


def run_quota_reset(allocator: QuotaAllocator) -> int:
    """Reset due credentials; errors are logged so the job keeps its schedule."""
    try:
        return allocator.reset_all_due()
    except Exception as e:
        logger.error(f"Daily quota reset failed: {e}")
        return 0


def start_scheduler(allocator: QuotaAllocator) -> BackgroundScheduler:
    """Start the background scheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = BackgroundScheduler(timezone="UTC")

    # Daily boundary - midnight UTC
    scheduler.add_job(
        run_quota_reset,
        CronTrigger(hour=0, minute=0, timezone="UTC"),
        args=[allocator],
        id="quota_reset",
        name="Reset daily credential quotas",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Quota reset scheduler started")
    return scheduler


def stop_scheduler():
    """Stop the background scheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Quota reset scheduler stopped")


def get_scheduler_status() -> dict:
    """Get scheduler status."""
    if scheduler is None:
        return {"running": False, "jobs": []}

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": str(job.next_run_time) if job.next_run_time else None
        })

    return {"running": scheduler.running, "jobs": jobs}
