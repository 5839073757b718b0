"""
Scheduler for automatic catalog syncs.

Runs the full batch sync on a cron schedule (every 6 hours by default).
"""
import logging
from datetime import datetime
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from franchise_sync.config import get_settings
from franchise_sync.services.sync_runner import run_full_sync

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = BackgroundScheduler()

# Store last run results
last_sync_run = {
    "timestamp": None,
    "results": {}
}


def run_scheduled_sync():
    """Job function to run the full catalog sync."""
    global last_sync_run

    logger.info("Starting scheduled catalog sync...")
    start_time = datetime.now()

    report = run_full_sync(trigger="scheduled")
    if report is None:
        last_sync_run = {
            "timestamp": start_time.isoformat(),
            "duration_seconds": (datetime.now() - start_time).total_seconds(),
            "results": {},
            "error": "Sync did not complete, see the sync run log"
        }
        return

    last_sync_run = {
        "timestamp": start_time.isoformat(),
        "duration_seconds": (datetime.now() - start_time).total_seconds(),
        "results": {
            "run_id": report.run_id,
            "status": report.status,
            "summary": report.summary,
        }
    }
    logger.info(f"Scheduled sync completed: {report.summary}")


def start_scheduler():
    """Start the background scheduler."""
    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")
        return
    if scheduler.running:
        logger.info("Scheduler already running")
        return

    scheduler.add_job(
        run_scheduled_sync,
        CronTrigger(hour=settings.sync_cron_hour, minute=settings.sync_cron_minute),
        id='catalog_sync',
        name='Catalog Sync',
        replace_existing=True,
        max_instances=1
    )

    scheduler.start()
    logger.info("Scheduler started with jobs:")
    for job in scheduler.get_jobs():
        logger.info(f"  - {job.name}: {job.trigger}")


def stop_scheduler():
    """Stop the scheduler."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")


def get_scheduler_status():
    """Get current scheduler status."""
    jobs = []
    if scheduler.running:
        for job in scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "trigger": str(job.trigger),
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None
            })

    return {
        "running": scheduler.running,
        "jobs": jobs,
        "last_sync_run": last_sync_run
    }
