"""APScheduler integration."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .lifecycle import refresh_event_statuses, vacuum_database

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def start_scheduler() -> BackgroundScheduler | None:
    global _scheduler
    if not settings.enable_scheduler:
        logger.info("Background scheduler disabled by configuration")
        return None
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        refresh_event_statuses,
        "interval",
        minutes=settings.status_refresh_minutes,
        id="status-refresh",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.add_job(
        vacuum_database,
        "interval",
        hours=settings.sqlite_vacuum_hours,
        id="vacuum",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
