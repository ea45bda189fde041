# isoscan/scheduler.py
"""
Background loops for the scan-job engine
────────────────────────────────────────
Uses APScheduler to run two interval jobs in this process:

    isoscan_watcher   CompletionWatcher.tick   every ISOSCAN_WATCH_INTERVAL s
    isoscan_sweep     Sweeper.sweep            every ISOSCAN_SWEEP_INTERVAL s

Both are max_instances=1, so a slow tick is skipped rather than overlapped.
Under Gunicorn set ISOSCAN_SCHEDULER_ENABLED=true on exactly one worker;
the claim on collected_at keeps a second scheduler harmless anyway.

Setup in the app factory:
    from isoscan.scheduler import init_scheduler
    init_scheduler(app)
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

_scheduler: BackgroundScheduler | None = None


def _watch(app):
    engine = app.extensions["isoscan"]
    try:
        engine.watcher.tick()
    except Exception as e:
        logger.error(f"Watcher tick failed: {e}")


def _sweep(app):
    engine = app.extensions["isoscan"]
    with app.app_context():
        try:
            engine.sweeper.sweep(commit=True)
        except Exception as e:
            logger.error(f"Sweep failed: {e}")


def init_scheduler(app) -> BackgroundScheduler | None:
    """Initialize and start the background scheduler."""
    global _scheduler

    if _scheduler is not None:
        logger.info("Scheduler already running")
        return _scheduler

    settings = app.extensions["isoscan"].settings
    _scheduler = BackgroundScheduler(daemon=True)

    _scheduler.add_job(
        func=lambda: _watch(app),
        trigger=IntervalTrigger(seconds=settings.watch_interval_seconds),
        id="isoscan_watcher",
        name="Poll execution units for completion",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.add_job(
        func=lambda: _sweep(app),
        trigger=IntervalTrigger(seconds=settings.sweep_interval_seconds),
        id="isoscan_sweep",
        name="Sweep leaked bundles and units",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    _scheduler.start()
    logger.info(
        f"Background scheduler started (watch every {settings.watch_interval_seconds}s, "
        f"sweep every {settings.sweep_interval_seconds}s)"
    )
    return _scheduler


def shutdown_scheduler():
    """Gracefully stop the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
