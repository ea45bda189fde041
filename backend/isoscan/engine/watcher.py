# isoscan/engine/watcher.py
"""
Completion Watcher.

Scheduled, resumable per-unit polling. Each tick:

    1. Select jobs that are dispatched, not terminal and not yet claimed
       (status IN (queued, running) AND collected_at IS NULL
        AND dispatched_at IS NOT NULL). A row still being dispatched has
       no unit yet and must not be mistaken for a lost one.
    2. Poll every unit once, in parallel across units on a thread pool
    3. Classify:
         substrate succeeded            → succeeded
         substrate failed (attempts)    → failed
         substrate deadline exceeded    → timed_out
         orchestrator deadline passed   → timed_out
         unit vanished                  → lost
         running                        → job status "running", no hand-off
    4. Claim terminal jobs with a compare-and-set on collected_at and hand
       each claimed job to the collector. Losing the claim means another
       watcher tick, cancel, or sweep already owns it.

Nothing is kept in memory between ticks, so a restarted process picks up
exactly where the database says it is.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from sqlalchemy import update

from isoscan.engine.collector import ResultCollector
from isoscan.errors import ScanEngineError
from isoscan.extensions import db
from isoscan.models import (
    ACTIVE_STATUSES,
    STATUS_QUEUED,
    STATUS_RUNNING,
    UNIT_FAILED,
    UNIT_LOST,
    UNIT_SUCCEEDED,
    UNIT_TIMED_OUT,
    ScanJob,
    now_utc,
)
from isoscan.substrate.base import (
    PHASE_FAILED,
    PHASE_RUNNING,
    PHASE_SUCCEEDED,
    PHASE_TIMED_OUT,
    ExecutionBackend,
    UnitStatus,
)

logger = logging.getLogger(__name__)

_PHASE_TO_TERMINAL = {
    PHASE_SUCCEEDED: UNIT_SUCCEEDED,
    PHASE_FAILED: UNIT_FAILED,
    PHASE_TIMED_OUT: UNIT_TIMED_OUT,
}


def claim(job_id: int, terminal_state: str) -> bool:
    """
    Atomically mark a job as handed to the collector.
    Exactly one caller per job ever gets True.
    """
    result = db.session.execute(
        update(ScanJob)
        .where(ScanJob.id == job_id, ScanJob.collected_at.is_(None))
        .values(collected_at=now_utc(), terminal_state=terminal_state)
    )
    db.session.commit()
    return result.rowcount == 1


def classify(job: ScanJob, unit: Optional[UnitStatus], now=None) -> Optional[str]:
    """Terminal state for a polled unit, or None while it is still in flight."""
    if unit is None:
        return UNIT_LOST
    terminal = _PHASE_TO_TERMINAL.get(unit.phase)
    if terminal:
        return terminal
    now = now or now_utc()
    if job.deadline_at is not None and now >= job.deadline_at:
        return UNIT_TIMED_OUT
    return None


class CompletionWatcher:

    def __init__(self, app, backend: ExecutionBackend, collector: ResultCollector, workers: int = 8):
        self.app = app
        self.backend = backend
        self.collector = collector
        self.workers = max(1, workers)

    def pending_job_ids(self) -> List[int]:
        rows = (
            db.session.query(ScanJob.id)
            .filter(
                ScanJob.status.in_(ACTIVE_STATUSES),
                ScanJob.collected_at.is_(None),
                ScanJob.dispatched_at.isnot(None),
            )
            .order_by(ScanJob.id)
            .all()
        )
        return [r.id for r in rows]

    def tick(self) -> int:
        """Poll every in-flight unit once. Returns how many jobs were collected."""
        with self.app.app_context():
            job_ids = self.pending_job_ids()

        if not job_ids:
            return 0

        logger.debug(f"Watcher polling {len(job_ids)} unit(s)")
        with ThreadPoolExecutor(max_workers=min(self.workers, len(job_ids)),
                                thread_name_prefix="isoscan-watch") as pool:
            outcomes = list(pool.map(self._poll_in_context, job_ids))

        collected = sum(1 for o in outcomes if o)
        if collected:
            logger.info(f"Watcher handed {collected} job(s) to the collector")
        return collected

    def _poll_in_context(self, job_id: int) -> bool:
        with self.app.app_context():
            try:
                return self.poll(job_id)
            except Exception as e:
                # One unit never blocks the others; it is retried next tick.
                db.session.rollback()
                logger.error(f"Polling job {job_id} failed: {e}")
                return False

    def poll(self, job_id: int) -> bool:
        job = db.session.get(ScanJob, job_id)
        if job is None or job.collected_at is not None or job.status not in ACTIVE_STATUSES:
            return False
        if job.dispatched_at is None:
            return False

        try:
            unit = self.backend.get_unit(job.unit_name)
        except ScanEngineError as e:
            logger.warning(f"Could not read unit {job.unit_name}: {e}; retrying next tick")
            return False

        terminal = classify(job, unit)
        if terminal is None:
            self._note_progress(job, unit)
            return False

        if terminal == UNIT_LOST:
            logger.warning(f"Unit {job.unit_name} for {job.scan_id}/{job.scanner_id} disappeared before collection")
        elif terminal == UNIT_TIMED_OUT and unit is not None and unit.phase not in _PHASE_TO_TERMINAL:
            logger.warning(f"Unit {job.unit_name} passed its deadline at {job.deadline_at}; timing it out")

        if not claim(job.id, terminal):
            logger.debug(f"Job {job.id} already claimed by another collector")
            return False

        self.collector.collect(job.id, unit)
        return True

    def _note_progress(self, job: ScanJob, unit: UnitStatus) -> None:
        values = {}
        if unit.attempts and unit.attempts != job.attempts:
            values["attempts"] = unit.attempts
        if unit.phase == PHASE_RUNNING and job.status == STATUS_QUEUED:
            values["status"] = STATUS_RUNNING
            values["started_at"] = unit.started_at or now_utc()
        if not values:
            return

        # Conditional so a concurrent collection's final status is never overwritten.
        result = db.session.execute(
            update(ScanJob)
            .where(
                ScanJob.id == job.id,
                ScanJob.collected_at.is_(None),
                ScanJob.status.in_(ACTIVE_STATUSES),
            )
            .values(**values)
        )
        db.session.commit()
        if result.rowcount == 1 and "status" in values:
            logger.info(f"Scan {job.scan_id}/{job.scanner_id} is running")
