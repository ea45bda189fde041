# isoscan/engine/sweeper.py
"""
Out-of-band sweep: the time-bounded backstop behind the collector.

Four passes, each independent and each safe to run concurrently with
the watcher:

    expire     jobs still in flight past expires_at are claimed as
               "expired" and run through the normal collector path
    abandoned  rows committed by a trigger that never published
               dispatched_at within the dispatch grace (the request
               process died mid-dispatch) are failed as dispatch_failed;
               the collector deletes whatever part of the bundle / unit
               was created and returns the quota slot
    stalled    jobs claimed long ago whose collection never finished
               (process died mid-collection) are collected again;
               sinks overwrite, so the repeat is harmless
    leaked     substrate objects carrying the managed-by label, older than
               max_age, whose job is finished, collected or unknown, are
               deleted and logged as LeakedArtifact

Runs on the scheduler interval and from `python sweep.py [--commit]`.
With commit=False nothing is changed; the report says what would be.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from isoscan.engine.collector import ResultCollector
from isoscan.engine.watcher import claim
from isoscan.errors import ScanEngineError
from isoscan.extensions import db
from isoscan.models import ACTIVE_STATUSES, UNIT_DISPATCH_FAILED, UNIT_EXPIRED, ScanJob, now_utc
from isoscan.substrate.base import (
    ANNOTATION_SCAN_ID,
    ANNOTATION_SCANNER_ID,
    ExecutionBackend,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    commit: bool
    expired: List[str] = field(default_factory=list)
    abandoned: List[str] = field(default_factory=list)
    recollected: List[str] = field(default_factory=list)
    leaked_bundles: List[str] = field(default_factory=list)
    leaked_units: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.expired) + len(self.abandoned) + len(self.recollected) + len(self.leaked_bundles) + len(self.leaked_units)

    def to_dict(self) -> dict:
        return {
            "commit": self.commit,
            "expired": self.expired,
            "abandoned": self.abandoned,
            "recollected": self.recollected,
            "leakedBundles": self.leaked_bundles,
            "leakedUnits": self.leaked_units,
            "errors": self.errors,
        }


class Sweeper:

    def __init__(
        self,
        backend: ExecutionBackend,
        collector: ResultCollector,
        max_age_seconds: int,
        dispatch_grace_seconds: int = 300,
    ):
        self.backend = backend
        self.collector = collector
        self.max_age = timedelta(seconds=max_age_seconds)
        self.dispatch_grace = timedelta(seconds=dispatch_grace_seconds)

    def sweep(self, commit: bool = True) -> SweepReport:
        report = SweepReport(commit=commit)
        now = now_utc()

        self._expire(now, report)
        self._abandon_undispatched(now, report)
        self._recollect_stalled(now, report)
        self._delete_leaked(now, report)

        if report.total:
            logger.info(
                f"Sweep{'' if commit else ' (dry run)'}: {len(report.expired)} expired, "
                f"{len(report.abandoned)} abandoned, "
                f"{len(report.recollected)} re-collected, {len(report.leaked_bundles)} leaked bundles, "
                f"{len(report.leaked_units)} leaked units"
            )
        return report

    # ── Passes ──────────────────────────────────────────────────────

    def _expire(self, now, report: SweepReport) -> None:
        overdue = (
            ScanJob.query
            .filter(
                ScanJob.status.in_(ACTIVE_STATUSES),
                ScanJob.collected_at.is_(None),
                ScanJob.expires_at.isnot(None),
                ScanJob.expires_at <= now,
            )
            .all()
        )
        for job in overdue:
            label = f"{job.scan_id}/{job.scanner_id}"
            if not commit_or_report(report, label, report.expired):
                continue
            try:
                if claim(job.id, UNIT_EXPIRED):
                    logger.warning(f"Job {label} outlived its TTL without completing; expiring it")
                    self.collector.collect(job.id)
                    report.expired.append(label)
            except Exception as e:
                db.session.rollback()
                report.errors.append(f"expire {label}: {e}")
                logger.error(f"Could not expire {label}: {e}")

    def _abandon_undispatched(self, now, report: SweepReport) -> None:
        stuck = (
            ScanJob.query
            .filter(
                ScanJob.status.in_(ACTIVE_STATUSES),
                ScanJob.collected_at.is_(None),
                ScanJob.dispatched_at.is_(None),
                ScanJob.submitted_at <= now - self.dispatch_grace,
            )
            .all()
        )
        for job in stuck:
            label = f"{job.scan_id}/{job.scanner_id}"
            if not commit_or_report(report, label, report.abandoned):
                continue
            try:
                if claim(job.id, UNIT_DISPATCH_FAILED):
                    logger.warning(f"Job {label} was never dispatched; failing it")
                    self.collector.collect(job.id)
                    report.abandoned.append(label)
            except Exception as e:
                db.session.rollback()
                report.errors.append(f"abandon {label}: {e}")
                logger.error(f"Could not fail undispatched job {label}: {e}")

    def _recollect_stalled(self, now, report: SweepReport) -> None:
        stalled = (
            ScanJob.query
            .filter(
                ScanJob.status.in_(ACTIVE_STATUSES),
                ScanJob.collected_at.isnot(None),
                ScanJob.collected_at <= now - self.max_age,
            )
            .all()
        )
        for job in stalled:
            label = f"{job.scan_id}/{job.scanner_id}"
            if not commit_or_report(report, label, report.recollected):
                continue
            try:
                logger.warning(f"Collection of {label} stalled since {job.collected_at}; collecting again")
                self.collector.collect(job.id)
                report.recollected.append(label)
            except Exception as e:
                db.session.rollback()
                report.errors.append(f"recollect {label}: {e}")
                logger.error(f"Could not re-collect {label}: {e}")

    def _delete_leaked(self, now, report: SweepReport) -> None:
        cutoff = now - self.max_age

        try:
            units = self.backend.list_units()
            bundles = self.backend.list_bundles()
        except ScanEngineError as e:
            report.errors.append(f"list: {e}")
            logger.error(f"Sweep could not list substrate objects: {e}")
            return

        for unit in units:
            if not self._is_leaked(unit.name, unit.created_at, unit.annotations, cutoff, "unit_name"):
                continue
            self._delete(report, "unit", unit.name, self.backend.delete_unit, report.leaked_units)

        for bundle in bundles:
            if not self._is_leaked(bundle.name, bundle.created_at, bundle.annotations, cutoff, "bundle_name"):
                continue
            self._delete(report, "bundle", bundle.name, self.backend.delete_bundle, report.leaked_bundles)

    # ── Helpers ─────────────────────────────────────────────────────

    def _is_leaked(self, name: str, created_at, annotations: dict, cutoff, column: str) -> bool:
        if created_at is None or created_at > cutoff:
            return False

        job = self._owning_job(name, annotations, column)
        if job is None:
            return True
        # An in-flight, unclaimed job still owns its objects; the expire pass handles it.
        return job.collected_at is not None or job.status not in ACTIVE_STATUSES

    def _owning_job(self, name: str, annotations: dict, column: str) -> Optional[ScanJob]:
        scan_id = annotations.get(ANNOTATION_SCAN_ID)
        scanner_id = annotations.get(ANNOTATION_SCANNER_ID)
        if scan_id and scanner_id:
            job = ScanJob.query.filter_by(scan_id=scan_id, scanner_id=scanner_id).first()
            if job is not None:
                return job
        return ScanJob.query.filter(getattr(ScanJob, column) == name).first()

    def _delete(self, report: SweepReport, kind: str, name: str, delete_fn, bucket: List[str]) -> None:
        logger.warning(f"LeakedArtifact: {kind} {name} outlived its job{'' if report.commit else ' (dry run)'}")
        if not report.commit:
            bucket.append(name)
            return
        try:
            delete_fn(name)
            bucket.append(name)
        except ScanEngineError as e:
            report.errors.append(f"delete {kind} {name}: {e}")
            logger.error(f"Could not delete leaked {kind} {name}: {e}")


def commit_or_report(report: SweepReport, label: str, bucket: List[str]) -> bool:
    """In a dry run, record what would happen and tell the caller to skip it."""
    if report.commit:
        return True
    bucket.append(label)
    return False
