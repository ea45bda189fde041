# isoscan/engine/orchestrator.py
"""
Scan Orchestrator: the single entry point for the HTTP surface.

    trigger_scan(scan_id, scanner_id, source)  → TriggerResult
    get_status(scan_id)                        → ScanOutcome
    cancel(scan_id)                            → acknowledged

trigger_scan validates in a fixed order and fails fast:

    1. unknown scanner              UnknownScanner
    2. malformed submission         InvalidSubmission
    3. payload size                 PayloadTooLarge
    4. existing (scan, scanner)     identical → accepted, no new work
                                    different source → Conflict
    5. tenant quota                 QuotaExceeded
    6. bundle                       Conflict / SubstrateError
    7. unit                         Conflict / QuotaExceeded / SubstrateError

A failure in 6-7 deletes the bundle this call created, returns the quota
slot and marks the row failed/dispatch_failed. Retrying with the same
source re-dispatches that row. Concurrent identical triggers race on the
(scan_id, scanner_id) unique constraint; exactly one inserts the row and
dispatches, the others return the winner's job, which always reaches a
terminal status.

The row is committed before the bundle exists, so it only becomes
visible to the watcher once dispatched_at is published. A cancel that
claims the row in between leaves collection to the trigger.

The call returns once the substrate has acknowledged the unit. It never
waits for the scanner.

Usage from scans/routes.py:
    orchestrator = current_app.extensions["isoscan"].orchestrator
    result = orchestrator.trigger_scan(scan_id, scanner_id, source_code=src)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from isoscan.config import Settings
from isoscan.engine import naming
from isoscan.engine.collector import ResultCollector, truncate
from isoscan.engine.delivery import BundleRef, SourceDeliveryManager, validate_files
from isoscan.engine.dispatcher import JobDispatcher
from isoscan.engine.quota import TenantQuotaManager
from isoscan.engine.watcher import claim
from isoscan.errors import Conflict, InvalidSubmission, QuotaExceeded, ScanNotFound
from isoscan.extensions import db
from isoscan.models import (
    ACTIVE_STATUSES,
    REASON_DISPATCH_FAILED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_RUNNING,
    STATUS_TIMED_OUT,
    UNIT_CANCELLED,
    UNIT_DISPATCH_FAILED,
    ScanJob,
    empty_counts,
    now_utc,
)
from isoscan.scanners import ScannerRegistry

logger = logging.getLogger(__name__)

SCAN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")
TENANT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")
DEFAULT_TENANT = "default"

# Worst first; decides the aggregate status of a finished multi-scanner scan.
_FINAL_PRECEDENCE = (STATUS_FAILED, STATUS_TIMED_OUT, STATUS_COMPLETED)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() + "Z" if dt else None


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class TriggerResult:
    accepted: bool
    created: bool            # False when an identical request was already known
    job: ScanJob

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "created": self.created,
            "scanId": self.job.scan_id,
            "scannerId": self.job.scanner_id,
            "status": self.job.status,
            "unit": self.job.unit_name,
            "submittedAt": _iso(self.job.submitted_at),
        }


@dataclass
class ScanOutcome:
    scan_id: str
    status: str
    counts: Dict[str, int]
    reason: Optional[str] = None
    submitted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    scanners: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanId": self.scan_id,
            "status": self.status,
            "reason": self.reason,
            "counts": self.counts,
            "submittedAt": _iso(self.submitted_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "scanners": self.scanners,
        }


def _job_summary(job: ScanJob) -> Dict[str, Any]:
    return {
        "scannerId": job.scanner_id,
        "status": job.status,
        "reason": job.reason,
        "counts": job.counts,
        "attempts": job.attempts,
        "exitCode": job.exit_code,
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
        "diagnostic": job.diagnostic,
    }


def aggregate(scan_id: str, jobs: List[ScanJob]) -> ScanOutcome:
    """
    Fold per-scanner jobs into one outcome:
        any job in flight    → running (queued while none has started)
        all jobs finished    → worst of failed > timed_out > completed
    Counts are summed across scanners.
    """
    statuses = [j.status for j in jobs]
    reason = None

    if any(s in ACTIVE_STATUSES for s in statuses):
        status = STATUS_QUEUED if all(s == STATUS_QUEUED for s in statuses) else STATUS_RUNNING
    else:
        status = next(s for s in _FINAL_PRECEDENCE if s in statuses)
        reason = next((j.reason for j in jobs if j.status == status and j.reason), None)

    counts = empty_counts()
    for j in jobs:
        for sev, n in j.counts.items():
            counts[sev] = counts.get(sev, 0) + (n or 0)

    started = [j.started_at for j in jobs if j.started_at]
    finished = [j.completed_at for j in jobs if j.completed_at]
    in_flight = status in ACTIVE_STATUSES

    return ScanOutcome(
        scan_id=scan_id,
        status=status,
        counts=counts,
        reason=reason,
        submitted_at=min(j.submitted_at for j in jobs),
        started_at=min(started) if started else None,
        completed_at=None if in_flight or not finished else max(finished),
        scanners=[_job_summary(j) for j in sorted(jobs, key=lambda j: j.scanner_id)],
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ScanOrchestrator:

    def __init__(
        self,
        registry: ScannerRegistry,
        delivery: SourceDeliveryManager,
        dispatcher: JobDispatcher,
        quota: TenantQuotaManager,
        collector: ResultCollector,
        settings: Settings,
    ):
        self.registry = registry
        self.delivery = delivery
        self.dispatcher = dispatcher
        self.quota = quota
        self.collector = collector
        self.settings = settings

    # ── Trigger ─────────────────────────────────────────────────────

    def trigger_scan(
        self,
        scan_id: str,
        scanner_id: str,
        source_code: Optional[str] = None,
        files: Optional[Dict[str, str]] = None,
        tenant: Optional[str] = None,
    ) -> TriggerResult:
        self.registry.resolve(scanner_id)
        files = self._normalize_submission(scan_id, source_code, files)
        tenant = self._normalize_tenant(tenant)
        size = validate_files(files, self.settings.max_payload_bytes)
        digest = naming.source_digest(files)

        existing = self._existing_job(scan_id, scanner_id, digest)
        if existing is not None:
            if existing.reason == REASON_DISPATCH_FAILED:
                reopened = self._reopen(existing, tenant)
                if reopened is not None:
                    logger.info(f"Re-dispatching {scan_id}/{scanner_id} after an earlier dispatch failure")
                    return self._dispatch(reopened, files)
                existing = db.session.get(ScanJob, existing.id)
            logger.info(f"Scan {scan_id}/{scanner_id} already accepted; returning existing job")
            return TriggerResult(accepted=True, created=False, job=existing)

        if not self.quota.acquire(tenant):
            raise QuotaExceeded(
                f"Tenant '{tenant}' has too many scans in flight; retry later",
                tenant=tenant,
            )

        job = ScanJob(
            scan_id=scan_id,
            scanner_id=scanner_id,
            tenant=tenant,
            source_digest=digest,
            source_bytes=size,
            bundle_name=naming.bundle_name(scan_id, scanner_id),
            unit_name=naming.unit_name(scan_id, scanner_id),
            status=STATUS_QUEUED,
            submitted_at=now_utc(),
        )
        db.session.add(job)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent identical trigger inserted the pair first.
            db.session.rollback()
            self.quota.give_back(tenant)
            existing = self._existing_job(scan_id, scanner_id, digest)
            if existing is None:
                raise Conflict(f"Scan {scan_id}/{scanner_id} changed concurrently; retry the request")
            logger.info(f"Scan {scan_id}/{scanner_id} was accepted concurrently; returning existing job")
            return TriggerResult(accepted=True, created=False, job=existing)

        return self._dispatch(job, files)

    def _dispatch(self, job: ScanJob, files: Dict[str, str]) -> TriggerResult:
        """Create bundle and unit for a committed, quota-holding row."""
        job_id, scan_id, scanner_id, tenant = job.id, job.scan_id, job.scanner_id, job.tenant

        bundle: Optional[BundleRef] = None
        try:
            bundle = self.delivery.create_bundle(scan_id, scanner_id, files)
            handle = self.dispatcher.dispatch(scan_id, scanner_id, bundle)
        except Exception as e:
            logger.warning(f"Trigger of {scan_id}/{scanner_id} failed after partial creation: {e}")
            self._roll_back(job_id, tenant, bundle, e)
            raise

        # Publishing dispatched_at makes the job visible to the watcher. If a
        # cancel claimed the row while we were dispatching, it left the
        # collection to us.
        published = db.session.execute(
            update(ScanJob)
            .where(ScanJob.id == job_id, ScanJob.collected_at.is_(None))
            .values(
                dispatched_at=handle.dispatched_at,
                deadline_at=handle.deadline_at,
                expires_at=handle.expires_at,
            )
        )
        db.session.commit()

        if published.rowcount != 1:
            logger.info(f"Scan {scan_id}/{scanner_id} was cancelled during dispatch; cleaning up")
            self.collector.collect(job_id)
        else:
            logger.info(f"Accepted scan {scan_id}/{scanner_id} for tenant '{tenant}' (unit {handle.unit_name})")

        return TriggerResult(accepted=True, created=True, job=db.session.get(ScanJob, job_id))

    def _normalize_submission(
        self,
        scan_id: str,
        source_code: Optional[str],
        files: Optional[Dict[str, str]],
    ) -> Dict[str, str]:
        if not isinstance(scan_id, str) or not SCAN_ID_RE.match(scan_id):
            raise InvalidSubmission(
                "scanId must be 1-128 characters of letters, digits, '.', '_', ':' or '-'"
            )
        if (source_code is None) == (files is None):
            raise InvalidSubmission("Provide exactly one of sourceCode or files")
        if source_code is not None:
            if not isinstance(source_code, str):
                raise InvalidSubmission("sourceCode must be a string")
            return {self.settings.default_filename: source_code}
        if not isinstance(files, dict):
            raise InvalidSubmission("files must be an object mapping file names to contents")
        return dict(files)

    def _normalize_tenant(self, tenant: Optional[str]) -> str:
        if tenant is None or tenant == "":
            return DEFAULT_TENANT
        if not isinstance(tenant, str) or not TENANT_RE.match(tenant):
            raise InvalidSubmission("tenant must be 1-64 characters of letters, digits, '.', '_' or '-'")
        return tenant

    def _existing_job(self, scan_id: str, scanner_id: str, digest: str) -> Optional[ScanJob]:
        """
        The job this request is a repeat of, or None if it is new.
        A scan id reused with different source raises Conflict, whichever
        scanner the earlier request named.
        """
        jobs = ScanJob.query.filter_by(scan_id=scan_id).all()
        for j in jobs:
            if j.source_digest != digest:
                raise Conflict(
                    f"Scan {scan_id} was already submitted with different source",
                    scan_id=scan_id,
                    scanner_id=j.scanner_id,
                )
        return next((j for j in jobs if j.scanner_id == scanner_id), None)

    def _roll_back(self, job_id: int, tenant: str, bundle: Optional[BundleRef], error: Exception) -> None:
        """
        Undo a partial dispatch. The row stays, marked failed, so callers
        that were already told "accepted" see a terminal status; a retry
        with the same source re-dispatches it.
        """
        db.session.rollback()
        if bundle is not None and bundle.created:
            try:
                self.delivery.delete_bundle(bundle.name)
            except Exception as e:
                logger.error(f"Rollback could not delete bundle {bundle.name}; leaving it to the sweep: {e}")

        now = now_utc()
        db.session.execute(
            update(ScanJob)
            .where(ScanJob.id == job_id, ScanJob.status.in_(ACTIVE_STATUSES))
            .values(
                status=STATUS_FAILED,
                reason=REASON_DISPATCH_FAILED,
                terminal_state=UNIT_DISPATCH_FAILED,
                diagnostic=truncate(f"{type(error).__name__}: {error}", self.settings.diagnostic_max_chars),
                counts_json=empty_counts(),
                collected_at=func.coalesce(ScanJob.collected_at, now),
                completed_at=now,
            )
        )
        db.session.commit()
        self.quota.release(job_id, tenant)

    def _reopen(self, job: ScanJob, tenant: str) -> Optional[ScanJob]:
        """
        Put a dispatch_failed row back in the queue. Returns None when a
        concurrent retry reopened it first.
        """
        if not self.quota.acquire(tenant):
            raise QuotaExceeded(
                f"Tenant '{tenant}' has too many scans in flight; retry later",
                tenant=tenant,
            )
        reopened = db.session.execute(
            update(ScanJob)
            .where(
                ScanJob.id == job.id,
                ScanJob.status == STATUS_FAILED,
                ScanJob.reason == REASON_DISPATCH_FAILED,
            )
            .values(
                tenant=tenant,
                status=STATUS_QUEUED,
                reason=None,
                terminal_state=None,
                diagnostic=None,
                counts_json=None,
                collected_at=None,
                completed_at=None,
                quota_released_at=None,
                cleaned_up_at=None,
                dispatched_at=None,
                submitted_at=now_utc(),
            )
        )
        db.session.commit()
        if reopened.rowcount != 1:
            self.quota.give_back(tenant)
            return None
        return db.session.get(ScanJob, job.id)

    # ── Status ──────────────────────────────────────────────────────

    def get_status(self, scan_id: str) -> ScanOutcome:
        jobs = ScanJob.query.filter_by(scan_id=scan_id).all()
        if not jobs:
            raise ScanNotFound(scan_id)
        return aggregate(scan_id, jobs)

    # ── Cancel ──────────────────────────────────────────────────────

    def cancel(self, scan_id: str) -> bool:
        """
        Stop every in-flight unit of the scan and clean up. Jobs already
        claimed by a collector finish their own collection. Returns True
        once every job of the scan is terminal or owned by a collector.
        """
        jobs = ScanJob.query.filter_by(scan_id=scan_id).all()
        if not jobs:
            raise ScanNotFound(scan_id)

        for job in jobs:
            if job.status not in ACTIVE_STATUSES:
                continue
            if not claim(job.id, UNIT_CANCELLED):
                continue
            job = db.session.get(ScanJob, job.id)
            if job.dispatched_at is None:
                # Still being dispatched; the trigger sees the claim and collects.
                logger.info(f"Cancel of {scan_id}/{job.scanner_id} requested during dispatch")
                continue
            logger.info(f"Cancelling {scan_id}/{job.scanner_id}")
            self.collector.collect(job.id)
        return True
