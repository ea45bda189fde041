# isoscan/engine/collector.py
"""
Result Collector, the single in-band deleter.

Invoked exactly once per job, by whoever won the compare-and-set on
scan_job.collected_at (watcher, cancel, or sweep). Pipeline:

    1. Classify the terminal state into a job status + reason
    2. succeeded → read captured output, parse with the descriptor's parser
                   (schema drift → failed / parse_error, raw kept)
    3. Persist findings through the sink, retried with backoff
                   (exhaustion → failed / results_lost)
    4. Record the outcome on the job row and report it to the sink
    5. ALWAYS: delete bundle, delete unit, release the quota slot

Step 5 runs on every path, including unexpected exceptions in 1-4.
Deletion failures are logged and left to the TTL and the sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import update

from isoscan.config import Settings
from isoscan.engine.delivery import SourceDeliveryManager
from isoscan.engine.dispatcher import JobDispatcher
from isoscan.engine.quota import TenantQuotaManager
from isoscan.errors import OutputParseError, ScanEngineError, SubstrateError
from isoscan.extensions import db
from isoscan.models import (
    ACTIVE_STATUSES,
    REASON_CANCELLED,
    REASON_COLLECTOR_ERROR,
    REASON_DISPATCH_FAILED,
    REASON_EXPIRED,
    REASON_PARSE_ERROR,
    REASON_RESULTS_LOST,
    REASON_SCANNER_FAILED,
    REASON_TIMED_OUT,
    REASON_UNIT_LOST,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_TIMED_OUT,
    UNIT_CANCELLED,
    UNIT_DISPATCH_FAILED,
    UNIT_EXPIRED,
    UNIT_FAILED,
    UNIT_LOST,
    UNIT_SUCCEEDED,
    UNIT_TIMED_OUT,
    ScanJob,
    empty_counts,
    now_utc,
)
from isoscan.scanners import ScannerRegistry
from isoscan.scanners.base import NormalizedFinding
from isoscan.sinks.base import ResultSink
from isoscan.substrate.base import ExecutionBackend, UnitStatus
from isoscan.utils.retry import retry_call

logger = logging.getLogger(__name__)

# terminal_state → (status, reason) for everything except success
_NON_SUCCESS = {
    UNIT_FAILED: (STATUS_FAILED, REASON_SCANNER_FAILED),
    UNIT_TIMED_OUT: (STATUS_TIMED_OUT, REASON_TIMED_OUT),
    UNIT_CANCELLED: (STATUS_FAILED, REASON_CANCELLED),
    UNIT_LOST: (STATUS_FAILED, REASON_UNIT_LOST),
    UNIT_EXPIRED: (STATUS_FAILED, REASON_EXPIRED),
    UNIT_DISPATCH_FAILED: (STATUS_FAILED, REASON_DISPATCH_FAILED),
}


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    """Keep the head and tail of long output; the middle is rarely useful."""
    if text is None or len(text) <= limit:
        return text
    half = max(limit // 2, 1)
    dropped = len(text) - 2 * half
    return f"{text[:half]}\n... [{dropped} characters truncated] ...\n{text[-half:]}"


@dataclass
class Collection:
    """What one collect() call decided."""
    job_id: int
    scan_id: str
    scanner_id: str
    terminal_state: str
    status: str
    reason: Optional[str] = None
    findings: List[NormalizedFinding] = field(default_factory=list)
    counts: dict = field(default_factory=empty_counts)
    diagnostic: Optional[str] = None
    cleaned_up: bool = False


class ResultCollector:

    def __init__(
        self,
        registry: ScannerRegistry,
        backend: ExecutionBackend,
        delivery: SourceDeliveryManager,
        dispatcher: JobDispatcher,
        quota: TenantQuotaManager,
        sink: ResultSink,
        settings: Settings,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.registry = registry
        self.backend = backend
        self.delivery = delivery
        self.dispatcher = dispatcher
        self.quota = quota
        self.sink = sink
        self.settings = settings
        self._retry_kwargs = {
            "attempts": settings.persist_attempts,
            "base_delay": settings.persist_backoff_seconds,
            "max_delay": settings.persist_backoff_max_seconds,
        }
        if sleep is not None:
            self._retry_kwargs["sleep"] = sleep

    # ── Entry point ─────────────────────────────────────────────────

    def collect(self, job_id: int, unit: Optional[UnitStatus] = None) -> Collection:
        """
        Collect a claimed job. The caller must have set collected_at and
        terminal_state through the compare-and-set; this method does not
        check the claim again.
        """
        job = db.session.get(ScanJob, job_id)
        if job is None:
            raise LookupError(f"ScanJob {job_id} not found")

        terminal_state = job.terminal_state or UNIT_LOST
        bundle_name, unit_name, tenant = job.bundle_name, job.unit_name, job.tenant
        result = Collection(
            job_id=job.id,
            scan_id=job.scan_id,
            scanner_id=job.scanner_id,
            terminal_state=terminal_state,
            status=STATUS_FAILED,
        )

        try:
            self._evaluate(job, unit, result)
            self._persist(result)
            self._record(result, unit)
            self._report(result)
        except Exception as e:
            db.session.rollback()
            logger.exception(f"Collection of {result.scan_id}/{result.scanner_id} failed unexpectedly")
            self._record_failure(job_id, e)
            raise
        finally:
            result.cleaned_up = self.cleanup(job_id, bundle_name, unit_name, tenant)

        logger.info(
            f"Collected {result.scan_id}/{result.scanner_id}: {result.terminal_state} → "
            f"{result.status}{f' ({result.reason})' if result.reason else ''}, "
            f"{len(result.findings)} findings"
        )
        return result

    # ── Steps ───────────────────────────────────────────────────────

    def _evaluate(self, job: ScanJob, unit: Optional[UnitStatus], result: Collection) -> None:
        if result.terminal_state != UNIT_SUCCEEDED:
            result.status, result.reason = _NON_SUCCESS.get(
                result.terminal_state, (STATUS_FAILED, REASON_SCANNER_FAILED)
            )
            if result.terminal_state in (UNIT_FAILED, UNIT_TIMED_OUT):
                result.diagnostic = truncate(self._read_output_quietly(job.unit_name), self._diag_limit)
            return

        descriptor = self.registry.resolve(job.scanner_id)
        try:
            raw = retry_call(
                lambda: self.backend.read_output(job.unit_name),
                retry_on=(SubstrateError,),
                label=f"read output of {job.unit_name}",
                **self._retry_kwargs,
            )
        except SubstrateError as e:
            self._mark_results_lost(result, e)
            return
        mount = self.backend.mount_path_for(job.bundle_name, self.settings.mount_path)

        try:
            findings = descriptor.parser.run(raw, mount)
        except OutputParseError as e:
            logger.warning(f"Unparseable output from {job.scanner_id} for scan {job.scan_id}: {e}")
            result.status, result.reason = STATUS_FAILED, REASON_PARSE_ERROR
            result.diagnostic = truncate(f"{e.message}\n\n{e.raw or ''}", self._diag_limit)
            return

        result.status = STATUS_COMPLETED
        result.findings = findings
        for f in findings:
            result.counts[f.severity] += 1

    def _persist(self, result: Collection) -> None:
        if result.status != STATUS_COMPLETED:
            return
        try:
            retry_call(
                lambda: self.sink.persist_findings(result.scan_id, result.scanner_id, result.findings),
                label=f"persist findings for {result.scan_id}/{result.scanner_id}",
                **self._retry_kwargs,
            )
        except Exception as e:
            self._mark_results_lost(result, e)

    def _record(self, result: Collection, unit: Optional[UnitStatus]) -> None:
        job = db.session.get(ScanJob, result.job_id)
        now = now_utc()

        job.status = result.status
        job.reason = result.reason
        job.counts_json = result.counts
        job.diagnostic = result.diagnostic
        job.completed_at = now
        if job.started_at is None:
            job.started_at = (unit.started_at if unit else None) or job.dispatched_at
        if unit is not None:
            job.attempts = max(job.attempts or 0, unit.attempts)
            job.exit_code = unit.exit_code
        db.session.commit()

    def _report(self, result: Collection) -> None:
        try:
            retry_call(
                lambda: self.sink.update_scan_status(
                    result.scan_id, result.scanner_id, result.status, result.counts, result.reason
                ),
                label=f"report status for {result.scan_id}/{result.scanner_id}",
                **self._retry_kwargs,
            )
        except Exception as e:
            self._mark_results_lost(result, e)
            job = db.session.get(ScanJob, result.job_id)
            job.status = result.status
            job.reason = result.reason
            job.counts_json = result.counts
            job.diagnostic = result.diagnostic
            db.session.commit()

    def _record_failure(self, job_id: int, error: Exception) -> None:
        """Give a claimed job a terminal status when collection itself broke."""
        try:
            db.session.execute(
                update(ScanJob)
                .where(ScanJob.id == job_id, ScanJob.status.in_(ACTIVE_STATUSES))
                .values(
                    status=STATUS_FAILED,
                    reason=REASON_COLLECTOR_ERROR,
                    counts_json=empty_counts(),
                    diagnostic=truncate(f"{type(error).__name__}: {error}", self._diag_limit),
                    completed_at=now_utc(),
                )
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Could not record collector failure for job {job_id}: {e}")

    def _mark_results_lost(self, result: Collection, error: Exception) -> None:
        logger.error(
            f"Results for {result.scan_id}/{result.scanner_id} could not be persisted "
            f"after {self.settings.persist_attempts} attempts: {error}"
        )
        result.status, result.reason = STATUS_FAILED, REASON_RESULTS_LOST
        result.counts = empty_counts()
        result.diagnostic = truncate(f"{type(error).__name__}: {error}", self._diag_limit)

    # ── Cleanup ─────────────────────────────────────────────────────

    def cleanup(self, job_id: int, bundle_name: str, unit_name: str, tenant: str) -> bool:
        """
        Delete bundle and unit, release the quota slot. Never raises.
        Returns True when both transient objects are confirmed gone.
        """
        unit_gone = self._delete_quietly(f"unit {unit_name}", lambda: self.dispatcher.delete_unit(unit_name))
        bundle_gone = self._delete_quietly(f"bundle {bundle_name}", lambda: self.delivery.delete_bundle(bundle_name))

        try:
            self.quota.release(job_id, tenant)
            if unit_gone and bundle_gone:
                job = db.session.get(ScanJob, job_id)
                if job is not None and job.cleaned_up_at is None:
                    job.cleaned_up_at = now_utc()
                    db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Cleanup bookkeeping for job {job_id} failed: {e}")

        return unit_gone and bundle_gone

    def _delete_quietly(self, label: str, fn: Callable[[], bool]) -> bool:
        try:
            retry_call(fn, retry_on=(ScanEngineError,), label=f"delete {label}", **self._retry_kwargs)
            return True
        except Exception as e:
            logger.error(f"Could not delete {label}; leaving it to TTL and sweep: {e}")
            return False

    def _read_output_quietly(self, unit_name: str) -> Optional[str]:
        try:
            return self.backend.read_output(unit_name)
        except ScanEngineError as e:
            logger.debug(f"No output available for {unit_name}: {e}")
            return None

    @property
    def _diag_limit(self) -> int:
        return self.settings.diagnostic_max_chars
