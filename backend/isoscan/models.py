from __future__ import annotations

from datetime import datetime, timezone
from sqlalchemy import UniqueConstraint
from .extensions import db


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── ScanJob.status (the externally visible outcome) ─────────────────
STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_TIMED_OUT = "timed_out"

ACTIVE_STATUSES = (STATUS_QUEUED, STATUS_RUNNING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_TIMED_OUT)

# ── ScanJob.terminal_state (how the execution unit ended) ───────────
UNIT_SUCCEEDED = "succeeded"
UNIT_FAILED = "failed"
UNIT_TIMED_OUT = "timed_out"
UNIT_CANCELLED = "cancelled"
UNIT_LOST = "lost"
UNIT_EXPIRED = "expired"
UNIT_DISPATCH_FAILED = "dispatch_failed"

# ── ScanJob.reason for non-completed outcomes ───────────────────────
REASON_SCANNER_FAILED = "scanner_failed"
REASON_TIMED_OUT = "timed_out"
REASON_CANCELLED = "cancelled"
REASON_UNIT_LOST = "unit_lost"
REASON_EXPIRED = "expired"
REASON_PARSE_ERROR = "parse_error"
REASON_RESULTS_LOST = "results_lost"
REASON_DISPATCH_FAILED = "dispatch_failed"
REASON_COLLECTOR_ERROR = "collector_error"

SEVERITIES = ("critical", "high", "medium", "low")


def empty_counts() -> dict:
    return {s: 0 for s in SEVERITIES}


class ScanJob(db.Model):
    """
    One (scan_id, scanner_id) pair: its bundle, its execution unit and
    its outcome. The pair is the idempotency key for every creation path.
    """
    __tablename__ = "scan_job"

    id = db.Column(db.Integer, primary_key=True)
    scan_id = db.Column(db.String(128), nullable=False, index=True)
    scanner_id = db.Column(db.String(64), nullable=False)
    tenant = db.Column(db.String(64), nullable=False, default="default", index=True)

    # Source identity. Same pair + different digest → Conflict.
    source_digest = db.Column(db.String(64), nullable=False)
    source_bytes = db.Column(db.Integer, nullable=False, default=0)

    bundle_name = db.Column(db.String(63), nullable=False)
    unit_name = db.Column(db.String(63), nullable=False)

    status = db.Column(db.String(20), nullable=False, default=STATUS_QUEUED, index=True)
    reason = db.Column(db.String(40), nullable=True)
    diagnostic = db.Column(db.Text, nullable=True)
    counts_json = db.Column(db.JSON, nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    exit_code = db.Column(db.Integer, nullable=True)

    submitted_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    dispatched_at = db.Column(db.DateTime, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    deadline_at = db.Column(db.DateTime, nullable=True)   # orchestrator-side timeout
    expires_at = db.Column(db.DateTime, nullable=True)    # TTL backstop

    # Dedup marker: set exactly once, by compare-and-set, by whoever
    # hands the job to the collector.
    collected_at = db.Column(db.DateTime, nullable=True, index=True)
    terminal_state = db.Column(db.String(20), nullable=True)

    quota_released_at = db.Column(db.DateTime, nullable=True)
    cleaned_up_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    findings = db.relationship(
        "Finding",
        back_populates="scan_job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("scan_id", "scanner_id", name="uq_scan_job_scan_scanner"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def counts(self) -> dict:
        counts = empty_counts()
        counts.update(self.counts_json or {})
        return counts


class Finding(db.Model):
    """A persisted NormalizedFinding (database results sink)."""
    __tablename__ = "finding"

    id = db.Column(db.Integer, primary_key=True)
    scan_job_id = db.Column(
        db.Integer,
        db.ForeignKey("scan_job.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    scan_id = db.Column(db.String(128), nullable=False, index=True)
    scanner_id = db.Column(db.String(64), nullable=False)

    dedupe_key = db.Column(db.String(64), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    severity = db.Column(db.String(20), nullable=False)
    description = db.Column(db.String(4000), nullable=False, default="")
    rule_id = db.Column(db.String(120), nullable=True)   # detector / SWC id / check id

    file_path = db.Column(db.String(500), nullable=True)
    line = db.Column(db.Integer, nullable=True)
    raw_evidence = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)

    scan_job = db.relationship("ScanJob", back_populates="findings")

    __table_args__ = (
        UniqueConstraint("scan_job_id", "dedupe_key", name="uq_finding_job_dedupe"),
    )


class TenantQuota(db.Model):
    """In-flight execution units per tenant. Updated only by atomic UPDATEs."""
    __tablename__ = "tenant_quota"

    tenant = db.Column(db.String(64), primary_key=True)
    in_flight = db.Column(db.Integer, nullable=False, default=0)
    max_in_flight = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)
