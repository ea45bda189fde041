"""
Orchestration facade: end-to-end scenarios, idempotency, validation
order, rollback after partial creation, aggregation and cancellation.
"""

import threading

import pytest

from fakes import REENTRANCY_DETECTOR, REENTRANT_BANK, slither_report
from isoscan.errors import (
    Conflict,
    InvalidSubmission,
    PayloadTooLarge,
    QuotaExceeded,
    ScanNotFound,
    SubstrateError,
    UnknownScanner,
)
from isoscan.extensions import db
from isoscan.models import ScanJob, TenantQuota

ONE_MIB = 1024 * 1024


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

def test_reentrant_contract_reports_critical(ctx, orchestrator, backend, tick):
    """S1 / slither on a reentrant withdraw() completes with a critical finding."""
    result = orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)
    assert result.accepted is True
    assert result.created is True

    # The unit sees exactly the submitted source, read-only at /src.
    bundle = backend.bundles[result.job.bundle_name]
    assert bundle["files"] == {"Contract.sol": REENTRANT_BANK}
    spec = backend.spec(result.job.unit_name)
    assert spec.mount_path == "/src"
    assert spec.bundle_name == result.job.bundle_name

    backend.finish(result.job.unit_name, output=slither_report([REENTRANCY_DETECTOR]))
    tick()

    outcome = orchestrator.get_status("S1")
    assert outcome.status == "completed"
    assert outcome.counts["critical"] >= 1
    assert outcome.completed_at is not None
    assert backend.bundles == {}
    assert backend.units == {}


def test_oversized_payload_creates_nothing(ctx, orchestrator, backend):
    """S2 / 1 MiB + 1 byte fails fast."""
    with pytest.raises(PayloadTooLarge):
        orchestrator.trigger_scan("S2", "slither", source_code="a" * (ONE_MIB + 1))

    assert backend.bundles == {}
    assert backend.units == {}
    assert ScanJob.query.count() == 0
    assert db.session.get(TenantQuota, "default") is None


def test_concurrent_identical_triggers_dispatch_once(app, orchestrator, backend):
    """S3 / mythril triggered from several threads at once."""
    results, errors = [], []
    barrier = threading.Barrier(4)

    def trigger():
        with app.app_context():
            try:
                barrier.wait()
                r = orchestrator.trigger_scan("S3", "mythril", source_code=REENTRANT_BANK)
                results.append((r.accepted, r.created))
            except Exception as e:
                errors.append(e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=trigger) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results) == 4
    assert all(accepted for accepted, _ in results)
    assert sum(1 for _, created in results if created) == 1
    assert len(backend.unit_creations) == 1
    assert len(backend.bundle_creations) == 1

    with app.app_context():
        assert ScanJob.query.filter_by(scan_id="S3").count() == 1
        assert db.session.get(TenantQuota, "default").in_flight == 1


# ---------------------------------------------------------------------------
# Idempotency and conflicts
# ---------------------------------------------------------------------------

def test_repeat_trigger_is_idempotent(ctx, orchestrator, backend):
    first = orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)
    second = orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)

    assert second.accepted is True
    assert second.created is False
    assert second.job.id == first.job.id
    assert len(backend.unit_creations) == 1
    assert db.session.get(TenantQuota, "default").in_flight == 1


def test_repeat_after_completion_does_not_rerun(ctx, orchestrator, backend, tick):
    job = orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK).job
    backend.finish(job.unit_name, output=slither_report([]))
    tick()

    again = orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)
    assert again.created is False
    assert again.job.status == "completed"
    assert len(backend.unit_creations) == 1


def test_same_pair_different_source_conflicts(ctx, orchestrator):
    orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)
    with pytest.raises(Conflict) as exc:
        orchestrator.trigger_scan("S1", "slither", source_code="contract Other {}")
    assert exc.value.http_status == 409


def test_scan_id_reused_across_scanners_with_other_source_conflicts(ctx, orchestrator):
    orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)
    with pytest.raises(Conflict):
        orchestrator.trigger_scan("S1", "mythril", source_code="contract Other {}")


def test_second_scanner_on_same_source_is_accepted(ctx, orchestrator, backend):
    orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)
    result = orchestrator.trigger_scan("S1", "mythril", source_code=REENTRANT_BANK)

    assert result.created is True
    assert len(backend.unit_creations) == 2


def test_files_map_is_order_insensitive(ctx, orchestrator):
    a = {"A.sol": "contract A {}", "B.sol": "contract B {}"}
    b = {"B.sol": "contract B {}", "A.sol": "contract A {}"}
    orchestrator.trigger_scan("F1", "semgrep", files=a)
    assert orchestrator.trigger_scan("F1", "semgrep", files=b).created is False


# ---------------------------------------------------------------------------
# Validation order
# ---------------------------------------------------------------------------

def test_unknown_scanner_wins_over_other_errors(ctx, orchestrator, backend):
    with pytest.raises(UnknownScanner):
        orchestrator.trigger_scan("S1", "foo", source_code="a" * (ONE_MIB + 1))
    assert backend.bundles == {}


def test_invalid_submission_before_size(ctx, orchestrator):
    with pytest.raises(InvalidSubmission):
        orchestrator.trigger_scan("bad id with spaces", "slither", source_code="a" * (ONE_MIB + 1))


@pytest.mark.parametrize("kwargs", [
    {},
    {"source_code": "x", "files": {"A.sol": "x"}},
    {"source_code": 12},
    {"files": ["A.sol"]},
    {"source_code": "x", "tenant": "no spaces please"},
])
def test_malformed_submissions(ctx, orchestrator, kwargs):
    with pytest.raises(InvalidSubmission):
        orchestrator.trigger_scan("S1", "slither", **kwargs)


def test_tenant_quota_exceeded(ctx, orchestrator, settings, backend):
    for i in range(settings.tenant_concurrency_limit):
        orchestrator.trigger_scan(f"Q{i}", "slither", source_code=REENTRANT_BANK, tenant="acme")

    with pytest.raises(QuotaExceeded):
        orchestrator.trigger_scan("Q-over", "slither", source_code=REENTRANT_BANK, tenant="acme")

    assert ScanJob.query.filter_by(scan_id="Q-over").count() == 0
    # Another tenant is unaffected
    assert orchestrator.trigger_scan("Q-other", "slither", source_code=REENTRANT_BANK, tenant="beta").accepted


# ---------------------------------------------------------------------------
# Rollback after partial creation
# ---------------------------------------------------------------------------

def test_unit_failure_rolls_back_bundle_and_quota_and_fails_row(ctx, orchestrator, backend, job_row):
    backend.fail["create_unit"] = [SubstrateError("apiserver unavailable")]

    with pytest.raises(SubstrateError):
        orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)

    assert backend.bundles == {}
    job = job_row("S1", "slither")
    assert (job.status, job.reason) == ("failed", "dispatch_failed")
    assert "apiserver unavailable" in job.diagnostic
    assert job.collected_at is not None
    assert db.session.get(TenantQuota, "default").in_flight == 0

    # The same call succeeds on retry and reuses the row.
    result = orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)
    assert result.created is True
    assert result.job.id == job.id
    assert result.job.status == "queued"
    assert result.job.dispatched_at is not None
    assert result.job.reason is None
    assert backend.units.keys() == {job.unit_name}
    assert db.session.get(TenantQuota, "default").in_flight == 1


def test_caller_that_lost_the_insert_race_sees_a_terminal_status(ctx, orchestrator, backend):
    backend.fail["create_bundle"] = [SubstrateError("apiserver unavailable")]
    with pytest.raises(SubstrateError):
        orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)

    # A concurrent identical request answered "accepted" must still resolve.
    outcome = orchestrator.get_status("S1")
    assert outcome.status == "failed"
    assert outcome.reason == "dispatch_failed"
    assert outcome.completed_at is not None


def test_dispatch_failed_retry_respects_tenant_quota(ctx, orchestrator, settings, backend, job_row):
    backend.fail["create_unit"] = [SubstrateError("apiserver unavailable")]
    with pytest.raises(SubstrateError):
        orchestrator.trigger_scan("R1", "slither", source_code=REENTRANT_BANK, tenant="acme")
    for i in range(settings.tenant_concurrency_limit):
        orchestrator.trigger_scan(f"Q{i}", "slither", source_code=REENTRANT_BANK, tenant="acme")

    with pytest.raises(QuotaExceeded):
        orchestrator.trigger_scan("R1", "slither", source_code=REENTRANT_BANK, tenant="acme")

    assert job_row("R1", "slither").reason == "dispatch_failed"


def test_substrate_quota_rolls_back(ctx, orchestrator, backend):
    backend.unit_limit = 0
    with pytest.raises(QuotaExceeded):
        orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)
    assert backend.bundles == {}
    assert db.session.get(TenantQuota, "default").in_flight == 0


def test_stale_unit_from_other_source_conflicts_and_keeps_it(ctx, orchestrator, backend):
    from isoscan.engine import naming

    stale = naming.unit_name("S1", "slither")
    backend.plant_unit(stale, naming.bundle_name("S1", "slither"), digest="f" * 64)

    with pytest.raises(Conflict):
        orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)

    assert stale in backend.units
    assert backend.bundles == {}
    assert ScanJob.query.one().reason == "dispatch_failed"


# ---------------------------------------------------------------------------
# Status and cancel
# ---------------------------------------------------------------------------

def test_status_of_unknown_scan(ctx, orchestrator):
    with pytest.raises(ScanNotFound):
        orchestrator.get_status("nope")


def test_status_aggregates_scanners(ctx, orchestrator, backend, tick):
    slither = orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK).job
    mythril = orchestrator.trigger_scan("S1", "mythril", source_code=REENTRANT_BANK).job

    assert orchestrator.get_status("S1").status == "queued"

    backend.finish(slither.unit_name, output=slither_report([REENTRANCY_DETECTOR]))
    backend.start(mythril.unit_name)
    tick()

    outcome = orchestrator.get_status("S1")
    assert outcome.status == "running"
    assert outcome.completed_at is None
    assert outcome.counts["critical"] == 1

    backend.finish(mythril.unit_name, output="not json at all")
    tick()

    outcome = orchestrator.get_status("S1")
    assert outcome.status == "failed"
    assert outcome.reason == "parse_error"
    assert outcome.counts["critical"] == 1
    assert [s["scannerId"] for s in outcome.scanners] == ["mythril", "slither"]
    body = outcome.to_dict()
    assert body["scanId"] == "S1"
    assert body["completedAt"].endswith("Z")


def test_cancel_stops_units_and_cleans_up(ctx, orchestrator, backend, job_row):
    job = orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK).job
    backend.start(job.unit_name)

    assert orchestrator.cancel("S1") is True

    job = job_row("S1", "slither")
    assert job.status == "failed"
    assert job.reason == "cancelled"
    assert backend.units == {}
    assert backend.bundles == {}
    assert db.session.get(TenantQuota, "default").in_flight == 0

    # Cancelling again is a no-op acknowledgement.
    assert orchestrator.cancel("S1") is True


def test_cancel_unknown_scan(ctx, orchestrator):
    with pytest.raises(ScanNotFound):
        orchestrator.cancel("nope")


def test_cancel_during_dispatch_is_collected_exactly_once(app, ctx, orchestrator, backend, engine, job_row, monkeypatch):
    collected = []
    collect = engine.collector.collect

    def counting_collect(job_id, unit=None):
        collected.append(job_id)
        return collect(job_id, unit)

    monkeypatch.setattr(engine.collector, "collect", counting_collect)

    def cancel_mid_dispatch():
        with app.app_context():
            assert orchestrator.cancel("S1") is True

    backend.before["create_unit"] = cancel_mid_dispatch
    result = orchestrator.trigger_scan("S1", "slither", source_code=REENTRANT_BANK)

    assert result.accepted is True
    job = job_row("S1", "slither")
    assert (job.status, job.reason) == ("failed", "cancelled")
    assert job.dispatched_at is None
    assert job.cleaned_up_at is not None
    assert collected == [job.id]
    assert backend.units == {}
    assert backend.bundles == {}
    assert db.session.get(TenantQuota, "default").in_flight == 0
