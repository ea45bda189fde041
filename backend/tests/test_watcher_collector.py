"""
Completion watcher + result collector: classification, exactly-once
hand-off, persistence retries and the cleanup invariant.
"""

from datetime import timedelta

from fakes import PRAGMA_DETECTOR, REENTRANCY_DETECTOR, REENTRANT_BANK, slither_report
from isoscan.engine.watcher import claim
from isoscan.errors import SubstrateError
from isoscan.extensions import db
from isoscan.models import Finding, ScanJob, TenantQuota, now_utc
from isoscan.substrate.base import PHASE_FAILED, PHASE_TIMED_OUT


def _trigger(orchestrator, scan_id="S1", scanner_id="slither", tenant=None):
    return orchestrator.trigger_scan(scan_id, scanner_id, source_code=REENTRANT_BANK, tenant=tenant).job


def _assert_cleaned_up(backend, job):
    assert job.bundle_name not in backend.bundles
    assert job.unit_name not in backend.units
    assert job.quota_released_at is not None


def test_successful_scan_is_collected_and_cleaned_up(ctx, orchestrator, backend, sink, tick, job_row):
    job = _trigger(orchestrator)
    backend.finish(job.unit_name, output=slither_report([REENTRANCY_DETECTOR, PRAGMA_DETECTOR]))

    assert tick() == 1

    job = job_row("S1", "slither")
    assert job.status == "completed"
    assert job.reason is None
    assert job.counts["critical"] == 1
    assert job.counts["low"] == 1
    assert job.terminal_state == "succeeded"
    assert job.collected_at is not None
    assert job.cleaned_up_at is not None
    _assert_cleaned_up(backend, job)

    assert len(sink.findings[("S1", "slither")]) == 2
    assert sink.statuses[("S1", "slither")]["status"] == "completed"


def test_running_unit_marks_job_running(ctx, orchestrator, backend, tick, job_row):
    job = _trigger(orchestrator)
    backend.start(job.unit_name)

    assert tick() == 0

    job = job_row("S1", "slither")
    assert job.status == "running"
    assert job.started_at is not None
    assert job.collected_at is None
    assert job.unit_name in backend.units


def test_failed_unit_keeps_diagnostic(ctx, orchestrator, backend, tick, job_row):
    job = _trigger(orchestrator)
    backend.finish(job.unit_name, phase=PHASE_FAILED, output="Error: solc crashed", exit_code=2, attempts=3)

    tick()

    job = job_row("S1", "slither")
    assert job.status == "failed"
    assert job.reason == "scanner_failed"
    assert job.exit_code == 2
    assert job.attempts == 3
    assert "solc crashed" in job.diagnostic
    _assert_cleaned_up(backend, job)


def test_substrate_deadline_is_timed_out(ctx, orchestrator, backend, tick, job_row):
    job = _trigger(orchestrator)
    backend.finish(job.unit_name, phase=PHASE_TIMED_OUT, exit_code=None)

    tick()

    job = job_row("S1", "slither")
    assert job.status == "timed_out"
    assert job.reason == "timed_out"
    _assert_cleaned_up(backend, job)


def test_orchestrator_deadline_times_out_running_unit(ctx, orchestrator, backend, tick, job_row):
    job = _trigger(orchestrator)
    backend.start(job.unit_name)
    job.deadline_at = now_utc() - timedelta(seconds=1)
    db.session.commit()

    tick()

    job = job_row("S1", "slither")
    assert job.status == "timed_out"
    _assert_cleaned_up(backend, job)


def test_vanished_unit_is_lost(ctx, orchestrator, backend, tick, job_row):
    job = _trigger(orchestrator)
    backend.vanish(job.unit_name)

    tick()

    job = job_row("S1", "slither")
    assert job.status == "failed"
    assert job.reason == "unit_lost"
    assert job.bundle_name not in backend.bundles


def test_parse_error_retains_raw_output(ctx, orchestrator, backend, sink, tick, job_row):
    job = _trigger(orchestrator)
    backend.finish(job.unit_name, output='{"unexpected": "shape"}')

    tick()

    job = job_row("S1", "slither")
    assert job.status == "failed"
    assert job.reason == "parse_error"
    assert '"unexpected"' in job.diagnostic
    assert ("S1", "slither") not in sink.findings
    _assert_cleaned_up(backend, job)


def test_transient_persist_failure_is_retried(ctx, orchestrator, backend, sink, tick, job_row):
    sink.fail_persist = 2
    job = _trigger(orchestrator)
    backend.finish(job.unit_name, output=slither_report([REENTRANCY_DETECTOR]))

    tick()

    job = job_row("S1", "slither")
    assert job.status == "completed"
    assert sink.persist_calls == 3


def test_persist_exhaustion_is_results_lost(ctx, orchestrator, backend, sink, tick, job_row):
    sink.fail_persist = 10
    job = _trigger(orchestrator)
    backend.finish(job.unit_name, output=slither_report([REENTRANCY_DETECTOR]))

    tick()

    job = job_row("S1", "slither")
    assert job.status == "failed"
    assert job.reason == "results_lost"
    assert sink.persist_calls == 3
    # Cleanup still happens
    _assert_cleaned_up(backend, job)


def test_cleanup_failure_is_left_to_sweep(ctx, orchestrator, backend, tick, job_row):
    job = _trigger(orchestrator)
    backend.finish(job.unit_name, output=slither_report([]))
    backend.fail["delete_unit"] = [SubstrateError("api down")] * 3

    tick()

    job = job_row("S1", "slither")
    assert job.status == "completed"
    assert job.unit_name in backend.units
    assert job.bundle_name not in backend.bundles
    assert job.cleaned_up_at is None
    assert job.quota_released_at is not None


def test_get_unit_error_skips_until_next_tick(ctx, orchestrator, backend, tick, job_row):
    job = _trigger(orchestrator)
    backend.finish(job.unit_name, output=slither_report([]))
    backend.fail["get_unit"] = [SubstrateError("api down")]

    assert tick() == 0
    assert job_row("S1", "slither").status == "queued"

    assert tick() == 1
    assert job_row("S1", "slither").status == "completed"


def test_terminal_handoff_happens_once(ctx, orchestrator, backend, engine, job_row):
    job = _trigger(orchestrator)
    job_id = job.id

    assert claim(job_id, "succeeded") is True
    assert claim(job_id, "cancelled") is False
    assert job_row("S1", "slither").terminal_state == "succeeded"

    # A claimed job is no longer polled
    backend.finish(job.unit_name, output=slither_report([]))
    assert engine.watcher.tick() == 0


def test_database_sink_stores_findings(ctx, orchestrator, backend, engine, job_row):
    from isoscan.sinks.database import DatabaseResultSink

    engine.collector.sink = DatabaseResultSink()
    job = _trigger(orchestrator)
    backend.finish(job.unit_name, output=slither_report([REENTRANCY_DETECTOR]))

    engine.watcher.tick()

    job = job_row("S1", "slither")
    rows = Finding.query.filter_by(scan_job_id=job.id).all()
    assert [r.severity for r in rows] == ["critical"]
    assert rows[0].rule_id == "reentrancy-eth"
    assert rows[0].line == 10


def test_quota_slot_returned_after_collection(ctx, orchestrator, backend, tick):
    job = _trigger(orchestrator, tenant="acme")
    assert db.session.get(TenantQuota, "acme").in_flight == 1

    backend.finish(job.unit_name, output=slither_report([]))
    tick()

    assert db.session.get(TenantQuota, "acme").in_flight == 0


def test_many_units_are_polled_independently(ctx, orchestrator, backend, tick):
    jobs = [_trigger(orchestrator, scan_id=f"M{i}") for i in range(4)]
    for job in jobs:
        backend.finish(job.unit_name, output=slither_report([]))
    backend.fail["get_unit"] = [SubstrateError("flaky")]

    collected = tick()

    # One poll failed; the other units were still collected.
    assert collected == 3
    statuses = [j.status for j in ScanJob.query.all()]
    assert statuses.count("completed") == 3
    assert statuses.count("queued") == 1

    assert tick() == 1


def test_undispatched_row_is_not_polled(ctx, orchestrator, backend, engine, job_row):
    seen = []

    def tick_mid_dispatch():
        seen.append(engine.watcher.tick())

    backend.before["create_bundle"] = tick_mid_dispatch
    job = _trigger(orchestrator)

    assert seen == [0]
    job = job_row("S1", "slither")
    assert job.status == "queued"
    assert job.collected_at is None
    assert job.dispatched_at is not None
    assert job.unit_name in backend.units

    backend.finish(job.unit_name, output=slither_report([REENTRANCY_DETECTOR]))
    assert engine.watcher.tick() == 1
    job = job_row("S1", "slither")
    assert job.status == "completed"
    _assert_cleaned_up(backend, job)


def test_unexpected_collector_error_fails_job_and_cleans_up(ctx, orchestrator, backend, engine, tick, job_row):
    from isoscan.scanners import ALL_SCANNERS, ScannerRegistry

    job = _trigger(orchestrator)
    backend.finish(job.unit_name, output=slither_report([REENTRANCY_DETECTOR]))
    # The scanner disappears from the collector's registry between dispatch and collection.
    engine.collector.registry = ScannerRegistry([ALL_SCANNERS["mythril"]])

    assert tick() == 0

    job = job_row("S1", "slither")
    assert (job.status, job.reason) == ("failed", "collector_error")
    assert "slither" in job.diagnostic
    assert job.completed_at is not None
    _assert_cleaned_up(backend, job)
    assert db.session.get(TenantQuota, "default").in_flight == 0

    # Terminal now, so the sweep never picks it up again.
    job.collected_at = now_utc() - timedelta(days=1)
    db.session.commit()
    assert engine.sweeper.sweep(commit=True).recollected == []
