"""Per-tenant concurrency quota."""

from isoscan.engine.quota import TenantQuotaManager
from isoscan.extensions import db
from isoscan.models import ScanJob


def _job(scan_id, tenant="acme"):
    job = ScanJob(
        scan_id=scan_id,
        scanner_id="slither",
        tenant=tenant,
        source_digest="d" * 64,
        bundle_name=f"b-{scan_id}",
        unit_name=f"u-{scan_id}",
    )
    db.session.add(job)
    db.session.commit()
    return job


def test_acquire_until_limit(ctx):
    quota = TenantQuotaManager(default_limit=2)
    assert quota.acquire("acme") is True
    assert quota.acquire("acme") is True
    assert quota.acquire("acme") is False
    assert quota.in_flight("acme") == 2
    # Tenants are independent
    assert quota.acquire("other") is True


def test_release_is_once_per_job(ctx):
    quota = TenantQuotaManager(default_limit=2)
    job = _job("Q1")
    quota.acquire("acme")

    assert quota.release(job.id, "acme") is True
    assert quota.release(job.id, "acme") is False
    assert quota.in_flight("acme") == 0


def test_give_back_never_goes_negative(ctx):
    quota = TenantQuotaManager(default_limit=1)
    quota.give_back("acme")
    assert quota.in_flight("acme") == 0
    assert quota.acquire("acme") is True
