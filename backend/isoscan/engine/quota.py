# isoscan/engine/quota.py
"""
Per-tenant concurrency quota.

The only shared counter in the engine. Both directions are single atomic
UPDATE statements, so no lock is held and no read-modify-write race
exists between request threads and watcher threads:

    acquire   UPDATE tenant_quota SET in_flight = in_flight + 1
              WHERE tenant = :t AND in_flight < max_in_flight
    release   UPDATE scan_job SET quota_released_at = now
              WHERE id = :job AND quota_released_at IS NULL
              → only if that matched:
              UPDATE tenant_quota SET in_flight = in_flight - 1
              WHERE tenant = :t AND in_flight > 0

The compare-and-set on scan_job makes release idempotent per job, so a
cleanup retried by both the collector and the sweep decrements once.
"""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from isoscan.extensions import db
from isoscan.models import ScanJob, TenantQuota, now_utc

logger = logging.getLogger(__name__)


class TenantQuotaManager:

    def __init__(self, default_limit: int):
        self.default_limit = default_limit

    def _ensure_row(self, tenant: str) -> None:
        if db.session.get(TenantQuota, tenant) is not None:
            return
        try:
            db.session.add(TenantQuota(tenant=tenant, in_flight=0, max_in_flight=self.default_limit))
            db.session.commit()
        except IntegrityError:
            # Another request created it first.
            db.session.rollback()

    def acquire(self, tenant: str) -> bool:
        """Take one slot. Returns False when the tenant is at its limit."""
        self._ensure_row(tenant)
        result = db.session.execute(
            update(TenantQuota)
            .where(TenantQuota.tenant == tenant, TenantQuota.in_flight < TenantQuota.max_in_flight)
            .values(in_flight=TenantQuota.in_flight + 1, updated_at=now_utc())
        )
        db.session.commit()
        acquired = result.rowcount == 1
        if not acquired:
            logger.info(f"Quota exhausted for tenant '{tenant}'")
        return acquired

    def give_back(self, tenant: str) -> None:
        """Return a slot that was never attached to a job."""
        db.session.execute(
            update(TenantQuota)
            .where(TenantQuota.tenant == tenant, TenantQuota.in_flight > 0)
            .values(in_flight=TenantQuota.in_flight - 1, updated_at=now_utc())
        )
        db.session.commit()

    def release(self, job_id: int, tenant: str) -> bool:
        """Release the slot held by a job. Safe to call any number of times."""
        claimed = db.session.execute(
            update(ScanJob)
            .where(ScanJob.id == job_id, ScanJob.quota_released_at.is_(None))
            .values(quota_released_at=now_utc())
        )
        if claimed.rowcount != 1:
            db.session.commit()
            return False

        db.session.execute(
            update(TenantQuota)
            .where(TenantQuota.tenant == tenant, TenantQuota.in_flight > 0)
            .values(in_flight=TenantQuota.in_flight - 1, updated_at=now_utc())
        )
        db.session.commit()
        return True

    def in_flight(self, tenant: str) -> int:
        row = db.session.get(TenantQuota, tenant)
        return row.in_flight if row else 0
