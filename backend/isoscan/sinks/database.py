# isoscan/sinks/database.py
"""
Default sink: findings go into the engine's own `finding` table.

persist_findings deletes the pair's previous rows and inserts the new set
in one transaction, so a retried call leaves exactly one copy.
The job row itself is the status record, so update_scan_status has
nothing extra to write.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from isoscan.extensions import db
from isoscan.models import Finding, ScanJob, now_utc
from isoscan.scanners.base import NormalizedFinding
from isoscan.sinks.base import ResultSink

logger = logging.getLogger(__name__)


class DatabaseResultSink(ResultSink):

    name = "database"

    def persist_findings(
        self,
        scan_id: str,
        scanner_id: str,
        findings: List[NormalizedFinding],
    ) -> None:
        job = ScanJob.query.filter_by(scan_id=scan_id, scanner_id=scanner_id).first()
        if job is None:
            raise LookupError(f"No job for {scan_id}/{scanner_id}")

        try:
            Finding.query.filter_by(scan_job_id=job.id).delete(synchronize_session=False)
            now = now_utc()
            for f in findings:
                db.session.add(Finding(
                    scan_job_id=job.id,
                    scan_id=scan_id,
                    scanner_id=scanner_id,
                    dedupe_key=f.dedupe_key,
                    title=f.title[:255],
                    severity=f.severity,
                    description=(f.description or "")[:4000],
                    rule_id=f.rule_id or None,
                    file_path=f.file_path,
                    line=f.line,
                    raw_evidence=f.raw_evidence,
                    created_at=now,
                ))
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.debug(f"Stored {len(findings)} findings for {scan_id}/{scanner_id}")

    def update_scan_status(
        self,
        scan_id: str,
        scanner_id: str,
        status: str,
        counts: Dict[str, int],
        reason: Optional[str] = None,
    ) -> None:
        return None
