# isoscan/sinks/http.py
"""
HTTP sink: hands results to an external results API.

    PUT {base}/scans/{scan_id}/scanners/{scanner_id}/findings
    PUT {base}/scans/{scan_id}/scanners/{scanner_id}/status

PUT keeps both calls idempotent. When a secret is configured the body is
signed with HMAC-SHA256 in the X-Isoscan-Signature header. Any non-2xx
response raises, so the collector's retry loop sees it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Dict, List, Optional
from urllib.parse import quote

import requests

from isoscan.scanners.base import NormalizedFinding
from isoscan.sinks.base import ResultSink

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Isoscan-Signature"


class SinkDeliveryError(Exception):
    pass


class HttpResultSink(ResultSink):

    name = "http"

    def __init__(
        self,
        base_url: str,
        secret: Optional[str] = None,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise RuntimeError("ISOSCAN_RESULTS_URL is required for the http results sink")
        self.base_url = base_url.rstrip("/")
        self.secret = secret or ""
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, scan_id: str, scanner_id: str, leaf: str) -> str:
        return (
            f"{self.base_url}/scans/{quote(scan_id, safe='')}"
            f"/scanners/{quote(scanner_id, safe='')}/{leaf}"
        )

    def _put(self, url: str, payload: dict) -> None:
        body = json.dumps(payload, default=str)
        headers = {"Content-Type": "application/json"}

        if self.secret:
            sig = hmac.new(self.secret.encode(), body.encode(), hashlib.sha256).hexdigest()
            headers[SIGNATURE_HEADER] = f"sha256={sig}"

        try:
            resp = self.session.put(url, data=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise SinkDeliveryError(f"Results API request failed: {str(e)[:200]}") from e

        if not 200 <= resp.status_code < 300:
            raise SinkDeliveryError(f"Results API returned {resp.status_code}: {resp.text[:200]}")

    def persist_findings(
        self,
        scan_id: str,
        scanner_id: str,
        findings: List[NormalizedFinding],
    ) -> None:
        self._put(
            self._url(scan_id, scanner_id, "findings"),
            {
                "scanId": scan_id,
                "scannerId": scanner_id,
                "findings": [f.to_dict() for f in findings],
            },
        )
        logger.debug(f"Delivered {len(findings)} findings for {scan_id}/{scanner_id}")

    def update_scan_status(
        self,
        scan_id: str,
        scanner_id: str,
        status: str,
        counts: Dict[str, int],
        reason: Optional[str] = None,
    ) -> None:
        self._put(
            self._url(scan_id, scanner_id, "status"),
            {
                "scanId": scan_id,
                "scannerId": scanner_id,
                "status": status,
                "counts": counts,
                "reason": reason,
            },
        )
