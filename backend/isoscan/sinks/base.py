# isoscan/sinks/base.py
"""
Result sinks: where normalized findings and per-scanner outcomes go.

Both calls must be idempotent. The collector retries them with backoff,
so a sink may see the same (scan_id, scanner_id) more than once and must
overwrite rather than append.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from isoscan.scanners.base import NormalizedFinding


class ResultSink(ABC):

    name = "abstract"

    @abstractmethod
    def persist_findings(
        self,
        scan_id: str,
        scanner_id: str,
        findings: List[NormalizedFinding],
    ) -> None:
        """Replace the stored findings for this (scan_id, scanner_id)."""
        ...

    @abstractmethod
    def update_scan_status(
        self,
        scan_id: str,
        scanner_id: str,
        status: str,
        counts: Dict[str, int],
        reason: Optional[str] = None,
    ) -> None:
        ...
