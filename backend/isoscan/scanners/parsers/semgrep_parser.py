# isoscan/scanners/parsers/semgrep_parser.py
"""
Semgrep output parser (`semgrep scan --json`).

Semgrep's severities are ERROR / WARNING / INFO. ERROR results whose rule
metadata declares impact HIGH are promoted to critical.
"""

from __future__ import annotations

from typing import Any, Dict, List

from isoscan.errors import OutputParseError
from isoscan.scanners.base import (
    CRITICAL,
    HIGH,
    LOW,
    MEDIUM,
    BaseOutputParser,
    NormalizedFinding,
    iter_json_documents,
    relative_to_mount,
)

LEVEL_TO_SEVERITY = {
    "ERROR": HIGH,
    "WARNING": MEDIUM,
    "INFO": LOW,
}


class SemgrepParser(BaseOutputParser):

    @property
    def name(self) -> str:
        return "semgrep"

    def parse(self, raw: str, mount_path: str) -> List[NormalizedFinding]:
        report = None
        for doc in iter_json_documents(raw):
            if isinstance(doc, dict) and "results" in doc:
                report = doc
        if report is None:
            raise OutputParseError("semgrep produced no JSON report with a 'results' list")

        return [self._build_finding(r, mount_path) for r in report["results"]]

    def _build_finding(self, result: Dict[str, Any], mount_path: str) -> NormalizedFinding:
        check_id = result["check_id"]
        extra = result.get("extra") or {}
        metadata = extra.get("metadata") or {}

        level = str(extra.get("severity", "INFO")).upper()
        severity = LEVEL_TO_SEVERITY.get(level, LOW)
        if severity == HIGH and str(metadata.get("impact", "")).upper() == "HIGH":
            severity = CRITICAL

        message = (extra.get("message") or check_id).strip()
        rule_name = check_id.rsplit(".", 1)[-1]

        return NormalizedFinding(
            title=f"{rule_name}: {message.splitlines()[0]}"[:255],
            description=message,
            severity=severity,
            rule_id=check_id,
            file_path=relative_to_mount(result.get("path"), mount_path),
            line=(result.get("start") or {}).get("line"),
            raw_evidence=result,
        )
