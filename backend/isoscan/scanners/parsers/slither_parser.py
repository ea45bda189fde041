# isoscan/scanners/parsers/slither_parser.py
"""
Slither output parser.

Slither is run with `--json -`, which prints one report per analysed
target to stdout:

    {
        "success": true,
        "error": null,
        "results": {
            "detectors": [
                {
                    "check": "reentrancy-eth",
                    "impact": "High",
                    "confidence": "Medium",
                    "description": "Reentrancy in Bank.withdraw(uint256) (Contract.sol#9-14): ...",
                    "first_markdown_element": "Contract.sol#L9-L14",
                    "elements": [
                        {
                            "type": "function",
                            "name": "withdraw",
                            "source_mapping": {
                                "filename_relative": "/src/Contract.sol",
                                "lines": [9, 10, 11, 12, 13, 14]
                            }
                        }
                    ]
                }
            ]
        }
    }

Severity mapping:
    Detectors in CRITICAL_CHECKS           → critical
    impact High                            → high
    impact Medium                          → medium
    impact Low / Informational / Optimization → low
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

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

logger = logging.getLogger(__name__)

# Detectors whose High-impact findings are directly exploitable for fund loss
CRITICAL_CHECKS = {
    "reentrancy-eth",
    "arbitrary-send-eth",
    "arbitrary-send-erc20",
    "suicidal",
    "controlled-delegatecall",
    "unprotected-upgrade",
    "delegatecall-loop",
    "msg-value-loop",
}

IMPACT_TO_SEVERITY = {
    "high": HIGH,
    "medium": MEDIUM,
    "low": LOW,
    "informational": LOW,
    "optimization": LOW,
}


class SlitherParser(BaseOutputParser):

    @property
    def name(self) -> str:
        return "slither"

    def parse(self, raw: str, mount_path: str) -> List[NormalizedFinding]:
        reports = [doc for doc in iter_json_documents(raw) if isinstance(doc, dict)]
        if not reports:
            raise OutputParseError("slither produced no JSON report")

        findings: List[NormalizedFinding] = []
        for report in reports:
            if "success" not in report:
                raise OutputParseError("slither report has no 'success' field")
            if not report["success"]:
                raise OutputParseError(
                    f"slither reported an error: {str(report.get('error'))[:500]}"
                )

            results = report.get("results") or {}
            for detector in results.get("detectors", []):
                findings.append(self._build_finding(detector, mount_path))

        return findings

    def _build_finding(self, detector: Dict[str, Any], mount_path: str) -> NormalizedFinding:
        check = detector["check"]
        impact = str(detector.get("impact", "")).lower()

        severity = IMPACT_TO_SEVERITY.get(impact, LOW)
        if check in CRITICAL_CHECKS and severity == HIGH:
            severity = CRITICAL

        description = (detector.get("description") or "").strip()
        headline = description.splitlines()[0] if description else check
        title = f"{check}: {headline}"
        if len(title) > 255:
            title = title[:252] + "..."

        file_path, line = self._location(detector, mount_path)

        return NormalizedFinding(
            title=title,
            description=description or f"Slither detector '{check}' matched.",
            severity=severity,
            rule_id=check,
            file_path=file_path,
            line=line,
            raw_evidence=detector,
        )

    @staticmethod
    def _location(detector: Dict[str, Any], mount_path: str) -> Tuple[Optional[str], Optional[int]]:
        for element in detector.get("elements") or []:
            mapping = element.get("source_mapping") or {}
            filename = mapping.get("filename_relative") or mapping.get("filename_absolute")
            if not filename:
                continue
            lines = mapping.get("lines") or []
            return relative_to_mount(filename, mount_path), (lines[0] if lines else None)
        return None, None
