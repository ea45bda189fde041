# isoscan/scanners/parsers/mythril_parser.py
"""
Mythril output parser (`myth analyze ... -o json`).

    {
        "error": null,
        "success": true,
        "issues": [
            {
                "title": "State access after external call",
                "swc-id": "107",
                "severity": "Medium",
                "description": "...",
                "contract": "Bank",
                "function": "withdraw(uint256)",
                "filename": "/src/Contract.sol",
                "lineno": 12,
                "code": "msg.sender.call{value: amount}(\"\")"
            }
        ]
    }
"""

from __future__ import annotations

from typing import Any, Dict, List

from isoscan.errors import OutputParseError
from isoscan.scanners.base import (
    CRITICAL,
    BaseOutputParser,
    NormalizedFinding,
    clamp_severity,
    iter_json_documents,
    relative_to_mount,
)

# SWC-105 unprotected ether withdrawal, SWC-106 unprotected selfdestruct,
# SWC-107 reentrancy, SWC-112 delegatecall to untrusted callee
CRITICAL_SWC = {"105", "106", "107", "112"}


class MythrilParser(BaseOutputParser):

    @property
    def name(self) -> str:
        return "mythril"

    def parse(self, raw: str, mount_path: str) -> List[NormalizedFinding]:
        reports = [
            doc for doc in iter_json_documents(raw)
            if isinstance(doc, dict) and "issues" in doc
        ]
        if not reports:
            raise OutputParseError("mythril produced no JSON report with an 'issues' list")

        findings: List[NormalizedFinding] = []
        for report in reports:
            if report.get("success") is False or report.get("error"):
                raise OutputParseError(
                    f"mythril reported an error: {str(report.get('error'))[:500]}"
                )
            for issue in report["issues"]:
                findings.append(self._build_finding(issue, mount_path))
        return findings

    def _build_finding(self, issue: Dict[str, Any], mount_path: str) -> NormalizedFinding:
        swc = str(issue.get("swc-id") or "").strip()
        title = issue["title"]
        severity = clamp_severity(issue.get("severity"))
        if swc in CRITICAL_SWC:
            severity = CRITICAL

        where = issue.get("function")
        if issue.get("contract") and where:
            where = f"{issue['contract']}.{where}"
        full_title = f"SWC-{swc}: {title}" if swc else title
        if where:
            full_title += f" in {where}"

        description = issue.get("description") or title
        if issue.get("code"):
            description += f"\n\nCode: {issue['code']}"

        lineno = issue.get("lineno")
        return NormalizedFinding(
            title=full_title[:255],
            description=description,
            severity=severity,
            rule_id=f"SWC-{swc}" if swc else title,
            file_path=relative_to_mount(issue.get("filename"), mount_path),
            line=int(lineno) if lineno is not None else None,
            raw_evidence=issue,
        )
