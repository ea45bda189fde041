# isoscan/scanners/__init__.py
"""
Scanner Registry.

Usage:
    from isoscan.scanners import default_registry

    registry = default_registry()
    descriptor = registry.resolve("slither")   # raises UnknownScanner
    argv = descriptor.command("/src")

Registered scanners:
    slither   Trail of Bits static analyzer (detector suite)
    mythril   symbolic execution, SWC-classified issues
    semgrep   pattern rules from the smart-contracts ruleset

The registry is built once at startup and is read-only afterwards.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping

from isoscan.errors import UnknownScanner
from isoscan.scanners.base import ResourceProfile, ScannerDescriptor
from isoscan.scanners.parsers import MythrilParser, SemgrepParser, SlitherParser


def _slither_command(mount_path: str) -> List[str]:
    # One report per delivered .sol file; stop at the first tool error.
    script = (
        'for f in "$1"/*.sol; do '
        'slither "$f" --json - --fail-none --disable-color || exit $?; '
        'done'
    )
    return ["sh", "-c", script, "slither", mount_path]


def _mythril_command(mount_path: str) -> List[str]:
    # myth exits 1 when it reports issues; only >1 is a real failure.
    script = (
        'myth analyze "$1"/*.sol -o json --execution-timeout 240; '
        'rc=$?; [ "$rc" -le 1 ] || exit "$rc"'
    )
    return ["sh", "-c", script, "mythril", mount_path]


def _semgrep_command(mount_path: str) -> List[str]:
    return [
        "semgrep", "scan",
        "--config", "p/smart-contracts",
        "--json",
        "--metrics=off",
        "--disable-version-check",
        mount_path,
    ]


# Registry of all built-in scanners.
ALL_SCANNERS: Dict[str, ScannerDescriptor] = {
    "slither": ScannerDescriptor(
        scanner_id="slither",
        image="ghcr.io/crytic/slither:latest",
        command_template=_slither_command,
        parser=SlitherParser(),
        resources=ResourceProfile(
            cpu_request="250m", cpu_limit="1",
            memory_request="256Mi", memory_limit="1Gi",
            timeout_seconds=300,
        ),
    ),
    "mythril": ScannerDescriptor(
        scanner_id="mythril",
        image="mythril/myth:latest",
        command_template=_mythril_command,
        parser=MythrilParser(),
        resources=ResourceProfile(
            cpu_request="500m", cpu_limit="2",
            memory_request="512Mi", memory_limit="2Gi",
            timeout_seconds=600,
        ),
    ),
    "semgrep": ScannerDescriptor(
        scanner_id="semgrep",
        image="semgrep/semgrep:latest",
        command_template=_semgrep_command,
        parser=SemgrepParser(),
        resources=ResourceProfile(
            cpu_request="250m", cpu_limit="1",
            memory_request="256Mi", memory_limit="1Gi",
            timeout_seconds=300,
        ),
        env={"SEMGREP_SEND_METRICS": "off"},
    ),
}


class ScannerRegistry:
    """Immutable scanner-id → descriptor lookup table."""

    def __init__(self, descriptors: Iterable[ScannerDescriptor]):
        table: Dict[str, ScannerDescriptor] = {}
        for d in descriptors:
            if d.scanner_id in table:
                raise ValueError(f"Duplicate scanner id: {d.scanner_id}")
            table[d.scanner_id] = d
        self._table: Mapping[str, ScannerDescriptor] = MappingProxyType(table)

    def resolve(self, scanner_id: str) -> ScannerDescriptor:
        if not isinstance(scanner_id, str):
            raise UnknownScanner(repr(scanner_id))
        descriptor = self._table.get(scanner_id)
        if descriptor is None:
            raise UnknownScanner(scanner_id)
        return descriptor

    def __contains__(self, scanner_id: str) -> bool:
        return isinstance(scanner_id, str) and scanner_id in self._table

    def ids(self) -> List[str]:
        return sorted(self._table)

    def descriptors(self) -> List[ScannerDescriptor]:
        return [self._table[k] for k in self.ids()]


def default_registry() -> ScannerRegistry:
    return ScannerRegistry(ALL_SCANNERS.values())


__all__ = [
    "ALL_SCANNERS",
    "ScannerRegistry",
    "ScannerDescriptor",
    "ResourceProfile",
    "default_registry",
]
