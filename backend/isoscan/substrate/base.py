# isoscan/substrate/base.py
"""
Execution substrate interface.

The engine needs two kinds of externally visible, ephemeral objects:

    bundle   a named, read-only set of source files   (Kubernetes: ConfigMap)
    unit     one sandboxed, resource-bounded process   (Kubernetes: Job)
             that mounts exactly one bundle read-only

Backends never retry internally and never decide policy. They create,
read, list and delete. Names are supplied by the caller (deterministic,
see isoscan.engine.naming); a create on an existing name raises
ArtifactExists so the caller can compare and decide.

Unit phases:
    pending     accepted, no process running yet
    running     a process attempt is running
    succeeded   an attempt exited 0
    failed      attempts exhausted, last exit non-zero
    timed_out   the hard wall-clock deadline was hit
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
MANAGED_BY = "isoscan"
LABEL_KIND = "isoscan.io/kind"
KIND_BUNDLE = "bundle"
KIND_UNIT = "unit"

ANNOTATION_SCAN_ID = "isoscan.io/scan-id"
ANNOTATION_SCANNER_ID = "isoscan.io/scanner-id"
ANNOTATION_DIGEST = "isoscan.io/source-digest"
ANNOTATION_BUNDLE = "isoscan.io/bundle"

PHASE_PENDING = "pending"
PHASE_RUNNING = "running"
PHASE_SUCCEEDED = "succeeded"
PHASE_FAILED = "failed"
PHASE_TIMED_OUT = "timed_out"

TERMINAL_PHASES = (PHASE_SUCCEEDED, PHASE_FAILED, PHASE_TIMED_OUT)


class ArtifactExists(Exception):
    """A bundle or unit with this name already exists."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} '{name}' already exists")
        self.kind = kind
        self.name = name


@dataclass
class BundleInfo:
    name: str
    digest: Optional[str] = None
    created_at: Optional[datetime] = None          # naive UTC
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class UnitSpec:
    """Everything a backend needs to create one execution unit."""
    name: str
    image: str
    command: List[str]
    bundle_name: str
    mount_path: str
    resources: Dict[str, Dict[str, str]]
    timeout_seconds: int
    max_attempts: int
    ttl_seconds: int
    env: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


@dataclass
class UnitStatus:
    name: str
    phase: str
    attempts: int = 0
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    bundle_name: Optional[str] = None
    created_at: Optional[datetime] = None          # naive UTC
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


def managed_labels(kind: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    labels = {LABEL_MANAGED_BY: MANAGED_BY, LABEL_KIND: kind}
    labels.update(extra or {})
    return labels


class ExecutionBackend(ABC):
    """
    Abstract execution substrate.

    To add a substrate:
        1. Subclass ExecutionBackend
        2. Implement the bundle and unit operations below
        3. Register it in isoscan.substrate.build_backend
    """

    name = "abstract"

    def mount_path_for(self, bundle_name: str, default: str) -> str:
        """Path at which a unit sees the bundle. Container backends use `default`."""
        return default

    # ── Bundles ─────────────────────────────────────────────────────

    @abstractmethod
    def create_bundle(
        self,
        name: str,
        files: Dict[str, str],
        labels: Dict[str, str],
        annotations: Dict[str, str],
    ) -> BundleInfo:
        """Create a read-only bundle. Raises ArtifactExists if the name is taken."""
        ...

    @abstractmethod
    def get_bundle(self, name: str) -> Optional[BundleInfo]:
        ...

    @abstractmethod
    def delete_bundle(self, name: str) -> bool:
        """Delete a bundle. Returns False if it did not exist."""
        ...

    @abstractmethod
    def list_bundles(self) -> List[BundleInfo]:
        """All bundles carrying the managed-by label."""
        ...

    # ── Units ───────────────────────────────────────────────────────

    @abstractmethod
    def create_unit(self, spec: UnitSpec) -> UnitStatus:
        """
        Submit a unit. Raises ArtifactExists if the name is taken,
        QuotaExceeded if the substrate refuses on quota grounds.
        """
        ...

    @abstractmethod
    def get_unit(self, name: str) -> Optional[UnitStatus]:
        ...

    @abstractmethod
    def read_output(self, name: str) -> str:
        """Captured stdout/stderr of the most recent attempt ("" if none)."""
        ...

    @abstractmethod
    def delete_unit(self, name: str) -> bool:
        """Delete a unit, killing any running process. False if absent."""
        ...

    @abstractmethod
    def list_units(self) -> List[UnitStatus]:
        ...

    def close(self) -> None:
        pass
