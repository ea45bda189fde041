# isoscan/engine/dispatcher.py
"""
Job Dispatcher.

Turns (scan_id, scanner_id, bundle) into a sandboxed execution unit:

    1. Resolve the scanner descriptor (UnknownScanner propagates)
    2. Build a UnitSpec: bundle mounted read-only at the mount path,
       resource requests/limits, hard deadline = scanner timeout,
       bounded attempts, TTL backstop
    3. Submit to the substrate and return a UnitHandle

Idempotency: the unit name is derived from the pair, so a second dispatch
hits ArtifactExists; the existing unit is returned when it mounts the same
bundle with the same content, and Conflict is raised otherwise.

The call blocks only on the substrate's accept latency, never on the
scanner itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from isoscan.engine import naming
from isoscan.engine.delivery import BundleRef
from isoscan.errors import Conflict
from isoscan.models import now_utc
from isoscan.scanners import ScannerRegistry
from isoscan.substrate.base import (
    ANNOTATION_BUNDLE,
    ANNOTATION_DIGEST,
    ANNOTATION_SCAN_ID,
    ANNOTATION_SCANNER_ID,
    KIND_UNIT,
    ArtifactExists,
    ExecutionBackend,
    UnitSpec,
    UnitStatus,
    managed_labels,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitHandle:
    unit_name: str
    bundle_name: str
    scan_id: str
    scanner_id: str
    created: bool                 # False when an existing unit was returned
    dispatched_at: datetime
    deadline_at: datetime         # dispatch + timeout + grace
    expires_at: datetime          # dispatch + timeout + TTL


class JobDispatcher:

    def __init__(
        self,
        backend: ExecutionBackend,
        registry: ScannerRegistry,
        mount_path: str,
        max_attempts: int,
        ttl_seconds: int,
        timeout_grace_seconds: int,
    ):
        self.backend = backend
        self.registry = registry
        self.mount_path = mount_path
        self.max_attempts = max_attempts
        self.ttl_seconds = ttl_seconds
        self.timeout_grace_seconds = timeout_grace_seconds

    def build_spec(self, scan_id: str, scanner_id: str, bundle: BundleRef) -> UnitSpec:
        descriptor = self.registry.resolve(scanner_id)
        mount = self.backend.mount_path_for(bundle.name, self.mount_path)

        return UnitSpec(
            name=naming.unit_name(scan_id, scanner_id),
            image=descriptor.image,
            command=descriptor.command(mount),
            bundle_name=bundle.name,
            mount_path=mount,
            resources=descriptor.resources.as_resources(),
            timeout_seconds=descriptor.timeout_seconds,
            max_attempts=self.max_attempts,
            ttl_seconds=self.ttl_seconds,
            env=dict(descriptor.env),
            labels=managed_labels(KIND_UNIT, {"isoscan.io/scanner": scanner_id}),
            annotations={
                ANNOTATION_SCAN_ID: scan_id,
                ANNOTATION_SCANNER_ID: scanner_id,
                ANNOTATION_BUNDLE: bundle.name,
                ANNOTATION_DIGEST: bundle.digest,
            },
        )

    def dispatch(self, scan_id: str, scanner_id: str, bundle: BundleRef) -> UnitHandle:
        spec = self.build_spec(scan_id, scanner_id, bundle)

        created = True
        try:
            status = self.backend.create_unit(spec)
            logger.info(
                f"Dispatched unit {spec.name} for scan {scan_id}/{scanner_id} "
                f"(image={spec.image}, timeout={spec.timeout_seconds}s, "
                f"attempts≤{spec.max_attempts}, ttl={spec.ttl_seconds}s)"
            )
        except ArtifactExists:
            created = False
            status = self._existing_unit(spec)
            logger.info(f"Unit {spec.name} already exists; returning it")

        return self._handle(spec, status, scan_id, scanner_id, created)

    def _existing_unit(self, spec: UnitSpec) -> UnitStatus:
        status = self.backend.get_unit(spec.name)
        if status is None:
            raise Conflict(f"Unit {spec.name} changed concurrently; retry the request")

        same_bundle = (status.bundle_name or status.annotations.get(ANNOTATION_BUNDLE)) == spec.bundle_name
        same_digest = status.annotations.get(ANNOTATION_DIGEST) == spec.annotations[ANNOTATION_DIGEST]
        if not (same_bundle and same_digest):
            raise Conflict(
                f"Unit {spec.name} exists for a different source bundle; "
                f"scan id {spec.annotations[ANNOTATION_SCAN_ID]} was reused",
                unit=spec.name,
            )
        return status

    def _handle(
        self,
        spec: UnitSpec,
        status: Optional[UnitStatus],
        scan_id: str,
        scanner_id: str,
        created: bool,
    ) -> UnitHandle:
        dispatched_at = (status.created_at if status and status.created_at else None) or now_utc()
        timeout = timedelta(seconds=spec.timeout_seconds)
        return UnitHandle(
            unit_name=spec.name,
            bundle_name=spec.bundle_name,
            scan_id=scan_id,
            scanner_id=scanner_id,
            created=created,
            dispatched_at=dispatched_at,
            deadline_at=dispatched_at + timeout + timedelta(seconds=self.timeout_grace_seconds),
            expires_at=dispatched_at + timeout + timedelta(seconds=self.ttl_seconds),
        )

    def delete_unit(self, name: str) -> bool:
        deleted = self.backend.delete_unit(name)
        if deleted:
            logger.info(f"Deleted unit {name}")
        return deleted
