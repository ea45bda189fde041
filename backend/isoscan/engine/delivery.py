# isoscan/engine/delivery.py
"""
Source Delivery Manager.

Creates the ephemeral, read-only source bundle an execution unit mounts,
and deletes it again. One bundle per (scan_id, scanner_id).

    create_bundle   validate → size check → create-or-compare
    delete_bundle   idempotent; absence is not an error

No retries happen here. Callers decide retry policy; the collector
retries deletion, the facade retries nothing (the API caller does).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Dict

from isoscan.engine import naming
from isoscan.errors import Conflict, InvalidSubmission, PayloadTooLarge
from isoscan.substrate.base import (
    ANNOTATION_DIGEST,
    ANNOTATION_SCAN_ID,
    ANNOTATION_SCANNER_ID,
    KIND_BUNDLE,
    ArtifactExists,
    ExecutionBackend,
    managed_labels,
)

logger = logging.getLogger(__name__)

# ConfigMap key rules, minus leading dots (no hidden files, no "..data")
FILENAME_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]{0,252}$")
MAX_FILES = 64


@dataclass(frozen=True)
class BundleRef:
    name: str
    digest: str
    size: int
    scan_id: str
    scanner_id: str
    created: bool = True          # False when an identical bundle already existed


def validate_files(files: Dict[str, str], max_bytes: int) -> int:
    """
    Check names and total size. Returns the payload size.
    Raises InvalidSubmission or PayloadTooLarge; never truncates.
    """
    if not files:
        raise InvalidSubmission("At least one source file is required")
    if len(files) > MAX_FILES:
        raise InvalidSubmission(f"At most {MAX_FILES} files may be submitted")

    for filename, content in files.items():
        if not isinstance(filename, str) or not FILENAME_RE.match(filename):
            raise InvalidSubmission(
                f"Invalid file name {filename!r}: use letters, digits, '.', '_' or '-' "
                f"and do not start with '.'"
            )
        if not isinstance(content, str):
            raise InvalidSubmission(f"Content of {filename!r} must be text")

    size = naming.payload_size(files)
    if size > max_bytes:
        raise PayloadTooLarge(size=size, limit=max_bytes)
    return size


class SourceDeliveryManager:

    def __init__(self, backend: ExecutionBackend, max_payload_bytes: int):
        self.backend = backend
        self.max_payload_bytes = max_payload_bytes

    def create_bundle(self, scan_id: str, scanner_id: str, files: Dict[str, str]) -> BundleRef:
        size = validate_files(files, self.max_payload_bytes)
        digest = naming.source_digest(files)
        name = naming.bundle_name(scan_id, scanner_id)

        ref = BundleRef(name=name, digest=digest, size=size, scan_id=scan_id, scanner_id=scanner_id)
        annotations = {
            ANNOTATION_SCAN_ID: scan_id,
            ANNOTATION_SCANNER_ID: scanner_id,
            ANNOTATION_DIGEST: digest,
        }

        try:
            self.backend.create_bundle(name, files, managed_labels(KIND_BUNDLE), annotations)
            logger.info(f"Created bundle {name} for scan {scan_id}/{scanner_id} ({size} bytes)")
            return ref
        except ArtifactExists:
            pass

        existing = self.backend.get_bundle(name)
        if existing is None:
            # Deleted between our create and read; the caller may retry.
            raise Conflict(f"Bundle {name} changed concurrently; retry the request")
        if existing.digest != digest:
            raise Conflict(
                f"Scan {scan_id} already has different source content for scanner {scanner_id}",
                scan_id=scan_id,
                scanner_id=scanner_id,
            )

        logger.debug(f"Bundle {name} already exists with identical content")
        return replace(ref, created=False)

    def delete_bundle(self, name: str) -> bool:
        deleted = self.backend.delete_bundle(name)
        if deleted:
            logger.info(f"Deleted bundle {name}")
        return deleted
