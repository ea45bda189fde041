# isoscan/engine/naming.py
"""
Deterministic object names and content digests.

Bundle and unit names are a fixed-length hash of the (scan_id, scanner_id)
idempotency key, so re-creation always targets the same object and every
name fits the 63-character DNS-label limit regardless of how long the
caller's scan id is.
"""

from __future__ import annotations

import hashlib
from typing import Dict

BUNDLE_PREFIX = "isoscan-src"
UNIT_PREFIX = "isoscan-job"
HASH_CHARS = 16


def pair_hash(scan_id: str, scanner_id: str) -> str:
    # NUL cannot appear in either id, so ("a", "bc") and ("ab", "c") differ.
    key = f"{scan_id}\x00{scanner_id}".encode("utf-8")
    return hashlib.sha256(key).hexdigest()[:HASH_CHARS]


def bundle_name(scan_id: str, scanner_id: str) -> str:
    return f"{BUNDLE_PREFIX}-{pair_hash(scan_id, scanner_id)}"


def unit_name(scan_id: str, scanner_id: str) -> str:
    return f"{UNIT_PREFIX}-{pair_hash(scan_id, scanner_id)}"


def source_digest(files: Dict[str, str]) -> str:
    """Order-independent sha256 over file names and contents."""
    h = hashlib.sha256()
    for name in sorted(files):
        data = files[name].encode("utf-8")
        h.update(name.encode("utf-8"))
        h.update(b"\x00")
        h.update(str(len(data)).encode("ascii"))
        h.update(b"\x00")
        h.update(data)
    return h.hexdigest()


def payload_size(files: Dict[str, str]) -> int:
    """Bytes the bundle occupies: file names plus UTF-8 contents."""
    return sum(len(name.encode("utf-8")) + len(content.encode("utf-8")) for name, content in files.items())
