# isoscan/scanners/base.py
"""
Base classes for the scanner registry.

Architecture:
    ScannerDescriptor bundles everything the engine needs to know about
    one scanner:  image + command template + resource profile + parser.

    Dispatcher  reads image / command_template / resources / timeout.
    Collector   reads parser.

Neither the dispatcher nor the collector ever branches on the scanner id.
Adding a scanner means adding a descriptor and a parser, nothing else.

BaseOutputParser: Interprets a scanner's captured output (stdout/log stream)
                  and produces NormalizedFindings with a severity on the
                  engine's four-level scale. Parsers NEVER run tools and
                  NEVER swallow errors: unrecognised output is a
                  parse_error outcome, not an empty result.
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from isoscan.errors import OutputParseError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------

CRITICAL = "critical"
HIGH = "high"
MEDIUM = "medium"
LOW = "low"

SEVERITY_ORDER = {CRITICAL: 0, HIGH: 1, MEDIUM: 2, LOW: 3}


def clamp_severity(value: Optional[str], default: str = LOW) -> str:
    """Normalise a severity string; anything unknown becomes `default`."""
    sev = (value or "").strip().lower()
    return sev if sev in SEVERITY_ORDER else default


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class NormalizedFinding:
    """
    One detected issue in scanner-agnostic form.

    Fields:
        title:         Short human-readable title.
        description:   What was found.
        severity:      critical, high, medium or low.
        rule_id:       Scanner-native rule key (slither detector, SWC id,
                       semgrep check id). Part of the dedupe key.
        file_path:     Path relative to the bundle mount, if known.
        line:          1-based line number, if known.
        raw_evidence:  The scanner's own record for this issue, verbatim.
        scanner:       Which scanner produced it (set by the parser base).
    """
    title: str
    description: str
    severity: str
    rule_id: str = ""
    file_path: Optional[str] = None
    line: Optional[int] = None
    raw_evidence: Dict[str, Any] = field(default_factory=dict)
    scanner: str = ""

    def __post_init__(self):
        self.severity = clamp_severity(self.severity)

    @property
    def location(self) -> Optional[str]:
        if not self.file_path:
            return None
        if self.line:
            return f"{self.file_path}:{self.line}"
        return self.file_path

    @property
    def dedupe_key(self) -> str:
        base = {
            "scanner": self.scanner,
            "rule": self.rule_id,
            "file": self.file_path,
            "line": self.line,
            "title": self.title,
        }
        stable = json.dumps(base, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha1(stable.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "ruleId": self.rule_id,
            "location": self.location,
            "filePath": self.file_path,
            "line": self.line,
            "rawEvidence": self.raw_evidence,
            "scanner": self.scanner,
        }


@dataclass(frozen=True)
class ResourceProfile:
    """
    Resource requests/limits plus the hard wall-clock timeout for one
    scanner. Quantities use Kubernetes notation ("500m", "1Gi").
    """
    cpu_request: str = "250m"
    cpu_limit: str = "1"
    memory_request: str = "256Mi"
    memory_limit: str = "1Gi"
    timeout_seconds: int = 300

    def as_resources(self) -> Dict[str, Dict[str, str]]:
        return {
            "requests": {"cpu": self.cpu_request, "memory": self.memory_request},
            "limits": {"cpu": self.cpu_limit, "memory": self.memory_limit},
        }


CommandTemplate = Callable[[str], List[str]]


@dataclass(frozen=True)
class ScannerDescriptor:
    """
    Everything the engine knows about one scanner.

    command_template is a pure function of the bundle mount path and
    returns the argv to execute. It may not assume anything about the
    delivered files beyond "they are all in this directory".
    """
    scanner_id: str
    image: str
    command_template: CommandTemplate
    parser: "BaseOutputParser"
    resources: ResourceProfile = field(default_factory=ResourceProfile)
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def timeout_seconds(self) -> int:
        return self.resources.timeout_seconds

    def command(self, mount_path: str) -> List[str]:
        return list(self.command_template(mount_path))


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def iter_json_documents(raw: str) -> Iterator[Any]:
    """
    Yield every JSON document in a captured log stream.

    Container logs interleave stderr noise (compiler banners, progress
    lines) with the tool's JSON report, and a shell loop over several
    files emits one report per file. A document is either the whole
    stream or any single line that starts with '{' or '['.
    """
    text = (raw or "").strip()
    if not text:
        return

    if text[0] in "{[":
        try:
            yield json.loads(text)
            return
        except ValueError:
            pass

    for line in text.splitlines():
        line = line.strip()
        if not line or line[0] not in "{[":
            continue
        try:
            yield json.loads(line)
        except ValueError:
            continue


def relative_to_mount(path: Optional[str], mount_path: str) -> Optional[str]:
    """Strip the bundle mount prefix so locations are bundle-relative."""
    if not path:
        return None
    prefix = mount_path.rstrip("/") + "/"
    if path.startswith(prefix):
        return path[len(prefix):]
    return path


# ---------------------------------------------------------------------------
# Abstract base class
# ---------------------------------------------------------------------------

class BaseOutputParser(ABC):
    """
    Abstract base for scanner output parsers.

    To create a new parser:
        1. Subclass BaseOutputParser
        2. Set the `name` property (the scanner id it belongs to)
        3. Implement `parse(raw, mount_path) -> List[NormalizedFinding]`
           and raise OutputParseError on anything it does not recognise

    The base class handles automatically:
        - Converting stray KeyError / TypeError / ValueError from schema
          drift into OutputParseError (the raw payload is attached)
        - Tagging every finding with the scanner name
        - Dropping exact duplicates (same dedupe key)
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    def run(self, raw: str, mount_path: str) -> List[NormalizedFinding]:
        """
        Parse with error normalisation.

        DO NOT OVERRIDE THIS METHOD. Override `parse()` instead.
        """
        try:
            findings = self.parse(raw, mount_path)
        except OutputParseError as e:
            if e.raw is None:
                e.raw = raw
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise OutputParseError(
                f"{self.name} output did not match the expected schema: "
                f"{type(e).__name__}: {e}",
                raw=raw,
            ) from e

        seen: set = set()
        unique: List[NormalizedFinding] = []
        for f in findings:
            if not f.scanner:
                f.scanner = self.name
            key = f.dedupe_key
            if key in seen:
                continue
            seen.add(key)
            unique.append(f)

        logger.debug(f"Parser '{self.name}' produced {len(unique)} findings")
        return unique

    @abstractmethod
    def parse(self, raw: str, mount_path: str) -> List[NormalizedFinding]:
        """
        Turn captured output into findings.

        Return an empty list only when the tool positively reported no
        issues. Raise OutputParseError when the output is not a report.
        """
        ...
