# isoscan/errors.py
"""
Error taxonomy for the scan-job engine.

Synchronous errors (raised from ScanOrchestrator.trigger_scan and rendered
by the Flask error handler in create_app):

    UnknownScanner      scanner id not in the registry             404
    InvalidSubmission   malformed request (bad file names, empty)   400
    PayloadTooLarge     source bundle exceeds the size ceiling      413
    Conflict            idempotency key reused with other content   409
    QuotaExceeded       tenant / namespace concurrency limit hit    429
    SubstrateError      execution substrate unavailable (retry)     503
    ScanNotFound        get_status / cancel on an unknown scan id   404
    RequestRejected     routing / method / body size refused by Flask
    InternalError       anything unexpected; details only in the log 500

Asynchronous outcomes (never raised across trigger_scan; recorded on the
ScanJob row and surfaced through get_status):

    OutputParseError    scanner output did not match its grammar
    ResultsLost         persistence retries exhausted
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ScanEngineError(Exception):
    """Base class. `code` and `http_status` drive the JSON error response."""

    code = "ENGINE_ERROR"
    http_status = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class UnknownScanner(ScanEngineError):
    code = "UNKNOWN_SCANNER"
    http_status = 404

    def __init__(self, scanner_id: str):
        super().__init__(f"Unknown scanner '{scanner_id}'", scanner_id=scanner_id)
        self.scanner_id = scanner_id


class InvalidSubmission(ScanEngineError):
    code = "INVALID_SUBMISSION"
    http_status = 400


class PayloadTooLarge(ScanEngineError):
    code = "PAYLOAD_TOO_LARGE"
    http_status = 413

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Source payload is {size} bytes; the limit is {limit} bytes",
            size=size,
            limit=limit,
        )
        self.size = size
        self.limit = limit


class Conflict(ScanEngineError):
    code = "CONFLICT"
    http_status = 409


class QuotaExceeded(ScanEngineError):
    code = "QUOTA_EXCEEDED"
    http_status = 429


class SubstrateError(ScanEngineError):
    """Transient failure talking to the execution substrate. Safe to retry."""

    code = "SUBSTRATE_UNAVAILABLE"
    http_status = 503


class ScanNotFound(ScanEngineError):
    code = "SCAN_NOT_FOUND"
    http_status = 404

    def __init__(self, scan_id: str):
        super().__init__(f"No scan with id '{scan_id}'", scan_id=scan_id)
        self.scan_id = scan_id


class OutputParseError(ScanEngineError):
    """Raised by output parsers. Never crosses the trigger boundary."""

    code = "PARSE_ERROR"

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class ResultsLost(ScanEngineError):
    code = "RESULTS_LOST"


class RequestRejected(ScanEngineError):
    """A request Flask refused before it reached a route (404, 405, 413...)."""

    def __init__(self, http_status: int, code: str, message: str):
        super().__init__(message)
        self.http_status = http_status
        self.code = code


class InternalError(ScanEngineError):
    code = "INTERNAL_ERROR"

    def __init__(self):
        super().__init__("An unexpected error occurred")
