# isoscan/sinks/__init__.py
from __future__ import annotations

from isoscan.config import Settings
from isoscan.sinks.base import ResultSink
from isoscan.sinks.database import DatabaseResultSink
from isoscan.sinks.http import HttpResultSink, SinkDeliveryError


def build_sink(settings: Settings) -> ResultSink:
    if settings.results_sink == "database":
        return DatabaseResultSink()
    if settings.results_sink == "http":
        return HttpResultSink(settings.results_url, secret=settings.results_secret)
    raise RuntimeError(
        f"Unknown ISOSCAN_RESULTS_SINK '{settings.results_sink}'. Use 'database' or 'http'."
    )


__all__ = [
    "ResultSink",
    "DatabaseResultSink",
    "HttpResultSink",
    "SinkDeliveryError",
    "build_sink",
]
