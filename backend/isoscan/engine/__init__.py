# isoscan/engine/__init__.py
"""
Scan-job engine.

    delivery     read-only source bundles
    dispatcher   sandboxed execution units (+ quota)
    watcher      scheduled per-unit completion polling
    collector    parse, persist, clean up
    orchestrator trigger / status / cancel facade
    sweeper      TTL backstop for anything the collector missed

build_engine wires them together once per app and returns the Engine
stored on app.extensions["isoscan"].
"""

from __future__ import annotations

from dataclasses import dataclass

from isoscan.config import Settings
from isoscan.engine.collector import ResultCollector
from isoscan.engine.delivery import SourceDeliveryManager
from isoscan.engine.dispatcher import JobDispatcher
from isoscan.engine.orchestrator import ScanOrchestrator, ScanOutcome, TriggerResult
from isoscan.engine.quota import TenantQuotaManager
from isoscan.engine.sweeper import Sweeper, SweepReport
from isoscan.engine.watcher import CompletionWatcher
from isoscan.scanners import ScannerRegistry
from isoscan.sinks.base import ResultSink
from isoscan.substrate.base import ExecutionBackend


@dataclass
class Engine:
    settings: Settings
    registry: ScannerRegistry
    backend: ExecutionBackend
    sink: ResultSink
    orchestrator: ScanOrchestrator
    collector: ResultCollector
    watcher: CompletionWatcher
    sweeper: Sweeper


def build_engine(
    app,
    settings: Settings,
    registry: ScannerRegistry,
    backend: ExecutionBackend,
    sink: ResultSink,
) -> Engine:
    delivery = SourceDeliveryManager(backend, settings.max_payload_bytes)
    dispatcher = JobDispatcher(
        backend,
        registry,
        mount_path=settings.mount_path,
        max_attempts=settings.max_attempts,
        ttl_seconds=settings.unit_ttl_seconds,
        timeout_grace_seconds=settings.timeout_grace_seconds,
    )
    quota = TenantQuotaManager(settings.tenant_concurrency_limit)
    collector = ResultCollector(registry, backend, delivery, dispatcher, quota, sink, settings)

    return Engine(
        settings=settings,
        registry=registry,
        backend=backend,
        sink=sink,
        orchestrator=ScanOrchestrator(registry, delivery, dispatcher, quota, collector, settings),
        collector=collector,
        watcher=CompletionWatcher(app, backend, collector, workers=settings.watch_workers),
        sweeper=Sweeper(
            backend,
            collector,
            settings.effective_sweep_max_age,
            dispatch_grace_seconds=settings.dispatch_grace_seconds,
        ),
    )


__all__ = [
    "Engine",
    "ScanOrchestrator",
    "ScanOutcome",
    "SweepReport",
    "TriggerResult",
    "build_engine",
]
