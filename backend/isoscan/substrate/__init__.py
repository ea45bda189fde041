# isoscan/substrate/__init__.py
"""
Execution substrates.
Each backend creates, inspects and deletes bundles and execution units.
Backends do NOT retry or decide policy; the engine does.
"""
from __future__ import annotations

from isoscan.config import Settings
from isoscan.substrate.base import (
    ArtifactExists,
    BundleInfo,
    ExecutionBackend,
    UnitSpec,
    UnitStatus,
)


def build_backend(settings: Settings) -> ExecutionBackend:
    """Instantiate the backend named by settings.substrate."""
    if settings.substrate == "kubernetes":
        from isoscan.substrate.kubernetes_backend import KubernetesBackend
        return KubernetesBackend(namespace=settings.namespace)

    if settings.substrate == "local":
        from isoscan.substrate.local_backend import LocalProcessBackend
        return LocalProcessBackend(root=settings.local_root)

    raise RuntimeError(
        f"Unknown ISOSCAN_SUBSTRATE '{settings.substrate}'. Use 'kubernetes' or 'local'."
    )


__all__ = [
    "ArtifactExists",
    "BundleInfo",
    "ExecutionBackend",
    "UnitSpec",
    "UnitStatus",
    "build_backend",
]
