"""Delegation workers, one per WorkerKind."""

from __future__ import annotations

from ..config import WorkerClientConfig
from ..types import WorkerKind
from ..worker_client import WorkerClient
from .base import SupportsRun, Worker
from .documentation import DocumentationWriter
from .refactor_analysis import RefactorAnalyzer
from .research import ResearchAgent
from .security_scan import SecurityScanner
from .test_generation import TestGenerator

WORKER_REGISTRY: dict[WorkerKind, type[Worker]] = {
    WorkerKind.RESEARCH: ResearchAgent,
    WorkerKind.SECURITY_SCAN: SecurityScanner,
    WorkerKind.TEST_GENERATION: TestGenerator,
    WorkerKind.REFACTOR_ANALYSIS: RefactorAnalyzer,
    WorkerKind.DOCUMENTATION: DocumentationWriter,
}


def build_workers(
    enabled: list[str] | None = None,
    client_config: WorkerClientConfig | None = None,
    client: WorkerClient | None = None,
) -> dict[WorkerKind, Worker]:
    """Instantiate the enabled workers around one shared client."""
    kinds = [WorkerKind(k) for k in enabled] if enabled is not None else list(WorkerKind)
    shared = client or WorkerClient(client_config or WorkerClientConfig())
    return {kind: WORKER_REGISTRY[kind](client=shared) for kind in kinds}


__all__ = [
    "WORKER_REGISTRY",
    "build_workers",
    "SupportsRun",
    "Worker",
    "ResearchAgent",
    "SecurityScanner",
    "TestGenerator",
    "RefactorAnalyzer",
    "DocumentationWriter",
]
