"""
Container orchestrator clients.
"""

from __future__ import annotations

import logging
from typing import Optional

from oikion.config import get_settings
from oikion.config.settings import Settings
from oikion.exceptions.handlers import ConfigurationError
from oikion.jobs_engine.job_types import JobTypeRegistry, get_job_type_registry
from oikion.jobs_engine.orchestrator.base import (
    CompletionState,
    CreatedWorkload,
    JobCondition,
    OrchestratorClient,
    OrchestratorJobStatus,
)
from oikion.jobs_engine.orchestrator.kubernetes import KubernetesOrchestrator
from oikion.jobs_engine.orchestrator.mock import MockOrchestrator

logger = logging.getLogger(__name__)

_shared_mock: Optional[MockOrchestrator] = None


def resolve_orchestrator_mode(settings: Settings) -> str:
    mode = (settings.ORCHESTRATOR_MODE or "auto").strip().lower()
    if mode == "auto":
        if settings.ENVIRONMENT == "dev" and not settings.K8S_API_URL:
            return "mock"
        return "kubernetes"
    return mode


def get_orchestrator(
    settings: Optional[Settings] = None,
    registry: Optional[JobTypeRegistry] = None,
) -> OrchestratorClient:
    """Factory for the configured orchestrator client."""
    settings = settings or get_settings()
    registry = registry or get_job_type_registry()
    mode = resolve_orchestrator_mode(settings)
    if mode == "kubernetes":
        return KubernetesOrchestrator(registry, settings)
    if mode == "mock":
        # Requests are stateless; the mock's workloads must outlive them.
        global _shared_mock
        if _shared_mock is None:
            logger.info("Using mock orchestrator (no Kubernetes API configured)")
            _shared_mock = MockOrchestrator(
                registry, complete_after_seconds=settings.MOCK_COMPLETE_AFTER_SECONDS
            )
        return _shared_mock
    raise ConfigurationError(
        f"Unsupported ORCHESTRATOR_MODE: {settings.ORCHESTRATOR_MODE}",
        config_key="ORCHESTRATOR_MODE",
    )


__all__ = [
    "CompletionState",
    "CreatedWorkload",
    "JobCondition",
    "KubernetesOrchestrator",
    "MockOrchestrator",
    "OrchestratorClient",
    "OrchestratorJobStatus",
    "get_orchestrator",
    "resolve_orchestrator_mode",
]
