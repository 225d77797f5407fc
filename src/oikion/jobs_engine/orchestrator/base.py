"""
Orchestrator Client Interface
Abstract base class for container orchestrators that run background jobs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from oikion.jobs_engine.job_types import JobTypeRegistry
from oikion.jobs_engine.models.job import JobType


@dataclass(frozen=True)
class CreatedWorkload:
    job_name: str


@dataclass(frozen=True)
class JobCondition:
    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None
    last_transition_time: Optional[datetime] = None


@dataclass(frozen=True)
class OrchestratorJobStatus:
    active: int = 0
    succeeded: int = 0
    failed: int = 0
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    conditions: List[JobCondition] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        return {"active": self.active, "succeeded": self.succeeded, "failed": self.failed}

    def has_condition(self, condition_type: str) -> bool:
        return any(
            c.type == condition_type and c.status == "True" for c in self.conditions
        )


@dataclass(frozen=True)
class CompletionState:
    complete: bool
    succeeded: bool


class OrchestratorClient(ABC):
    """Create, inspect and delete named workloads on a container orchestrator."""

    def __init__(self, registry: JobTypeRegistry):
        self.registry = registry

    @abstractmethod
    def create_job(
        self,
        *,
        job_id: str,
        job_type: JobType,
        tenant_id: str,
        payload: Dict[str, Any],
        callback_url: Optional[str] = None,
        callback_token: Optional[str] = None,
    ) -> CreatedWorkload:
        """
        Submit the workload for a job.

        Raises OrchestratorError when the orchestrator rejects the manifest or is
        unreachable. Callers treat that as a launch failure; there is no retry
        at this layer.
        """

    @abstractmethod
    def delete_job(self, job_name: str) -> None:
        """Terminate a workload and its pods. Best effort for callers."""

    @abstractmethod
    def get_job_status(self, job_name: str) -> Optional[OrchestratorJobStatus]:
        """Orchestrator-native status, or None when the workload does not exist."""

    @abstractmethod
    def get_job_pod_name(self, job_name: str) -> Optional[str]:
        pass

    @abstractmethod
    def get_job_logs(self, job_name: str, tail_lines: Optional[int] = None) -> Optional[str]:
        """Container logs, or None when unavailable."""

    @abstractmethod
    def list_jobs_by_tenant(self, tenant_id: str) -> List[Dict[str, Any]]:
        pass

    def is_job_complete(self, job_name: str) -> CompletionState:
        status = self.get_job_status(job_name)
        if status is None:
            return CompletionState(complete=False, succeeded=False)
        if status.succeeded > 0:
            return CompletionState(complete=True, succeeded=True)
        if status.failed > 0:
            return CompletionState(complete=True, succeeded=False)
        if status.has_condition("Failed"):
            return CompletionState(complete=True, succeeded=False)
        if status.has_condition("Complete"):
            return CompletionState(complete=True, succeeded=True)
        return CompletionState(complete=False, succeeded=False)
