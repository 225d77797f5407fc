from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from oikion.jobs_engine.job_types import JobTypeRegistry
from oikion.jobs_engine.models.job import JobType
from oikion.jobs_engine.orchestrator.base import (
    CreatedWorkload,
    JobCondition,
    OrchestratorClient,
    OrchestratorJobStatus,
)
from oikion.jobs_engine.orchestrator.manifest import LABEL_TENANT, build_job_manifest
from oikion.jobs_engine.services.job_errors import OrchestratorError

logger = logging.getLogger(__name__)


@dataclass
class _MockWorkload:
    manifest: Dict[str, Any]
    created_at: float
    started_at: datetime
    status: Optional[OrchestratorJobStatus] = None
    logs: List[str] = field(default_factory=list)


class MockOrchestrator(OrchestratorClient):
    """
    In-memory orchestrator for development and tests.

    Workloads report success ``complete_after_seconds`` after creation. The
    transition is computed when status is read, so nothing runs in the
    background. ``complete_after_seconds=None`` keeps workloads active until
    ``set_status`` is called.
    """

    def __init__(
        self,
        registry: JobTypeRegistry,
        *,
        complete_after_seconds: Optional[float] = 5.0,
        fail_on_create: bool = False,
        fail_on_delete: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(registry)
        self.complete_after_seconds = complete_after_seconds
        self.fail_on_create = fail_on_create
        self.fail_on_delete = fail_on_delete
        self._clock = clock
        self._lock = threading.RLock()
        self._jobs: Dict[str, _MockWorkload] = {}

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
        if self.fail_on_create:
            raise OrchestratorError("Mock orchestrator configured to reject job creation")
        manifest = build_job_manifest(
            job_id=job_id,
            job_type=job_type,
            tenant_id=tenant_id,
            payload=payload,
            config=self.registry[JobType(job_type)],
            callback_url=callback_url,
            callback_token=callback_token,
        )
        job_name = manifest["metadata"]["name"]
        with self._lock:
            if job_name in self._jobs:
                raise OrchestratorError(
                    f"jobs.batch \"{job_name}\" already exists", status_code=409
                )
            self._jobs[job_name] = _MockWorkload(
                manifest=manifest,
                created_at=self._clock(),
                started_at=datetime.utcnow(),
                logs=[f"[mock] started {job_name}"],
            )
        logger.info("[MockOrchestrator] Created job: %s", job_name)
        return CreatedWorkload(job_name=job_name)

    def _current_status(self, workload: _MockWorkload) -> OrchestratorJobStatus:
        if workload.status is not None:
            return workload.status
        elapsed = self._clock() - workload.created_at
        if self.complete_after_seconds is not None and elapsed >= self.complete_after_seconds:
            workload.status = OrchestratorJobStatus(
                active=0,
                succeeded=1,
                failed=0,
                start_time=workload.started_at,
                completion_time=datetime.utcnow(),
                conditions=[JobCondition(type="Complete", status="True")],
            )
            workload.logs.append("[mock] completed")
            return workload.status
        return OrchestratorJobStatus(active=1, start_time=workload.started_at)

    def get_job_status(self, job_name: str) -> Optional[OrchestratorJobStatus]:
        with self._lock:
            workload = self._jobs.get(job_name)
            if workload is None:
                return None
            return self._current_status(workload)

    def set_status(self, job_name: str, status: OrchestratorJobStatus) -> None:
        with self._lock:
            self._jobs[job_name].status = status

    def get_manifest(self, job_name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            workload = self._jobs.get(job_name)
            return workload.manifest if workload else None

    def get_job_pod_name(self, job_name: str) -> Optional[str]:
        with self._lock:
            return f"{job_name}-pod" if job_name in self._jobs else None

    def get_job_logs(self, job_name: str, tail_lines: Optional[int] = None) -> Optional[str]:
        with self._lock:
            workload = self._jobs.get(job_name)
            if workload is None:
                return None
            lines = workload.logs[-tail_lines:] if tail_lines else workload.logs
            return "\n".join(lines)

    def delete_job(self, job_name: str) -> None:
        if self.fail_on_delete:
            raise OrchestratorError("Mock orchestrator configured to reject deletion")
        with self._lock:
            self._jobs.pop(job_name, None)
        logger.info("[MockOrchestrator] Deleted job: %s", job_name)

    def list_jobs_by_tenant(self, tenant_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {"metadata": {"name": name}, "status": self._current_status(w).summary()}
                for name, w in self._jobs.items()
                if w.manifest["metadata"]["labels"].get(LABEL_TENANT) == tenant_id
            ]

    def __contains__(self, job_name: str) -> bool:
        with self._lock:
            return job_name in self._jobs
