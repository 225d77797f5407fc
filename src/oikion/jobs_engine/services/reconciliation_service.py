"""
Reconciliation Service
Backstop for lost callbacks: pulls workload state from the orchestrator and
applies it to job records, and prunes old finished jobs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from oikion.exceptions.handlers import ValidationError
from oikion.jobs_engine.models.job import (
    TERMINAL_STATUSES,
    BackgroundJob,
    JobStatus,
)
from oikion.jobs_engine.orchestrator.base import OrchestratorClient
from oikion.jobs_engine.services.job_service import JobService

logger = logging.getLogger(__name__)

_UNCHANGED = "unchanged"
_ERROR = "error"


@dataclass
class ReconcileSummary:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "failed": self.failed,
            "errors": self.errors,
        }


class ReconciliationService:
    def __init__(
        self,
        session: Session,
        orchestrator: OrchestratorClient,
        job_service: Optional[JobService] = None,
    ):
        self.session = session
        self.orchestrator = orchestrator
        self.job_service = job_service or JobService(session, orchestrator)

    def _sync(self, job: BackgroundJob) -> str:
        job_id = job.id
        job_name = job.orchestrator_job_name
        try:
            state = self.orchestrator.is_job_complete(job_name)
        except Exception as exc:
            # Transient; the job keeps its state until the next attempt.
            logger.warning("Status sync failed for job %s (%s): %s", job_id, job_name, exc)
            return _ERROR
        if not state.complete:
            return _UNCHANGED
        if not self.job_service.record_orchestrator_outcome(job_id, succeeded=state.succeeded):
            return _UNCHANGED
        outcome = JobStatus.COMPLETED.value if state.succeeded else JobStatus.FAILED.value
        logger.info("Reconciled job %s from workload %s: %s", job_id, job_name, outcome)
        return outcome

    def sync_job_status_from_orchestrator(self, job_id: str) -> bool:
        """
        Apply the workload's terminal state to the job, if it has one.

        Returns True when the job record changed.
        """
        job = self.job_service.get_job(job_id)
        if job is None or job.is_terminal or not job.orchestrator_job_name:
            return False
        return self._sync(job) in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

    sync_job_status_from_k8s = sync_job_status_from_orchestrator

    def reconcile_active_jobs(self, limit: int = 100) -> ReconcileSummary:
        jobs = (
            self.session.query(BackgroundJob)
            .filter(
                BackgroundJob.status == JobStatus.RUNNING.value,
                BackgroundJob.orchestrator_job_name.isnot(None),
            )
            .order_by(BackgroundJob.started_at.asc())
            .limit(limit)
            .all()
        )
        summary = ReconcileSummary()
        for job in jobs:
            summary.checked += 1
            outcome = self._sync(job)
            if outcome == JobStatus.COMPLETED.value:
                summary.completed += 1
            elif outcome == JobStatus.FAILED.value:
                summary.failed += 1
            elif outcome == _ERROR:
                summary.errors += 1
        logger.info("Reconciliation sweep: %s", summary.to_dict())
        return summary

    def cleanup_old_jobs(self, days_old: int = 7, now: Optional[datetime] = None) -> int:
        """Delete finished jobs whose completion is older than ``days_old`` days."""
        if days_old < 0:
            raise ValidationError("days_old must not be negative", field="days_old")
        cutoff = (now or datetime.utcnow()) - timedelta(days=days_old)
        deleted = (
            self.session.query(BackgroundJob)
            .filter(
                BackgroundJob.status.in_(TERMINAL_STATUSES),
                BackgroundJob.completed_at.isnot(None),
                BackgroundJob.completed_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
        self.session.commit()
        self.session.expire_all()
        logger.info("Cleaned up %s jobs completed before %s", deleted, cutoff.isoformat())
        return int(deleted or 0)
