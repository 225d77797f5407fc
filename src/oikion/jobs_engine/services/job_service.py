"""
Job Service
Submission, progress, completion and cancellation of background jobs.

Every terminal transition goes through ``_finalize``, a conditional UPDATE that
only matches active rows, so the first writer wins and terminal jobs are never
modified again.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from oikion.config import get_settings
from oikion.config.settings import Settings
from oikion.exceptions.handlers import ConfigurationError, ValidationError
from oikion.jobs_engine.job_types import JobTypeRegistry
from oikion.jobs_engine.models.job import (
    ACTIVE_STATUSES,
    BackgroundJob,
    JobPriority,
    JobStatus,
    JobType,
)
from oikion.jobs_engine.orchestrator.base import OrchestratorClient
from oikion.jobs_engine.schemas.callbacks import CallbackEnvelope, CallbackEvent
from oikion.jobs_engine.schemas.payloads import validated_payload, validated_result
from oikion.jobs_engine.services.callback_auth import (
    build_callback_token,
    build_callback_url,
)

logger = logging.getLogger(__name__)

ORCHESTRATOR_FAILURE_MESSAGE = "Workload reported failure by orchestrator"


@dataclass(frozen=True)
class JobSubmissionResult:
    success: bool
    job_id: Optional[str]
    status: Optional[str]
    message: str
    duplicate: bool = False


@dataclass(frozen=True)
class CancelResult:
    success: bool
    message: str


@dataclass(frozen=True)
class JobStatusView:
    job: BackgroundJob
    orchestrator_status: Optional[Dict[str, int]] = None


def _coerce_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}: {value}", field=field) from exc


class JobService:
    def __init__(
        self,
        session: Session,
        orchestrator: OrchestratorClient,
        registry: Optional[JobTypeRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.orchestrator = orchestrator
        self.registry = registry if registry is not None else orchestrator.registry
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_job(
        self,
        job_type: Union[JobType, str],
        tenant_id: str,
        payload: Any,
        *,
        priority: Union[JobPriority, str] = JobPriority.NORMAL,
        created_by: Optional[str] = None,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> JobSubmissionResult:
        """
        Create the job record and launch its workload.

        Launch failures are recorded on the job and reported in the result;
        only invalid input raises.
        """
        resolved_type = _coerce_enum(JobType, job_type, "type")
        resolved_priority = _coerce_enum(JobPriority, priority, "priority")
        if not tenant_id:
            raise ValidationError("tenant_id is required", field="tenant_id")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object", field="metadata")
        stored_payload = validated_payload(resolved_type, payload)
        if resolved_type not in self.registry:
            raise ConfigurationError(
                f"No configuration registered for job type {resolved_type.value}",
                config_key="JOB_TYPES_CONFIG_PATH",
            )

        existing = self._find_active(tenant_id, resolved_type)
        if existing is not None:
            return self._duplicate_result(existing, resolved_type)

        job = BackgroundJob(
            id=str(uuid.uuid4()),
            job_type=resolved_type.value,
            tenant_id=tenant_id,
            priority=resolved_priority.value,
            status=JobStatus.PENDING.value,
            progress=0,
            payload=stored_payload,
            metadata_json=metadata,
            created_by=created_by,
        )
        self.session.add(job)
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent submitter inserted the active job first.
            self.session.rollback()
            existing = self._find_active(tenant_id, resolved_type)
            if existing is None:
                raise
            return self._duplicate_result(existing, resolved_type)

        job_id = job.id
        resolved_callback_url = callback_url or build_callback_url(
            self.settings.JOB_CALLBACK_BASE_URL, job_id
        )
        try:
            created = self.orchestrator.create_job(
                job_id=job_id,
                job_type=resolved_type,
                tenant_id=tenant_id,
                payload=stored_payload,
                callback_url=resolved_callback_url,
                callback_token=build_callback_token(job_id, self.settings.JOB_CALLBACK_SECRET),
            )
        except Exception as exc:
            error_message = str(exc) or exc.__class__.__name__
            logger.error(
                "Failed to launch %s job %s for tenant %s: %s",
                resolved_type.value,
                job_id,
                tenant_id,
                error_message,
            )
            self._execute_update(
                update(BackgroundJob)
                .where(
                    BackgroundJob.id == job_id,
                    BackgroundJob.status == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=error_message,
                    completed_at=datetime.utcnow(),
                )
            )
            return JobSubmissionResult(
                success=False,
                job_id=job_id,
                status=JobStatus.FAILED.value,
                message=error_message,
            )

        started = self._execute_update(
            update(BackgroundJob)
            .where(
                BackgroundJob.id == job_id,
                BackgroundJob.status == JobStatus.PENDING.value,
            )
            .values(
                orchestrator_job_name=created.job_name,
                started_at=datetime.utcnow(),
                status=JobStatus.RUNNING.value,
            )
        )
        if not started:
            self._record_late_launch(job_id, created.job_name)
        launched = self.get_job(job_id)
        logger.info(
            "Launched %s job %s as %s for tenant %s",
            resolved_type.value,
            job_id,
            created.job_name,
            tenant_id,
        )
        return JobSubmissionResult(
            success=True,
            job_id=job_id,
            status=launched.status if launched else JobStatus.RUNNING.value,
            message=f"Job {created.job_name} created successfully",
        )

    def _record_late_launch(self, job_id: str, job_name: str) -> None:
        """
        The job finished or was cancelled while its workload was being created.

        Only the workload handle is recorded, so logs stay reachable; status and
        timestamps keep their terminal values. A cancelled job's workload is
        removed.
        """
        self._execute_update(
            update(BackgroundJob)
            .where(
                BackgroundJob.id == job_id,
                BackgroundJob.orchestrator_job_name.is_(None),
            )
            .values(orchestrator_job_name=job_name)
        )
        job = self.get_job(job_id)
        if job is None or job.status != JobStatus.CANCELLED.value:
            return
        logger.info("Job %s was cancelled during launch; deleting workload %s", job_id, job_name)
        try:
            self.orchestrator.delete_job(job_name)
        except Exception as exc:
            logger.warning("Failed to delete workload %s for job %s: %s", job_name, job_id, exc)

    def _find_active(self, tenant_id: str, job_type: JobType) -> Optional[BackgroundJob]:
        return (
            self.session.query(BackgroundJob)
            .filter(
                BackgroundJob.tenant_id == tenant_id,
                BackgroundJob.job_type == job_type.value,
                BackgroundJob.status.in_(ACTIVE_STATUSES),
            )
            .order_by(BackgroundJob.created_at.desc())
            .first()
        )

    def _duplicate_result(self, existing: BackgroundJob, job_type: JobType) -> JobSubmissionResult:
        logger.info(
            "Rejected duplicate %s job for tenant %s (active job %s)",
            job_type.value,
            existing.tenant_id,
            existing.id,
        )
        return JobSubmissionResult(
            success=False,
            job_id=existing.id,
            status=existing.status,
            message=f"A {job_type.value} job is already running for this organization",
            duplicate=True,
        )

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _execute_update(self, stmt) -> int:
        result = self.session.execute(stmt.execution_options(synchronize_session=False))
        self.session.commit()
        self.session.expire_all()
        return result.rowcount or 0

    def _finalize(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> bool:
        values: Dict[str, Any] = {
            "status": JobStatus(status).value,
            "completed_at": datetime.utcnow(),
        }
        if result is not None:
            values["result"] = result
        if error_message is not None:
            values["error_message"] = error_message
        if progress is not None:
            values["progress"] = progress
        changed = self._execute_update(
            update(BackgroundJob)
            .where(
                BackgroundJob.id == job_id,
                BackgroundJob.status.in_(ACTIVE_STATUSES),
            )
            .values(**values)
        )
        return changed == 1

    def update_progress(self, job_id: str, progress: Any, message: Optional[str] = None) -> bool:
        """
        Record worker progress. Stored progress never decreases; the message
        always reflects the latest report. Unknown or finished jobs are ignored.
        """
        try:
            value = int(progress)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValidationError("progress must be a finite number", field="progress") from exc
        value = max(0, min(100, value))
        values: Dict[str, Any] = {
            "progress": case(
                (BackgroundJob.progress < value, value),
                else_=BackgroundJob.progress,
            )
        }
        if message is not None:
            values["progress_message"] = message
        changed = self._execute_update(
            update(BackgroundJob)
            .where(
                BackgroundJob.id == job_id,
                BackgroundJob.status.in_(ACTIVE_STATUSES),
            )
            .values(**values)
        )
        if not changed:
            logger.info("Ignoring progress for unknown or finished job %s", job_id)
            return False
        return True

    def complete_job(
        self,
        job_id: str,
        status: Union[JobStatus, str],
        result: Any = None,
        error_message: Optional[str] = None,
    ) -> bool:
        resolved = _coerce_enum(JobStatus, status, "status")
        if resolved not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValidationError(
                "status must be 'completed' or 'failed'", field="status"
            )
        job = self.get_job(job_id)
        if job is None:
            logger.warning("Completion reported for unknown job %s", job_id)
            return False
        if job.is_terminal:
            logger.info(
                "Ignoring %s report for job %s: already %s",
                resolved.value,
                job_id,
                job.status,
            )
            return False

        if resolved == JobStatus.COMPLETED:
            if result is None:
                raise ValidationError("result is required for completed jobs", field="result")
            stored = validated_result(job.job_type, result)
            changed = self._finalize(job_id, JobStatus.COMPLETED, result=stored, progress=100)
        else:
            if not error_message:
                raise ValidationError(
                    "error_message is required for failed jobs", field="error_message"
                )
            changed = self._finalize(job_id, JobStatus.FAILED, error_message=str(error_message))

        if changed:
            logger.info("Job %s %s", job_id, resolved.value)
        else:
            logger.info("Job %s finished concurrently; %s report ignored", job_id, resolved.value)
        return changed

    def record_orchestrator_outcome(self, job_id: str, *, succeeded: bool) -> bool:
        if succeeded:
            return self._finalize(job_id, JobStatus.COMPLETED, progress=100)
        return self._finalize(
            job_id, JobStatus.FAILED, error_message=ORCHESTRATOR_FAILURE_MESSAGE
        )

    def handle_callback(self, job_id: str, event: Union[CallbackEnvelope, Dict[str, Any]]) -> bool:
        """Apply a worker callback envelope. Returns whether the job changed."""
        if not isinstance(event, CallbackEnvelope):
            try:
                event = CallbackEnvelope.model_validate(event)
            except PydanticValidationError as exc:
                raise ValidationError(
                    "Invalid callback event",
                    field="event",
                    errors=exc.errors(include_url=False, include_context=False),
                ) from exc
        if event.job_id and event.job_id != job_id:
            raise ValidationError("jobId does not match the callback URL", field="jobId")

        data = event.data
        if event.event == CallbackEvent.STARTED:
            return self.update_progress(
                job_id, data.progress or 0, data.message or "Job started"
            )
        if event.event == CallbackEvent.PROGRESS:
            if data.progress is None:
                raise ValidationError("progress is required", field="data.progress")
            return self.update_progress(job_id, data.progress, data.message)
        if event.event == CallbackEvent.COMPLETED:
            return self.complete_job(job_id, JobStatus.COMPLETED, result=data.result)
        return self.complete_job(
            job_id,
            JobStatus.FAILED,
            error_message=data.error_message or data.message or "Job failed",
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[BackgroundJob]:
        return self.session.get(BackgroundJob, job_id)

    def get_jobs_by_organization(
        self,
        tenant_id: str,
        *,
        job_type: Optional[Union[JobType, str]] = None,
        statuses: Optional[Iterable[Union[JobStatus, str]]] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[BackgroundJob], int]:
        if limit < 1 or limit > 100:
            raise ValidationError("limit must be between 1 and 100", field="limit")
        if offset < 0:
            raise ValidationError("offset must not be negative", field="offset")

        query = self.session.query(BackgroundJob).filter(BackgroundJob.tenant_id == tenant_id)
        if job_type:
            query = query.filter(
                BackgroundJob.job_type == _coerce_enum(JobType, job_type, "type").value
            )
        status_values = [_coerce_enum(JobStatus, s, "status").value for s in statuses or []]
        if status_values:
            query = query.filter(BackgroundJob.status.in_(status_values))

        total = query.count()
        jobs = (
            query.order_by(BackgroundJob.created_at.desc(), BackgroundJob.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return jobs, total

    def get_job_status(self, job_id: str) -> Optional[JobStatusView]:
        job = self.get_job(job_id)
        if job is None:
            return None
        orchestrator_status = None
        if job.orchestrator_job_name:
            try:
                live = self.orchestrator.get_job_status(job.orchestrator_job_name)
            except Exception as exc:
                logger.warning(
                    "Orchestrator status lookup failed for job %s (%s): %s",
                    job_id,
                    job.orchestrator_job_name,
                    exc,
                )
            else:
                orchestrator_status = live.summary() if live else None
        return JobStatusView(job=job, orchestrator_status=orchestrator_status)

    def poll_after_ms(self, job: BackgroundJob) -> Optional[int]:
        """Suggested delay before the caller polls again; None once finished."""
        if job.is_terminal:
            return None
        return int(self.settings.JOB_POLL_INTERVAL_MS)

    def get_job_logs(self, job_id: str, tail_lines: Optional[int] = None) -> Optional[str]:
        job = self.get_job(job_id)
        if job is None or not job.orchestrator_job_name:
            return None
        if not job.orchestrator_pod_name and not job.is_terminal:
            pod_name = self.orchestrator.get_job_pod_name(job.orchestrator_job_name)
            if pod_name:
                # Finished records are left untouched.
                self._execute_update(
                    update(BackgroundJob)
                    .where(
                        BackgroundJob.id == job_id,
                        BackgroundJob.status.in_(ACTIVE_STATUSES),
                    )
                    .values(orchestrator_pod_name=pod_name)
                )
        return self.orchestrator.get_job_logs(job.orchestrator_job_name, tail_lines=tail_lines)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_job(self, job_id: str) -> CancelResult:
        job = self.get_job(job_id)
        if job is None:
            return CancelResult(success=False, message="Job not found")
        if job.is_terminal:
            return CancelResult(success=False, message="Job is not cancellable")

        if job.orchestrator_job_name:
            try:
                self.orchestrator.delete_job(job.orchestrator_job_name)
            except Exception as exc:
                logger.warning(
                    "Failed to delete workload %s for job %s: %s",
                    job.orchestrator_job_name,
                    job_id,
                    exc,
                )

        if not self._finalize(job_id, JobStatus.CANCELLED):
            return CancelResult(success=False, message="Job is not cancellable")
        logger.info("Job %s cancelled", job_id)
        return CancelResult(success=True, message="Job cancelled successfully")
