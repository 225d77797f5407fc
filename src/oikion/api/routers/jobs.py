from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Response
from pydantic import BaseModel, Field

from oikion.api.dependencies.jobs import (
    get_current_user_id_optional,
    get_job_service,
    get_reconciliation_service,
    get_tenant_id,
)
from oikion.exceptions.handlers import NotFoundError
from oikion.jobs_engine.models.job import BackgroundJob, JobPriority, JobStatus, JobType
from oikion.jobs_engine.services.callback_auth import (
    extract_bearer_token,
    verify_callback_token,
)
from oikion.jobs_engine.services.job_errors import CallbackAuthError
from oikion.jobs_engine.services.job_service import JobService
from oikion.jobs_engine.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])


class SubmitJobRequest(BaseModel):
    type: JobType = Field(..., description="Job type, e.g. market-intel-scrape")
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    metadata: Optional[Dict[str, Any]] = None
    callback_url: Optional[str] = Field(default=None, description="Override worker callback URL")


class SubmitJobResponse(BaseModel):
    success: bool
    job_id: Optional[str] = None
    status: Optional[str] = None
    message: str
    poll_after_ms: Optional[int] = None


class JobResponse(BaseModel):
    id: str
    type: str
    tenant_id: str
    status: str
    priority: str
    progress: int
    progress_message: Optional[str] = None
    payload: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    orchestrator_job_name: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by: Optional[str] = None


class JobDetailResponse(BaseModel):
    job: JobResponse
    orchestrator_status: Optional[Dict[str, int]] = None
    poll_after_ms: Optional[int] = None


class CancelJobResponse(BaseModel):
    success: bool
    message: str


def _to_job_response(job: BackgroundJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        type=job.job_type,
        tenant_id=job.tenant_id,
        status=job.status,
        priority=job.priority,
        progress=job.progress or 0,
        progress_message=job.progress_message,
        payload=job.payload or {},
        result=job.result,
        error_message=job.error_message,
        metadata=job.metadata_json,
        orchestrator_job_name=job.orchestrator_job_name,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        created_by=job.created_by,
    )


def _get_owned_job(service: JobService, job_id: str, tenant_id: str) -> BackgroundJob:
    job = service.get_job(job_id)
    # Other tenants' jobs are indistinguishable from missing ones.
    if job is None or job.tenant_id != tenant_id:
        raise NotFoundError("Job", job_id)
    return job


@router.post("", response_model=SubmitJobResponse, status_code=201)
def submit_job(
    req: SubmitJobRequest,
    response: Response,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_current_user_id_optional),
    service: JobService = Depends(get_job_service),
) -> SubmitJobResponse:
    outcome = service.submit_job(
        req.type,
        tenant_id,
        req.payload,
        priority=req.priority,
        created_by=user_id,
        callback_url=req.callback_url,
        metadata=req.metadata,
    )
    if outcome.duplicate:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "JOB_ALREADY_RUNNING",
                "message": outcome.message,
                "job_id": outcome.job_id,
                "status": outcome.status,
            },
        )
    if not outcome.success:
        raise HTTPException(
            status_code=502,
            detail={
                "code": "JOB_LAUNCH_FAILED",
                "message": outcome.message,
                "job_id": outcome.job_id,
                "status": outcome.status,
            },
        )
    response.headers["Location"] = f"/api/v1/jobs/{outcome.job_id}"
    job = service.get_job(outcome.job_id)
    return SubmitJobResponse(
        success=True,
        job_id=outcome.job_id,
        status=outcome.status,
        message=outcome.message,
        poll_after_ms=service.poll_after_ms(job) if job else None,
    )


@router.get("", response_model=Dict[str, Any])
def list_jobs(
    type: Optional[JobType] = Query(None),
    status: Optional[List[JobStatus]] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
) -> Dict[str, Any]:
    jobs, total = service.get_jobs_by_organization(
        tenant_id,
        job_type=type,
        statuses=status,
        limit=limit,
        offset=offset,
    )
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "items": [_to_job_response(j).model_dump(mode="json") for j in jobs],
    }


@router.get("/{job_id}", response_model=JobDetailResponse)
def get_job(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
) -> JobDetailResponse:
    _get_owned_job(service, job_id, tenant_id)
    view = service.get_job_status(job_id)
    if view is None:
        raise NotFoundError("Job", job_id)
    return JobDetailResponse(
        job=_to_job_response(view.job),
        orchestrator_status=view.orchestrator_status,
        poll_after_ms=service.poll_after_ms(view.job),
    )


@router.delete("/{job_id}", response_model=CancelJobResponse)
def cancel_job(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
) -> CancelJobResponse:
    _get_owned_job(service, job_id, tenant_id)
    outcome = service.cancel_job(job_id)
    if not outcome.success:
        raise HTTPException(status_code=409, detail=outcome.message)
    return CancelJobResponse(success=True, message=outcome.message)


@router.get("/{job_id}/logs", response_model=Dict[str, Any])
def get_job_logs(
    job_id: str,
    tail_lines: Optional[int] = Query(None, ge=1, le=10000),
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
) -> Dict[str, Any]:
    _get_owned_job(service, job_id, tenant_id)
    logs = service.get_job_logs(job_id, tail_lines=tail_lines)
    if logs is None:
        raise NotFoundError("Job logs", job_id)
    return {"job_id": job_id, "logs": logs}


@router.post("/{job_id}/sync", response_model=JobDetailResponse)
def sync_job(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
    reconciler: ReconciliationService = Depends(get_reconciliation_service),
) -> JobDetailResponse:
    _get_owned_job(service, job_id, tenant_id)
    reconciler.sync_job_status_from_orchestrator(job_id)
    view = service.get_job_status(job_id)
    if view is None:
        raise NotFoundError("Job", job_id)
    return JobDetailResponse(
        job=_to_job_response(view.job),
        orchestrator_status=view.orchestrator_status,
        poll_after_ms=service.poll_after_ms(view.job),
    )


@router.post("/{job_id}/callback", response_model=Dict[str, Any])
def job_callback(
    job_id: str,
    body: Dict[str, Any] = Body(...),
    authorization: Optional[str] = Header(None),
    service: JobService = Depends(get_job_service),
) -> Dict[str, Any]:
    job = service.get_job(job_id)
    if job is None:
        raise NotFoundError("Job", job_id)
    token = extract_bearer_token(authorization)
    if not verify_callback_token(job_id, token, service.settings.JOB_CALLBACK_SECRET):
        raise CallbackAuthError(job_id)
    if job.is_terminal:
        logger.info("Ignoring callback for job %s: already %s", job_id, job.status)
        raise HTTPException(status_code=409, detail=f"Job already {job.status}")

    applied = service.handle_callback(job_id, body)
    if not applied:
        current = service.get_job(job_id)
        if current is not None and current.is_terminal:
            raise HTTPException(status_code=409, detail=f"Job already {current.status}")
    current = service.get_job(job_id)
    return {
        "ok": True,
        "applied": applied,
        "job_id": job_id,
        "status": current.status if current else None,
    }
