from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session
from starlette.requests import Request

from oikion.config import get_settings
from oikion.context import get_request_context
from oikion.database import get_db
from oikion.jobs_engine.orchestrator import OrchestratorClient, get_orchestrator
from oikion.jobs_engine.services.job_service import JobService
from oikion.jobs_engine.services.reconciliation_service import ReconciliationService


def get_orchestrator_client() -> OrchestratorClient:
    return get_orchestrator()


def get_job_service(
    db: Session = Depends(get_db),
    orchestrator: OrchestratorClient = Depends(get_orchestrator_client),
) -> JobService:
    return JobService(db, orchestrator)


def get_reconciliation_service(
    db: Session = Depends(get_db),
    job_service: JobService = Depends(get_job_service),
) -> ReconciliationService:
    return ReconciliationService(db, job_service.orchestrator, job_service=job_service)


def get_tenant_id(request: Request) -> str:
    tenant_id = get_request_context().tenant_id
    if not tenant_id:
        tenant_id = request.headers.get(get_settings().TENANT_HEADER)
    if not tenant_id:
        raise HTTPException(status_code=400, detail="Missing tenant (organization) id")
    return tenant_id


def get_current_user_id_optional(request: Request) -> Optional[str]:
    user_id = get_request_context().user_id
    return user_id or request.headers.get(get_settings().USER_HEADER)
