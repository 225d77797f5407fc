from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text

from oikion import __version__
from oikion.config import get_settings
from oikion.context import get_request_context
from oikion.database import get_db_session
from oikion.jobs_engine.orchestrator import resolve_orchestrator_mode

router = APIRouter(tags=["system"])


@router.get("/health")
def health() -> dict:
    ctx = get_request_context()
    settings = get_settings()
    return {
        "ok": True,
        "service": "oikion-jobs",
        "version": __version__,
        "tenant_id": ctx.tenant_id,
        "environment": settings.ENVIRONMENT,
        "schema_mode": settings.SCHEMA_MODE,
        "orchestrator_mode": resolve_orchestrator_mode(settings),
    }


@router.get("/health/deps")
def health_deps() -> dict:
    deps: dict = {}
    overall_ok = True
    try:
        with get_db_session() as db:
            db.execute(text("SELECT 1"))
        deps["db"] = {"ok": True}
    except Exception as exc:
        deps["db"] = {"ok": False, "error": str(exc)}
        overall_ok = False
    return {"ok": overall_ok, "deps": deps}
