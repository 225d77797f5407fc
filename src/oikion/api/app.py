from __future__ import annotations

from fastapi import FastAPI

from oikion import __version__
from oikion.api.middleware.context import TenantUserContextMiddleware
from oikion.api.routers.health import router as health_router
from oikion.api.routers.jobs import router as jobs_router
from oikion.config import get_settings
from oikion.database import init_db
from oikion.exceptions.handlers import register_exception_handlers
from oikion.logging_config import configure_logging


def create_app() -> FastAPI:
    app = FastAPI(title="Oikion Jobs", version=__version__)
    app.add_middleware(TenantUserContextMiddleware)
    register_exception_handlers(app)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")

    @app.on_event("startup")
    def _startup() -> None:  # pragma: no cover
        settings = get_settings()
        configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
        # Dev convenience; production runs `oikion db upgrade`.
        if settings.ENVIRONMENT == "dev":
            init_db(create_tables=True)

    return app


app = create_app()
