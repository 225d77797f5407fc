from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from oikion.config import get_settings
from oikion.context import tenant_id_var, user_id_var


class TenantUserContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        settings = get_settings()
        tenant_id = request.headers.get(settings.TENANT_HEADER)
        user_id = request.headers.get(settings.USER_HEADER)

        tenant_token = None
        user_token = None

        # Keep context established by an upstream auth layer.
        if tenant_id_var.get() is None:
            tenant_token = tenant_id_var.set(tenant_id)
        if user_id_var.get() is None:
            user_token = user_id_var.set(user_id)
        try:
            return await call_next(request)
        finally:
            if tenant_token is not None:
                tenant_id_var.reset(tenant_token)
            if user_token is not None:
                user_id_var.reset(user_token)
