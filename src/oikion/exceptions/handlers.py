from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse


class OikionException(Exception):
    """
    Base exception for the job orchestration service.

    Attributes: message/code/status_code/details/user_message, plus to_dict()
    for the JSON error body.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "OIKION_ERROR",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details: Dict[str, Any] = details or {}
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover
        return self.message


class ValidationError(OikionException):
    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"field": field} if field else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=422,
            details=details,
            user_message=f"Validation failed: {message}",
        )


class NotFoundError(OikionException):
    def __init__(self, resource: str, resource_id: str, **kwargs: Any):
        details: Dict[str, Any] = {"resource": resource, "id": resource_id}
        details.update(kwargs)
        super().__init__(
            message=f"{resource} not found: {resource_id}",
            code="NOT_FOUND",
            status_code=404,
            details=details,
            user_message=f"{resource} not found",
        )


class ConfigurationError(OikionException):
    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"config_key": config_key} if config_key else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            status_code=500,
            details=details,
            user_message="System configuration error",
        )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(OikionException)
    async def _handle_oikion_exception(_request: Request, exc: OikionException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})
