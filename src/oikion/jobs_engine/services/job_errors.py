from __future__ import annotations

from typing import Optional

from oikion.exceptions.handlers import OikionException


class OrchestratorError(RuntimeError):
    """The orchestrator rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class CallbackAuthError(OikionException):
    def __init__(self, job_id: str):
        super().__init__(
            message=f"Invalid callback credentials for job {job_id}",
            code="CALLBACK_UNAUTHORIZED",
            status_code=401,
            details={"job_id": job_id},
            user_message="Invalid callback credentials",
        )
