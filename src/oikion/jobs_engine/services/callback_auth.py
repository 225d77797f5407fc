"""
Per-job callback credentials.

Each job gets a token derived from its id and the service secret, so a worker
can only report on the job it was launched for.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional


def build_callback_token(job_id: str, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), str(job_id).encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_callback_token(job_id: str, token: Optional[str], secret: str) -> bool:
    if not token or not secret:
        return False
    expected = build_callback_token(job_id, secret)
    return hmac.compare_digest(expected, token.strip())


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def build_callback_url(base_url: str, job_id: str) -> Optional[str]:
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/api/v1/jobs/{job_id}/callback"
