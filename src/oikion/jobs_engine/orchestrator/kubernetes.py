from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from oikion.config import get_settings
from oikion.config.settings import Settings
from oikion.jobs_engine.job_types import JobTypeRegistry
from oikion.jobs_engine.models.job import JobType
from oikion.jobs_engine.orchestrator.base import (
    CreatedWorkload,
    JobCondition,
    OrchestratorClient,
    OrchestratorJobStatus,
)
from oikion.jobs_engine.orchestrator.manifest import LABEL_TENANT, build_job_manifest
from oikion.jobs_engine.services.job_errors import OrchestratorError

logger = logging.getLogger(__name__)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_job_status(raw: Dict[str, Any]) -> OrchestratorJobStatus:
    status = raw.get("status") or {}
    conditions = [
        JobCondition(
            type=str(c.get("type")),
            status=str(c.get("status")),
            reason=c.get("reason"),
            message=c.get("message"),
            last_transition_time=_parse_ts(c.get("lastTransitionTime")),
        )
        for c in status.get("conditions") or []
    ]
    return OrchestratorJobStatus(
        active=int(status.get("active") or 0),
        succeeded=int(status.get("succeeded") or 0),
        failed=int(status.get("failed") or 0),
        start_time=_parse_ts(status.get("startTime")),
        completion_time=_parse_ts(status.get("completionTime")),
        conditions=conditions,
    )


class KubernetesOrchestrator(OrchestratorClient):
    """Talks to the Kubernetes batch/v1 API over HTTPS with a bearer token."""

    def __init__(
        self,
        registry: JobTypeRegistry,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(registry)
        self.settings = settings or get_settings()
        self.base_url = (self.settings.K8S_API_URL or "https://kubernetes.default.svc").rstrip("/")
        self.namespace = self.settings.K8S_NAMESPACE
        self.timeout_s = self.settings.K8S_TIMEOUT_SECONDS
        self._transport = transport
        # Workload names start with the type without dashes; map back to the namespace.
        self._namespaces_by_prefix = {
            jt.value.replace("-", ""): cfg.namespace for jt, cfg in registry.items()
        }

    def _token(self) -> str:
        if self.settings.K8S_SERVICE_ACCOUNT_TOKEN:
            return self.settings.K8S_SERVICE_ACCOUNT_TOKEN.strip()
        token_path = Path(self.settings.K8S_TOKEN_PATH)
        try:
            return token_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise OrchestratorError(
                "K8S_SERVICE_ACCOUNT_TOKEN not configured and no in-cluster token found"
            ) from exc

    def _verify(self) -> Union[bool, str]:
        if not self.settings.K8S_VERIFY_SSL:
            return False
        return self.settings.K8S_CA_CERT_PATH or True

    def _client(self) -> httpx.Client:
        kwargs: Dict[str, Any] = {
            "base_url": self.base_url,
            "timeout": self.timeout_s,
            "headers": {"Authorization": f"Bearer {self._token()}"},
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            kwargs["verify"] = self._verify()
        return httpx.Client(**kwargs)

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            with self._client() as client:
                resp = client.request(method, path, json=json_body, params=params)
        except httpx.HTTPError as exc:
            raise OrchestratorError(f"Kubernetes API unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise OrchestratorError(
                f"K8s API error ({resp.status_code}): {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        return resp

    def _namespace_for(self, job_name: str) -> str:
        prefix = job_name.split("-", 1)[0]
        return self._namespaces_by_prefix.get(prefix, self.namespace)

    def create_job(
        self,
        *,
        job_id: str,
        job_type: JobType,
        tenant_id: str,
        payload: Dict[str, Any],
        callback_url: Optional[str] = None,
        callback_token: Optional[str] = None,
    ) -> CreatedWorkload:
        config = self.registry[JobType(job_type)]
        manifest = build_job_manifest(
            job_id=job_id,
            job_type=job_type,
            tenant_id=tenant_id,
            payload=payload,
            config=config,
            secret_name=self.settings.JOB_SECRET_NAME,
            callback_url=callback_url,
            callback_token=callback_token,
            redis_url=self.settings.JOB_REDIS_URL,
            ttl_seconds_after_finished=self.settings.JOB_TTL_SECONDS_AFTER_FINISHED,
        )
        job_name = manifest["metadata"]["name"]
        self._request(
            "POST",
            f"/apis/batch/v1/namespaces/{config.namespace}/jobs",
            json_body=manifest,
        )
        logger.info("Created Kubernetes job %s in %s", job_name, config.namespace)
        return CreatedWorkload(job_name=job_name)

    def get_job_status(self, job_name: str) -> Optional[OrchestratorJobStatus]:
        namespace = self._namespace_for(job_name)
        try:
            resp = self._request("GET", f"/apis/batch/v1/namespaces/{namespace}/jobs/{job_name}")
        except OrchestratorError as exc:
            if exc.is_not_found:
                return None
            raise
        return parse_job_status(resp.json())

    def get_job_pod_name(self, job_name: str) -> Optional[str]:
        namespace = self._namespace_for(job_name)
        try:
            resp = self._request(
                "GET",
                f"/api/v1/namespaces/{namespace}/pods",
                params={"labelSelector": f"job-name={job_name}"},
            )
        except OrchestratorError as exc:
            logger.warning("Pod lookup failed for %s: %s", job_name, exc)
            return None
        items = resp.json().get("items") or []
        if not items:
            return None
        return items[0].get("metadata", {}).get("name")

    def get_job_logs(self, job_name: str, tail_lines: Optional[int] = None) -> Optional[str]:
        pod_name = self.get_job_pod_name(job_name)
        if not pod_name:
            return None
        namespace = self._namespace_for(job_name)
        params: Dict[str, Any] = {}
        if tail_lines:
            params["tailLines"] = int(tail_lines)
        try:
            resp = self._request(
                "GET", f"/api/v1/namespaces/{namespace}/pods/{pod_name}/log", params=params
            )
        except OrchestratorError as exc:
            logger.warning("Log retrieval failed for %s: %s", job_name, exc)
            return None
        return resp.text

    def delete_job(self, job_name: str) -> None:
        namespace = self._namespace_for(job_name)
        self._request(
            "DELETE",
            f"/apis/batch/v1/namespaces/{namespace}/jobs/{job_name}",
            params={"propagationPolicy": "Background"},
        )
        logger.info("Deleted Kubernetes job %s", job_name)

    def list_jobs_by_tenant(self, tenant_id: str) -> List[Dict[str, Any]]:
        namespaces = sorted(set(self._namespaces_by_prefix.values()))
        items: List[Dict[str, Any]] = []
        for namespace in namespaces:
            resp = self._request(
                "GET",
                f"/apis/batch/v1/namespaces/{namespace}/jobs",
                params={"labelSelector": f"{LABEL_TENANT}={tenant_id}"},
            )
            items.extend(resp.json().get("items") or [])
        return items
