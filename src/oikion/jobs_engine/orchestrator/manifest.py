from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from oikion.jobs_engine.job_types import JobTypeConfig
from oikion.jobs_engine.models.job import JobType

LABEL_APP = "app.kubernetes.io/name"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_JOB_ID = "oikion.com/job-id"
LABEL_TENANT = "oikion.com/organization-id"

_MAX_NAME_LENGTH = 63
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def build_workload_name(job_type: JobType, job_id: str) -> str:
    """
    Deterministic DNS-1123 workload name derived from the job id.

    The same job always maps to the same workload, so reconciliation and
    manual inspection can go from one to the other.
    """
    prefix = JobType(job_type).value.replace("-", "")
    ident = _NON_ALNUM.sub("", str(job_id).lower())
    if not ident:
        raise ValueError("job_id must contain alphanumeric characters")
    return f"{prefix}-{ident}"[:_MAX_NAME_LENGTH].rstrip("-")


def _secret_ref(name: str, secret_name: str, key: str) -> Dict[str, Any]:
    return {"name": name, "valueFrom": {"secretKeyRef": {"name": secret_name, "key": key}}}


def build_env(
    *,
    job_id: str,
    job_type: JobType,
    tenant_id: str,
    payload: Dict[str, Any],
    config: JobTypeConfig,
    secret_name: str,
    callback_url: Optional[str] = None,
    callback_token: Optional[str] = None,
    redis_url: str = "",
) -> List[Dict[str, Any]]:
    env: List[Dict[str, Any]] = [
        {"name": "JOB_ID", "value": job_id},
        {"name": "JOB_TYPE", "value": JobType(job_type).value},
        {"name": "ORGANIZATION_ID", "value": tenant_id},
        {"name": "PAYLOAD", "value": json.dumps(payload, separators=(",", ":"))},
        _secret_ref("DATABASE_URL", secret_name, "database-url"),
    ]
    if callback_url:
        env.append({"name": "CALLBACK_URL", "value": callback_url})
    if callback_token:
        env.append({"name": "CALLBACK_TOKEN", "value": callback_token})
    if redis_url:
        env.append({"name": "REDIS_URL", "value": redis_url})
    else:
        env.append(_secret_ref("REDIS_URL", secret_name, "redis-url"))
    for secret in config.secret_env:
        env.append(_secret_ref(secret.name, secret_name, secret.key))
    return env


def build_job_manifest(
    *,
    job_id: str,
    job_type: JobType,
    tenant_id: str,
    payload: Dict[str, Any],
    config: JobTypeConfig,
    secret_name: str = "oikion-secrets",
    callback_url: Optional[str] = None,
    callback_token: Optional[str] = None,
    redis_url: str = "",
    ttl_seconds_after_finished: int = 3600,
) -> Dict[str, Any]:
    job_type = JobType(job_type)
    job_name = build_workload_name(job_type, job_id)
    pod_labels = {
        LABEL_APP: "oikion-job",
        LABEL_COMPONENT: job_type.value,
        LABEL_JOB_ID: job_id,
    }
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": job_name,
            "namespace": config.namespace,
            "labels": {**pod_labels, LABEL_TENANT: tenant_id},
        },
        "spec": {
            "backoffLimit": config.max_retries,
            "activeDeadlineSeconds": config.timeout_seconds,
            "ttlSecondsAfterFinished": ttl_seconds_after_finished,
            "template": {
                "metadata": {"labels": pod_labels},
                "spec": {
                    "restartPolicy": "Never",
                    "containers": [
                        {
                            "name": "worker",
                            "image": config.image,
                            "resources": config.resources.as_dict(),
                            "env": build_env(
                                job_id=job_id,
                                job_type=job_type,
                                tenant_id=tenant_id,
                                payload=payload,
                                config=config,
                                secret_name=secret_name,
                                callback_url=callback_url,
                                callback_token=callback_token,
                                redis_url=redis_url,
                            ),
                        }
                    ],
                },
            },
        },
    }
