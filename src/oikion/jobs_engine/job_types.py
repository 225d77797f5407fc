"""
Per-job-type workload configuration.

One immutable entry per JobType: container image, resource requests/limits,
timeout, retry budget, namespace and the provider secrets the container needs.
The registry is passed explicitly to JobService and the orchestrator clients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from oikion.config import get_settings
from oikion.exceptions.handlers import ConfigurationError
from oikion.jobs_engine.models.job import JobType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSpec:
    cpu: str
    memory: str

    def as_dict(self) -> Dict[str, str]:
        return {"cpu": self.cpu, "memory": self.memory}


@dataclass(frozen=True)
class ResourceRequirements:
    requests: ResourceSpec
    limits: ResourceSpec

    def as_dict(self) -> Dict[str, Dict[str, str]]:
        return {"requests": self.requests.as_dict(), "limits": self.limits.as_dict()}


@dataclass(frozen=True)
class SecretEnv:
    """Environment variable sourced from a key of the shared job secret."""

    name: str
    key: str


@dataclass(frozen=True)
class JobTypeConfig:
    job_type: JobType
    image: str
    resources: ResourceRequirements
    timeout_seconds: int
    max_retries: int
    namespace: str
    secret_env: Tuple[SecretEnv, ...] = field(default_factory=tuple)


JobTypeRegistry = Mapping[JobType, JobTypeConfig]


def _resources(req_cpu: str, req_mem: str, lim_cpu: str, lim_mem: str) -> ResourceRequirements:
    return ResourceRequirements(
        requests=ResourceSpec(cpu=req_cpu, memory=req_mem),
        limits=ResourceSpec(cpu=lim_cpu, memory=lim_mem),
    )


DEFAULT_NAMESPACE = "oikion-jobs"

DEFAULT_JOB_TYPE_CONFIGS: JobTypeRegistry = MappingProxyType(
    {
        JobType.MARKET_INTEL_SCRAPE: JobTypeConfig(
            job_type=JobType.MARKET_INTEL_SCRAPE,
            image="registry.digitalocean.com/oikion/mi-scraper:latest",
            resources=_resources("250m", "512Mi", "1000m", "2Gi"),
            timeout_seconds=1800,
            max_retries=2,
            namespace=DEFAULT_NAMESPACE,
        ),
        JobType.NEWSLETTER_SEND: JobTypeConfig(
            job_type=JobType.NEWSLETTER_SEND,
            image="registry.digitalocean.com/oikion/newsletter-worker:latest",
            resources=_resources("100m", "256Mi", "500m", "512Mi"),
            timeout_seconds=3600,
            max_retries=3,
            namespace=DEFAULT_NAMESPACE,
            secret_env=(SecretEnv("RESEND_API_KEY", "resend-api-key"),),
        ),
        JobType.PORTAL_PUBLISH_XE: JobTypeConfig(
            job_type=JobType.PORTAL_PUBLISH_XE,
            image="registry.digitalocean.com/oikion/portal-worker:latest",
            resources=_resources("200m", "512Mi", "500m", "1Gi"),
            timeout_seconds=1800,
            max_retries=2,
            namespace=DEFAULT_NAMESPACE,
            secret_env=(
                SecretEnv("XE_GR_USERNAME", "xe-gr-username"),
                SecretEnv("XE_GR_PASSWORD", "xe-gr-password"),
                SecretEnv("XE_GR_AUTHTOKEN", "xe-gr-authtoken"),
            ),
        ),
        JobType.BULK_EXPORT: JobTypeConfig(
            job_type=JobType.BULK_EXPORT,
            image="registry.digitalocean.com/oikion/export-worker:latest",
            resources=_resources("200m", "512Mi", "1000m", "2Gi"),
            timeout_seconds=900,
            max_retries=2,
            namespace=DEFAULT_NAMESPACE,
        ),
    }
)


def build_registry(configs: Mapping[JobType, JobTypeConfig]) -> JobTypeRegistry:
    missing = [jt.value for jt in JobType if jt not in configs]
    if missing:
        raise ConfigurationError(
            f"Job type configuration missing for: {', '.join(missing)}",
            config_key="JOB_TYPES_CONFIG_PATH",
        )
    return MappingProxyType(dict(configs))


def _positive_int(value: Any, name: str, errors: List[str], source: str) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        errors.append(f"{name} must be an integer ({source})")
        return None
    if parsed < 0:
        errors.append(f"{name} must be >= 0 ({source})")
        return None
    return parsed


def _merge_resources(
    base: ResourceRequirements, raw: Any, label: str, errors: List[str], source: str
) -> ResourceRequirements:
    if not isinstance(raw, dict):
        errors.append(f"{label}.resources must be an object ({source})")
        return base
    merged = base
    for section in ("requests", "limits"):
        values = raw.get(section)
        if values is None:
            continue
        if not isinstance(values, dict):
            errors.append(f"{label}.resources.{section} must be an object ({source})")
            continue
        current: ResourceSpec = getattr(merged, section)
        spec = ResourceSpec(
            cpu=str(values.get("cpu", current.cpu)),
            memory=str(values.get("memory", current.memory)),
        )
        merged = replace(merged, **{section: spec})
    return merged


def _apply_overrides(
    base: JobTypeConfig, raw: Dict[str, Any], label: str, errors: List[str], source: str
) -> JobTypeConfig:
    updates: Dict[str, Any] = {}
    if "image" in raw:
        image = str(raw.get("image") or "").strip()
        if image:
            updates["image"] = image
        else:
            errors.append(f"{label}.image must not be empty ({source})")
    if "namespace" in raw:
        updates["namespace"] = str(raw["namespace"]).strip() or base.namespace
    for key, attr in (("timeout_seconds", "timeout_seconds"), ("max_retries", "max_retries")):
        if key in raw:
            parsed = _positive_int(raw[key], f"{label}.{key}", errors, source)
            if parsed is not None:
                updates[attr] = parsed
    if "resources" in raw:
        updates["resources"] = _merge_resources(
            base.resources, raw["resources"], label, errors, source
        )
    if "secret_env" in raw:
        entries = raw.get("secret_env") or []
        secret_env = []
        for idx, item in enumerate(entries if isinstance(entries, list) else []):
            if not isinstance(item, dict) or not item.get("name") or not item.get("key"):
                errors.append(f"{label}.secret_env[{idx}] needs name and key ({source})")
                continue
            secret_env.append(SecretEnv(name=str(item["name"]), key=str(item["key"])))
        updates["secret_env"] = tuple(secret_env)
    return replace(base, **updates)


def load_job_type_payload(
    payload: Any,
    *,
    source: str,
    base: Optional[JobTypeRegistry] = None,
) -> JobTypeRegistry:
    """
    Overlay a ``{"job_types": [...]}`` document (or a mapping keyed by type)
    onto ``base``. All problems are collected and raised together.
    """
    configs: Dict[JobType, JobTypeConfig] = dict(base or DEFAULT_JOB_TYPE_CONFIGS)
    errors: List[str] = []

    entries = payload.get("job_types", payload) if isinstance(payload, dict) else payload
    if isinstance(entries, dict):
        entries = [dict(value or {}, type=key) for key, value in entries.items()]
    if not isinstance(entries, list):
        raise ConfigurationError(
            f'Job type config must be a list or {{"job_types": [...]}} ({source})',
            config_key="JOB_TYPES_CONFIG_PATH",
        )

    for idx, raw in enumerate(entries):
        if not isinstance(raw, dict):
            errors.append(f"job_types[{idx}] must be an object ({source})")
            continue
        type_value = str(raw.get("type") or "").strip()
        try:
            job_type = JobType(type_value)
        except ValueError:
            errors.append(f"job_types[{idx}] unknown type '{type_value}' ({source})")
            continue
        configs[job_type] = _apply_overrides(
            configs[job_type], raw, f"job_types[{idx}]", errors, source
        )

    if errors:
        raise ConfigurationError(
            "Invalid job type configuration",
            config_key="JOB_TYPES_CONFIG_PATH",
            errors=errors,
        )
    return build_registry(configs)


def load_job_type_registry(path: str) -> JobTypeRegistry:
    file_path = Path(path)
    try:
        payload = yaml.safe_load(file_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(
            f"Cannot read job type config {file_path}: {exc}",
            config_key="JOB_TYPES_CONFIG_PATH",
        ) from exc
    registry = load_job_type_payload(payload or {}, source=str(file_path))
    logger.info("Loaded job type configuration from %s", file_path)
    return registry


@lru_cache(maxsize=1)
def get_job_type_registry() -> JobTypeRegistry:
    path = get_settings().JOB_TYPES_CONFIG_PATH
    if path:
        return load_job_type_registry(path)
    return DEFAULT_JOB_TYPE_CONFIGS
