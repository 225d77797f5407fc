from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="OIKION_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="Environment name")
    HOST: str = Field(default="0.0.0.0", description="Bind host")
    PORT: int = Field(default=7920, description="Bind port")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")
    LOG_FORMAT: str = Field(default="text", description="text|json")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///oikion_jobs_dev.db")
    SCHEMA_MODE: str = Field(
        default="create_all",
        description="create_all: auto-create tables (dev), migrations: use Alembic only (prod)",
    )

    # Tenant / actor headers (set by the upstream gateway after auth)
    TENANT_HEADER: str = Field(default="x-tenant-id", description="Tenant header name")
    USER_HEADER: str = Field(default="x-user-id", description="Actor header name")

    # Orchestrator
    ORCHESTRATOR_MODE: str = Field(
        default="auto",
        description="kubernetes|mock|auto (auto uses mock in dev without K8S_API_URL)",
    )
    K8S_API_URL: str = Field(default="", description="Kubernetes API server URL")
    K8S_NAMESPACE: str = Field(default="oikion-jobs")
    K8S_SERVICE_ACCOUNT_TOKEN: str = Field(default="")
    K8S_TOKEN_PATH: str = Field(
        default="/var/run/secrets/kubernetes.io/serviceaccount/token",
        description="In-cluster service account token file",
    )
    K8S_CA_CERT_PATH: str = Field(
        default="",
        description="CA bundle for the API server; empty uses system trust",
    )
    K8S_VERIFY_SSL: bool = Field(default=True)
    K8S_TIMEOUT_SECONDS: float = Field(default=15.0)

    # Workload defaults
    JOB_TTL_SECONDS_AFTER_FINISHED: int = Field(
        default=3600, description="Orchestrator-side garbage collection of finished workloads"
    )
    JOB_SECRET_NAME: str = Field(
        default="oikion-secrets", description="Secret holding database/redis/provider credentials"
    )
    JOB_REDIS_URL: str = Field(
        default="", description="Explicit REDIS_URL for workloads; empty reads it from the secret"
    )
    JOB_TYPES_CONFIG_PATH: str = Field(
        default="", description="Optional YAML/JSON file overriding per-type job configuration"
    )

    # Callbacks
    JOB_CALLBACK_BASE_URL: str = Field(
        default="", description="Public base URL workloads use to reach the callback endpoint"
    )
    JOB_CALLBACK_SECRET: str = Field(
        default="oikion-dev-callback-secret-change-me",
        description="HMAC key for per-job callback tokens; override in production",
    )

    # Lifecycle
    JOB_RETENTION_DAYS: int = Field(default=7, description="Cleanup retention window")
    JOB_POLL_INTERVAL_MS: int = Field(
        default=2000, description="Polling cadence advertised to status callers"
    )
    MOCK_COMPLETE_AFTER_SECONDS: float = Field(
        default=5.0, description="Mock orchestrator: seconds until a workload reports success"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
