"""
Background Job Models
Tracks containerised background workloads submitted to the orchestrator.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB

from oikion.models.base import Base


class JobType(str, enum.Enum):
    MARKET_INTEL_SCRAPE = "market-intel-scrape"
    NEWSLETTER_SEND = "newsletter-send"
    PORTAL_PUBLISH_XE = "portal-publish-xe"
    BULK_EXPORT = "bulk-export"


JOB_TYPE_LABELS = {
    JobType.MARKET_INTEL_SCRAPE: "Market Intelligence Scrape",
    JobType.NEWSLETTER_SEND: "Newsletter Campaign",
    JobType.PORTAL_PUBLISH_XE: "XE.gr Portal Publishing",
    JobType.BULK_EXPORT: "Bulk Data Export",
}


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)
TERMINAL_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)


class JobPriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


_ACTIVE_PREDICATE = text("status IN ('pending', 'running')")


class BackgroundJob(Base):
    """
    One unit of background work executed in an orchestrator-managed container.

    At most one job per (tenant_id, job_type) may be active; the partial unique
    index below enforces it in the store.
    """

    __tablename__ = "background_jobs"
    __table_args__ = (
        Index("ix_background_jobs_tenant_type_status", "tenant_id", "job_type", "status"),
        Index("ix_background_jobs_status_completed", "status", "completed_at"),
        Index(
            "uq_background_jobs_active_per_tenant_type",
            "tenant_id",
            "job_type",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
        {"extend_existing": True},
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    job_type = Column(String(40), nullable=False)
    tenant_id = Column(String(64), nullable=False, index=True)
    priority = Column(String(10), nullable=False, default=JobPriority.NORMAL.value)

    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    progress = Column(Integer, nullable=False, default=0)
    progress_message = Column(Text, nullable=True)

    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    result = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    # Orchestrator handle; kept after completion for log retrieval
    orchestrator_job_name = Column(String(63), nullable=True)
    orchestrator_pod_name = Column(String(253), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_by = Column(String(64), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.job_type,
            "tenant_id": self.tenant_id,
            "priority": self.priority,
            "status": self.status,
            "progress": self.progress,
            "progress_message": self.progress_message,
            "payload": self.payload,
            "result": self.result,
            "error_message": self.error_message,
            "metadata": self.metadata_json,
            "orchestrator_job_name": self.orchestrator_job_name,
            "orchestrator_pod_name": self.orchestrator_pod_name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_by": self.created_by,
        }
