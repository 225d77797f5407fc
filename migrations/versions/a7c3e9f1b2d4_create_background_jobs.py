"""create background jobs

Revision ID: a7c3e9f1b2d4
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a7c3e9f1b2d4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ACTIVE_PREDICATE = sa.text("status IN ('pending', 'running')")


def _json_type():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if "background_jobs" not in inspector.get_table_names():
        op.create_table(
            "background_jobs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("job_type", sa.String(length=40), nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("priority", sa.String(length=10), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("progress", sa.Integer(), nullable=False),
            sa.Column("progress_message", sa.Text(), nullable=True),
            sa.Column("payload", _json_type(), nullable=False),
            sa.Column("result", _json_type(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("metadata_json", _json_type(), nullable=True),
            sa.Column("orchestrator_job_name", sa.String(length=63), nullable=True),
            sa.Column("orchestrator_pod_name", sa.String(length=253), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    existing_indexes = {
        ix.get("name") for ix in inspector.get_indexes("background_jobs")
    }
    index_tenant = op.f("ix_background_jobs_tenant_id")
    if index_tenant not in existing_indexes:
        op.create_index(index_tenant, "background_jobs", ["tenant_id"], unique=False)
    if "ix_background_jobs_tenant_type_status" not in existing_indexes:
        op.create_index(
            "ix_background_jobs_tenant_type_status",
            "background_jobs",
            ["tenant_id", "job_type", "status"],
            unique=False,
        )
    if "ix_background_jobs_status_completed" not in existing_indexes:
        op.create_index(
            "ix_background_jobs_status_completed",
            "background_jobs",
            ["status", "completed_at"],
            unique=False,
        )
    if "uq_background_jobs_active_per_tenant_type" not in existing_indexes:
        op.create_index(
            "uq_background_jobs_active_per_tenant_type",
            "background_jobs",
            ["tenant_id", "job_type"],
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if "background_jobs" not in inspector.get_table_names():
        return
    op.drop_index("uq_background_jobs_active_per_tenant_type", table_name="background_jobs")
    op.drop_index("ix_background_jobs_status_completed", table_name="background_jobs")
    op.drop_index("ix_background_jobs_tenant_type_status", table_name="background_jobs")
    op.drop_index(op.f("ix_background_jobs_tenant_id"), table_name="background_jobs")
    op.drop_table("background_jobs")
