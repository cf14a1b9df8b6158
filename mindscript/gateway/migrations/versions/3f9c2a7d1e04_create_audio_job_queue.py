"""create audio job queue

Revision ID: 3f9c2a7d1e04
Revises:
Create Date: 2026-09-28 10:14:03.512377

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c2a7d1e04"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")

job_status = sa.Enum("pending", "processing", "completed", "failed", "cancelled", name="jobstatus")
job_priority = sa.Enum("low", "normal", "high", "urgent", name="jobpriority")
job_type = sa.Enum("render", "preview", "export", name="jobtype")
render_stage = sa.Enum("preparing", "tts", "mixing", "normalizing", "uploading", "completed", name="renderstage")


def upgrade() -> None:
    op.create_table(
        "audio_job_queue",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("project_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("render_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("job_type", job_type, nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("priority", job_priority, nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("stage", render_stage, nullable=True),
        sa.Column("progress_message", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("error_message", sa.TEXT(), nullable=True),
        sa.Column("error_details", JSON_TYPE, nullable=True),
        sa.Column("output_url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("result", JSON_TYPE, nullable=True),
        sa.Column("metadata", JSON_TYPE, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="progress_range"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_audio_job_queue_user_id"), "audio_job_queue", ["user_id"], unique=False)
    op.create_index(op.f("ix_audio_job_queue_status"), "audio_job_queue", ["status"], unique=False)
    op.create_index("ix_audio_job_queue_claim", "audio_job_queue", ["status", "priority", "created_at"], unique=False)
    op.create_index("ix_audio_job_queue_user_created", "audio_job_queue", ["user_id", "created_at"], unique=False)

    op.create_table(
        "job_status_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("old_status", job_status, nullable=True),
        sa.Column("new_status", job_status, nullable=False),
        sa.Column("worker_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("error", sa.TEXT(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["audio_job_queue.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_job_status_history_job_id"), "job_status_history", ["job_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_job_status_history_job_id"), table_name="job_status_history")
    op.drop_table("job_status_history")
    op.drop_index("ix_audio_job_queue_user_created", table_name="audio_job_queue")
    op.drop_index("ix_audio_job_queue_claim", table_name="audio_job_queue")
    op.drop_index(op.f("ix_audio_job_queue_status"), table_name="audio_job_queue")
    op.drop_index(op.f("ix_audio_job_queue_user_id"), table_name="audio_job_queue")
    op.drop_table("audio_job_queue")
    for enum in (render_stage, job_type, job_priority, job_status):
        enum.drop(op.get_bind(), checkfirst=True)
