"""Initial structure

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3f1c2a9d7b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SurrogateKey = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.CheckConstraint(
            "status IN ('active', 'paused', 'stopped')", name="valid_user_status"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "user_settings",
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("low_threshold", sa.Float(), nullable=False),
        sa.Column("action_threshold", sa.Float(), nullable=False),
        sa.Column("default_action", sa.String(length=20), nullable=False),
        sa.Column("enable_deletion", sa.Boolean(), nullable=False),
        sa.Column("enable_blocking", sa.Boolean(), nullable=False),
        sa.CheckConstraint(
            "default_action IN ('log', 'archive', 'block')", name="valid_default_action"
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_table(
        "auth_states",
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("phase", sa.String(length=32), nullable=False),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("qr_link", sa.Text(), nullable=True),
        sa.Column("last_auth_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_table(
        "workers",
        sa.Column("id", SurrogateKey, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("container_id", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stopped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.CheckConstraint(
            "status IN ('starting', 'running', 'stopped', 'failed')",
            name="valid_worker_status",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("worker_user_status_idx", "workers", ["user_id", "status"])
    op.create_index("worker_container_idx", "workers", ["container_id"])
    op.create_table(
        "audit_log",
        sa.Column("id", SurrogateKey, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("audit_user_time_idx", "audit_log", ["user_id", "timestamp"])
    op.create_table(
        "metrics",
        sa.Column("id", SurrogateKey, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("messages_processed", sa.Integer(), nullable=False),
        sa.Column("spam_detected", sa.Integer(), nullable=False),
        sa.Column("spam_archived", sa.Integer(), nullable=False),
        sa.Column("spam_blocked", sa.Integer(), nullable=False),
        sa.Column("spam_rate", sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("metrics_user_time_idx", "metrics", ["user_id", "timestamp"])


def downgrade() -> None:
    op.drop_index("metrics_user_time_idx", table_name="metrics")
    op.drop_table("metrics")
    op.drop_index("audit_user_time_idx", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("worker_container_idx", table_name="workers")
    op.drop_index("worker_user_status_idx", table_name="workers")
    op.drop_table("workers")
    op.drop_table("auth_states")
    op.drop_table("user_settings")
    op.drop_table("users")
