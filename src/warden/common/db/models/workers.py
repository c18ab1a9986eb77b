"""
Database models for per-user worker containers.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from warden.common.db.models.base import Base, SurrogateKey


class WorkerStatus(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


ACTIVE_WORKER_STATUSES = (WorkerStatus.STARTING.value, WorkerStatus.RUNNING.value)
FINISHED_WORKER_STATUSES = (WorkerStatus.STOPPED.value, WorkerStatus.FAILED.value)


class WorkerRecord(Base):
    """
    The orchestrator's belief about one worker container.

    A user may have many historical rows but at most one in an active
    (starting or running) status.
    """

    __tablename__ = "workers"

    id: Mapped[int] = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    # Identifier assigned by the container runtime
    container_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    stopped_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WorkerStatus.STARTING.value
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('starting', 'running', 'stopped', 'failed')",
            name="valid_worker_status",
        ),
        Index("worker_user_status_idx", "user_id", "status"),
        Index("worker_container_idx", "container_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_WORKER_STATUSES

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "container_id": self.container_id,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
        }
