"""
Append-only audit events and worker metrics snapshots.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from warden.common.db.models.base import Base, SurrogateKey


class AuditLogEntry(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("audit_user_time_idx", "user_id", "timestamp"),)

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "details": self.details,
        }


class MetricsSnapshot(Base):
    """Cumulative worker counters at a point in time."""

    __tablename__ = "metrics"

    id: Mapped[int] = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    messages_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spam_detected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spam_archived: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spam_blocked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spam_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    __table_args__ = (Index("metrics_user_time_idx", "user_id", "timestamp"),)

    def serialize(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "messages_processed": self.messages_processed,
            "spam_detected": self.spam_detected,
            "spam_archived": self.spam_archived,
            "spam_blocked": self.spam_blocked,
            "spam_rate": self.spam_rate,
        }
