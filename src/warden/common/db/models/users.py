"""
Database models for command channel users and their worker settings.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, TypedDict, TYPE_CHECKING

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from warden.common.db.models.base import Base

if TYPE_CHECKING:
    from warden.common.db.models.auth import AuthState


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class DefaultAction(str, enum.Enum):
    LOG = "log"
    ARCHIVE = "archive"
    BLOCK = "block"


class SettingsPayload(TypedDict):
    low_threshold: Annotated[float, "Score above which a message is suspicious"]
    action_threshold: Annotated[float, "Score above which the default action runs"]
    default_action: Annotated[str, "One of log, archive, block"]
    enable_deletion: Annotated[bool, "Whether the worker may delete messages"]
    enable_blocking: Annotated[bool, "Whether the worker may block senders"]


class User(Base):
    """
    A person talking to the command channel.

    The primary key is the chat platform's identity for the user. Users are
    never deleted, only moved between lifecycle statuses.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    last_active: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UserStatus.STOPPED.value
    )

    settings: Mapped[UserSettings] = relationship(
        "UserSettings", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    auth_state: Mapped[AuthState] = relationship(
        "AuthState", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'paused', 'stopped')", name="valid_user_status"
        ),
    )

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "status": self.status,
            "registered_at": self.registered_at.isoformat() if self.registered_at else None,
            "last_active": self.last_active.isoformat() if self.last_active else None,
        }


class UserSettings(Base):
    """Detection thresholds and action flags handed to the user's worker."""

    __tablename__ = "user_settings"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    low_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.3)
    action_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.85)
    default_action: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DefaultAction.ARCHIVE.value
    )
    enable_deletion: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    enable_blocking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    user: Mapped[User] = relationship("User", back_populates="settings")

    __table_args__ = (
        CheckConstraint(
            "default_action IN ('log', 'archive', 'block')", name="valid_default_action"
        ),
    )

    def as_payload(self) -> SettingsPayload:
        return {
            "low_threshold": self.low_threshold,
            "action_threshold": self.action_threshold,
            "default_action": self.default_action,
            "enable_deletion": bool(self.enable_deletion),
            "enable_blocking": bool(self.enable_blocking),
        }

    def as_environment(self) -> dict[str, str]:
        """Settings serialized the way the worker reads them from its environment."""
        return {
            "LOW_THRESHOLD": str(self.low_threshold),
            "ACTION_THRESHOLD": str(self.action_threshold),
            "DEFAULT_ACTION": self.default_action,
            "ENABLE_DELETION": str(bool(self.enable_deletion)).lower(),
            "ENABLE_BLOCKING": str(bool(self.enable_blocking)).lower(),
        }
