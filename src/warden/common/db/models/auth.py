"""
Database model for the per-user authentication handshake state.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from warden.common.auth_phases import AuthPhase
from warden.common.db.models.base import Base

if TYPE_CHECKING:
    from warden.common.db.models.users import User


class AuthState(Base):
    """Last known authentication phase of the user's worker."""

    __tablename__ = "auth_states"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    phase: Mapped[str] = mapped_column(
        String(32), nullable=False, default=AuthPhase.NONE.value
    )
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    qr_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_auth_attempt: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    user: Mapped[User] = relationship("User", back_populates="auth_state")

    @property
    def auth_phase(self) -> AuthPhase:
        return AuthPhase(self.phase)

    def serialize(self) -> dict:
        return {
            "user_id": self.user_id,
            "phase": self.phase,
            "has_phone": self.phone_number is not None,
            "last_auth_attempt": (
                self.last_auth_attempt.isoformat() if self.last_auth_attempt else None
            ),
        }
