"""User consent models."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from src.database.base import Base, JSONType, TimestampMixin, UTCDateTime, utcnow


class ConsentAction(StrEnum):
    """Consent history actions."""

    GRANTED = "granted"
    REVOKED = "revoked"
    UPDATED = "updated"


class UserConsent(Base, TimestampMixin):
    """Scopes a user has granted to a client; one row per (user, client).

    ``is_active`` is false exactly when ``granted_scopes`` is empty. Rows are never
    hard-deleted.
    """

    __tablename__ = "oauth_user_consents"
    __table_args__ = (UniqueConstraint("user_id", "client_id", name="uq_oauth_user_consents_user_client"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    granted_scopes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=expression.true())

    first_granted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Where the first grant came from
    initial_ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    initial_user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def covers(self, scopes: list[str] | set[str]) -> bool:
        """True when every requested scope is already granted."""
        return self.is_active and set(scopes).issubset(self.granted_scopes)

    def missing_scopes(self, scopes: list[str]) -> list[str]:
        granted = set(self.granted_scopes) if self.is_active else set()
        return [s for s in scopes if s not in granted]


class ConsentEvent(Base):
    """Append-only history entry for a consent record."""

    __tablename__ = "oauth_consent_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    consent_id: Mapped[int] = mapped_column(
        ForeignKey("oauth_user_consents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(Enum(ConsentAction, native_enum=False, length=16), nullable=False)
    scopes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, index=True)
