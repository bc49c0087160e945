"""Authorization code, refresh token and consent ticket models."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from src.database.base import Base, UTCDateTime, utcnow


class RevocationReason(StrEnum):
    """Why a refresh token stopped being usable."""

    USER_REVOKED = "user_revoked"
    CLIENT_REVOKED = "client_revoked"
    ADMIN_REVOKED = "admin_revoked"
    TOKEN_REUSE = "token_reuse"
    CLIENT_SUSPENDED = "client_suspended"
    CLIENT_DELETED = "client_deleted"
    FAMILY_LIMIT = "family_limit"


class AuthorizationCode(Base):
    """Single-use, short-lived code binding user, client, redirect URI and PKCE challenge.

    ``is_used`` flips exactly once, through a conditional update; the code also dies
    on ``expires_at`` whether or not it was used.
    """

    __tablename__ = "oauth_authorization_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    redirect_uri: Mapped[str] = mapped_column(String(2048), nullable=False)
    scope: Mapped[str] = mapped_column(String(500), nullable=False)

    # PKCE
    code_challenge: Mapped[str | None] = mapped_column(String(128), nullable=True)
    code_challenge_method: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # OIDC
    nonce: Mapped[str | None] = mapped_column(String(200), nullable=True)
    state: Mapped[str | None] = mapped_column(String(500), nullable=True)
    auth_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    # Request origin
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Lifecycle
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=expression.false())
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    used_from_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    @property
    def scopes(self) -> list[str]:
        return self.scope.split()


class RefreshToken(Base):
    """Hashed, rotatable refresh token.

    Tokens descending from one grant share ``family_id``; within a family at most
    one token is live (not superseded, not revoked, not expired).
    """

    __tablename__ = "oauth_refresh_tokens"
    __table_args__ = (Index("ix_oauth_refresh_tokens_client_user", "client_id", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)

    # Lineage
    family_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    previous_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Binding
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(500), nullable=False)

    # Lifecycle
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    superseded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    is_revoked: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=expression.false(), index=True
    )
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(
        Enum(RevocationReason, native_enum=False, length=32), nullable=True
    )

    # Request origin
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def scopes(self) -> list[str]:
        return self.scope.split()

    def is_expired(self) -> bool:
        return self.expires_at <= utcnow()

    def is_live(self) -> bool:
        return not self.is_revoked and self.superseded_at is None and not self.is_expired()


class ConsentDecision(StrEnum):
    APPROVED = "approved"
    DENIED = "denied"


class ConsentTicket(Base):
    """Pending consent request behind a signed consent ticket.

    ``decided_at`` is set exactly once, through a conditional update, so a ticket
    yields at most one approval or denial.
    """

    __tablename__ = "oauth_consent_tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    decided_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    decision: Mapped[str | None] = mapped_column(Enum(ConsentDecision, native_enum=False, length=16), nullable=True)
