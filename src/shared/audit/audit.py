"""Security and lifecycle audit trail for the authorization server."""

import logging
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Enum, Integer, String
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, JSONType, UTCDateTime, utcnow

logger = logging.getLogger(__name__)


class AuditSeverity(StrEnum):
    """Audit severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditEvent(StrEnum):
    """Audited event types."""

    CLIENT_REGISTERED = "client_registered"
    CLIENT_APPROVED = "client_approved"
    CLIENT_REJECTED = "client_rejected"
    CLIENT_SUSPENDED = "client_suspended"
    CLIENT_REACTIVATED = "client_reactivated"
    CLIENT_DELETED = "client_deleted"
    CLIENT_SECRET_ROTATED = "client_secret_rotated"
    CONSENT_GRANTED = "consent_granted"
    CONSENT_REVOKED = "consent_revoked"
    CONSENT_DENIED = "consent_denied"
    TOKENS_ISSUED = "tokens_issued"
    REFRESH_TOKEN_ROTATED = "refresh_token_rotated"
    REFRESH_TOKEN_REUSE_DETECTED = "refresh_token_reuse_detected"
    REFRESH_TOKEN_REVOKED = "refresh_token_revoked"
    TOKEN_FAMILY_EVICTED = "token_family_evicted"


_LOG_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARNING: logging.WARNING,
    AuditSeverity.CRITICAL: logging.CRITICAL,
}


class AuditLog(Base):
    """Append-only audit log entry.

    Rows are never updated; the table is the durable record behind the log lines.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    event_type: Mapped[str] = mapped_column(Enum(AuditEvent, native_enum=False, length=64), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(
        Enum(AuditSeverity, native_enum=False, length=16),
        nullable=False,
        default=AuditSeverity.INFO.value,
        index=True,
    )
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False, index=True)

    # Who and what
    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    family_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Request origin
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)


async def record_audit_event(
    session: AsyncSession,
    event: AuditEvent,
    *,
    severity: AuditSeverity = AuditSeverity.INFO,
    actor_id: int | str | None = None,
    client_id: str | None = None,
    family_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """Log an audit event and stage its row on the session.

    The caller owns the transaction: the row is written when the session commits.

    Args:
        session: Database session
        event: Event type
        severity: Severity, also used as the log level
        actor_id: User (or admin) that triggered the event
        client_id: Client involved, if any
        family_id: Refresh token family involved, if any
        ip_address: Requester's IP address
        user_agent: Requester's User-Agent header
        details: Free-form JSON context (never secrets)

    Returns:
        The staged AuditLog entry

    """
    entry = AuditLog(
        event_type=event.value,
        severity=severity.value,
        actor_id=str(actor_id) if actor_id is not None else None,
        client_id=client_id,
        family_id=family_id,
        ip_address=ip_address,
        user_agent=user_agent[:500] if user_agent else None,
        details=details,
    )
    session.add(entry)

    logger.log(
        _LOG_LEVELS[severity],
        f"{event.value}: actor={entry.actor_id} client={client_id} family={family_id} ip={ip_address}",
        extra={
            "extra": {
                "event": event.value,
                "actor": entry.actor_id,
                "client_id": client_id,
                "family_id": family_id,
                "ip_address": ip_address,
            }
        },
    )
    return entry
