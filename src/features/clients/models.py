"""OAuth client registry models."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, JSONType, TimestampMixin, UTCDateTime


class ClientStatus(StrEnum):
    """Client lifecycle status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class ApplicationType(StrEnum):
    """WEB clients are confidential (must authenticate); NATIVE clients are public."""

    WEB = "web"
    NATIVE = "native"


# Allowed lifecycle moves; anything not listed is rejected
CLIENT_STATUS_TRANSITIONS: dict[ClientStatus, frozenset[ClientStatus]] = {
    ClientStatus.PENDING: frozenset({ClientStatus.APPROVED, ClientStatus.REJECTED, ClientStatus.DELETED}),
    ClientStatus.APPROVED: frozenset({ClientStatus.SUSPENDED, ClientStatus.DELETED}),
    ClientStatus.SUSPENDED: frozenset({ClientStatus.APPROVED, ClientStatus.DELETED}),
    ClientStatus.REJECTED: frozenset({ClientStatus.DELETED}),
    ClientStatus.DELETED: frozenset(),
}


class OAuthClient(Base, TimestampMixin):
    """Third-party application registered against the authorization server.

    Only approved clients may obtain authorization codes. Deletion is soft (status
    flips to ``deleted``) except for pending clients removed by their creator.
    """

    __tablename__ = "oauth_clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Credentials
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    client_secret_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    # Metadata
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    homepage_uri: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    logo_uri: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    contacts: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    application_type: Mapped[str] = mapped_column(
        Enum(ApplicationType, native_enum=False, length=16),
        nullable=False,
        default=ApplicationType.WEB.value,
    )

    # OAuth configuration
    redirect_uris: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    requested_scopes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    allowed_scopes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        Enum(ClientStatus, native_enum=False, length=16),
        nullable=False,
        default=ClientStatus.PENDING.value,
        index=True,
    )
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    reviewed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def is_approved(self) -> bool:
        return self.status == ClientStatus.APPROVED.value

    @property
    def is_confidential(self) -> bool:
        return self.application_type == ApplicationType.WEB.value

    def can_transition(self, target: ClientStatus) -> bool:
        return target in CLIENT_STATUS_TRANSITIONS[ClientStatus(self.status)]
