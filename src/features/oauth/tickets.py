"""Single-use bookkeeping for consent tickets."""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from .crypto import generate_ticket_id
from .models import ConsentDecision, ConsentTicket

logger = logging.getLogger(__name__)


class ConsentTicketService:
    """Service for pending consent requests."""

    @staticmethod
    async def open_ticket(session: AsyncSession, user_id: int, client_id: str, lifetime: timedelta) -> ConsentTicket:
        """Record a pending consent request. Its ``ticket_id`` goes into the signed ticket as ``jti``."""
        now = datetime.now(UTC)
        ticket = ConsentTicket(
            ticket_id=generate_ticket_id(),
            user_id=user_id,
            client_id=client_id,
            issued_at=now,
            expires_at=now + lifetime,
        )
        session.add(ticket)
        await session.flush()
        return ticket

    @staticmethod
    async def close_ticket(session: AsyncSession, ticket_id: str, user_id: int, decision: ConsentDecision) -> bool:
        """Record the decision on an undecided, unexpired ticket.

        One conditional UPDATE; among concurrent decisions on the same ticket at
        most one returns True.
        """
        now = datetime.now(UTC)
        stmt = (
            update(ConsentTicket)
            .where(
                ConsentTicket.ticket_id == ticket_id,
                ConsentTicket.user_id == user_id,
                ConsentTicket.decided_at.is_(None),
                ConsentTicket.expires_at > now,
            )
            .values(decided_at=now, decision=decision)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            logger.warning(f"Consent ticket replayed or unknown for user {user_id}")
            return False
        return True

    @staticmethod
    async def purge_expired_tickets(session: AsyncSession) -> int:
        stmt = (
            delete(ConsentTicket)
            .where(ConsentTicket.expires_at <= datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount
