"""Periodic purge of expired codes, refresh tokens and consent tickets."""

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.database.client import get_session

from .codes import AuthorizationCodeService
from .tickets import ConsentTicketService
from .tokens import TokenService

logger = logging.getLogger(__name__)


async def purge_expired(session: AsyncSession) -> dict[str, int]:
    """Delete expired protocol state. Returns the number of rows removed per kind."""
    codes = await AuthorizationCodeService.purge_expired_codes(session)
    refresh_tokens = await TokenService.purge_expired_refresh_tokens(session)
    tickets = await ConsentTicketService.purge_expired_tickets(session)
    if codes or refresh_tokens or tickets:
        logger.info(
            f"Purged {codes} authorization code(s), {refresh_tokens} refresh token(s) and {tickets} consent ticket(s)"
        )
    return {"authorization_codes": codes, "refresh_tokens": refresh_tokens, "consent_tickets": tickets}


async def run_cleanup_loop(interval_seconds: int | None = None) -> None:
    """Run ``purge_expired`` forever, once per interval, until cancelled."""
    interval = interval_seconds or settings.oauth_cleanup_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            async with get_session() as session:
                await purge_expired(session)
        except SQLAlchemyError:
            logger.exception("Token cleanup failed, retrying on the next run")


def start_cleanup_task() -> asyncio.Task | None:
    """Start the background loop unless disabled (interval 0)."""
    if settings.oauth_cleanup_interval_seconds <= 0:
        logger.info("Token cleanup loop disabled")
        return None
    return asyncio.create_task(run_cleanup_loop(), name="oauth-token-cleanup")
