"""Races on single-use state: authorization codes and refresh token rotation.

The HTTP tests fire both requests at once; each request runs on its own
session, so the database arbitrates. The service tests replay the interleaving
deterministically with two sessions holding the same stale row.
"""

import asyncio

from fastapi import status
from oauth_helpers import DEFAULT_REDIRECT_URI
from sqlalchemy import select

from src.config.settings import settings
from src.features.oauth.codes import AuthorizationCodeService
from src.features.oauth.crypto import hash_token
from src.features.oauth.models import RefreshToken
from src.features.oauth.tokens import TokenService
from src.shared.audit.audit import AuditEvent, AuditLog


class TestConcurrentCodeExchange:
    async def test_only_one_exchange_wins(self, session, make_client, make_user, obtain_code, exchange_code):
        user = await make_user()
        oauth_client, secret = await make_client()
        code = (await obtain_code(user, oauth_client))["code"]

        responses = await asyncio.gather(*(exchange_code(oauth_client, secret, code) for _ in range(2)))

        codes = sorted(r.status_code for r in responses)
        assert codes == [status.HTTP_200_OK, status.HTTP_400_BAD_REQUEST]
        loser = next(r for r in responses if r.status_code == status.HTTP_400_BAD_REQUEST)
        assert loser.json()["error"] == "invalid_grant"

        issued = (await session.execute(select(RefreshToken))).scalars().all()
        assert len(issued) == 1

    async def test_stale_sessions_claim_once(self, session_factory, make_client, make_user, obtain_code):
        user = await make_user()
        oauth_client, _ = await make_client()
        code = (await obtain_code(user, oauth_client))["code"]

        async def claim():
            async with session_factory() as s:
                claimed = await AuthorizationCodeService.consume_code(
                    s, code, oauth_client.client_id, DEFAULT_REDIRECT_URI
                )
                await s.commit()
                return claimed

        results = await asyncio.gather(claim(), claim())
        assert sum(r is not None for r in results) == 1


class TestConcurrentRefresh:
    async def test_parallel_refresh_is_treated_as_reuse(
        self, session, make_client, make_user, issue_tokens, refresh_tokens
    ):
        user = await make_user()
        oauth_client, secret = await make_client()
        tokens = await issue_tokens(user, oauth_client, secret)

        responses = await asyncio.gather(
            *(refresh_tokens(oauth_client, secret, tokens["refresh_token"]) for _ in range(2))
        )

        assert sorted(r.status_code for r in responses) == [status.HTTP_200_OK, status.HTTP_400_BAD_REQUEST]

        family = (
            (await session.execute(select(RefreshToken).execution_options(populate_existing=True))).scalars().all()
        )
        assert len(family) == 2
        assert all(t.is_revoked for t in family)

        reuse = await session.execute(
            select(AuditLog).where(AuditLog.event_type == AuditEvent.REFRESH_TOKEN_REUSE_DETECTED.value)
        )
        assert len(reuse.scalars().all()) == 1

    async def test_stale_record_cannot_rotate(self, session_factory, make_client, make_user, issue_tokens):
        user = await make_user()
        oauth_client, secret = await make_client()
        tokens = await issue_tokens(user, oauth_client, secret)
        stmt = select(RefreshToken).where(RefreshToken.token_hash == hash_token(tokens["refresh_token"]))

        async with session_factory() as first, session_factory() as second:
            record_a = (await first.execute(stmt)).scalar_one()
            record_b = (await second.execute(stmt)).scalar_one()

            assert await TokenService.rotate_refresh_token(first, record_a) is not None
            await first.commit()

            # The second session still sees the token as live, but the conditional update does not
            assert record_b.is_live()
            assert await TokenService.rotate_refresh_token(second, record_b) is None
            await second.rollback()

        async with session_factory() as check:
            live = await TokenService.count_live_families(check, oauth_client.client_id, user.id)
            assert live == 1


class TestConcurrentFamilyLimit:
    async def test_parallel_grants_respect_the_limit(
        self, monkeypatch, session_factory, make_client, make_user, obtain_code, exchange_code
    ):
        monkeypatch.setattr(settings, "oauth_max_active_families", 1)
        user = await make_user()
        oauth_client, secret = await make_client()
        codes = [(await obtain_code(user, oauth_client))["code"] for _ in range(2)]

        responses = await asyncio.gather(*(exchange_code(oauth_client, secret, code) for code in codes))

        assert [r.status_code for r in responses] == [status.HTTP_200_OK, status.HTTP_200_OK]
        async with session_factory() as check:
            assert await TokenService.count_live_families(check, oauth_client.client_id, user.id) == 1
