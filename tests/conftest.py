"""Test configuration and fixtures.

Each test gets its own SQLite database file (or the database named by
TEST_DATABASE_URL), created from the models and dropped afterwards. Requests made
through the ASGI client get their own session, committed or rolled back like in
production, so state set up in the test session must be committed first and
state written by requests is read back with ``populate_existing``.
"""

import os
import secrets
from collections.abc import AsyncGenerator
from pathlib import Path

from dotenv import load_dotenv


# Settings are read at import time
load_dotenv(Path(__file__).parent.parent / ".env.test", override=True)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from src.config.settings import settings  # noqa: E402
from src.database.base import Base  # noqa: E402
from src.database.dependencies import get_db_session  # noqa: E402
from src.database.models import register_models  # noqa: E402
from src.features.auth.dependencies import get_current_active_user, get_current_user  # noqa: E402
from src.features.auth.service import AuthService  # noqa: E402
from src.features.clients.models import ApplicationType, ClientStatus, OAuthClient  # noqa: E402
from src.features.oauth.crypto import (  # noqa: E402
    compute_code_challenge,
    generate_client_id,
    generate_client_secret,
    hash_client_secret,
)
from src.features.oauth.keys import generate_private_key_pem, reset_key_manager  # noqa: E402
from src.features.user.models import User, UserRole, UserStatus  # noqa: E402
from src.main import app  # noqa: E402

from oauth_helpers import DEFAULT_REDIRECT_URI, DEFAULT_SCOPES, basic_auth, query_params  # noqa: E402

register_models()


# Signing key


@pytest.fixture(scope="session")
def signing_key_pem() -> str:
    """One RSA key for the whole run; generating keys is slow."""
    return generate_private_key_pem()


@pytest.fixture(autouse=True)
def oauth_signing_key(monkeypatch, signing_key_pem: str):
    """Point the key manager at the session key and drop its caches around each test."""
    monkeypatch.setattr(settings, "oauth_private_key", signing_key_pem)
    reset_key_manager()
    yield signing_key_pem
    reset_key_manager()


# Database Setup - Function Scope


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """Fresh schema per test."""
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Factory for extra sessions (concurrency tests)."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as async_session:
        yield async_session


# FastAPI Client & Dependency Overrides


@pytest_asyncio.fixture(autouse=True)
async def override_get_db_session(session_factory: async_sessionmaker[AsyncSession]):
    """Serve every request from the test database, one session per request."""

    async def _get_test_session():
        async with session_factory() as request_session:
            try:
                yield request_session
                await request_session.commit()
            except Exception:
                await request_session.rollback()
                raise

    app.dependency_overrides[get_db_session] = _get_test_session
    yield
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient]:
    """Unauthenticated async HTTP client. Use auth_client or admin_client for a logged-in user."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Test User Factories


@pytest_asyncio.fixture
async def make_user(session: AsyncSession):
    """Factory fixture to create test users with custom fields.

    Usage:
        user = await make_user()                            # student
        admin = await make_user(roles=[UserRole.ADMIN])     # admin
        locked = await make_user(status=UserStatus.LOCKED)  # locked user
    """
    counter = 0

    async def _factory(
        email=None,
        username=None,
        full_name="Test User",
        password="TestPass123!",
        roles=None,
        status=UserStatus.ACTIVE,
        **kwargs,
    ) -> User:
        nonlocal counter
        counter += 1

        if email is None:
            email = f"testuser{counter}@example.com"
        if username is None:
            username = f"testuser{counter}"

        user = User(
            email=email,
            username=username,
            full_name=full_name,
            hashed_password=User.hash_password(password),
            roles=[role.value for role in (roles or [UserRole.STUDENT])],
            status=status.value,
            **kwargs,
        )

        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user

    yield _factory


def _override_current_user(user: User) -> None:
    async def override_get_current_user():
        return user

    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_current_active_user] = override_get_current_user


@pytest_asyncio.fixture
async def auth_client(client: AsyncClient, make_user):
    """Authenticated client with a regular user.

    Overrides the auth dependency directly - no session token issued.

    Returns:
        tuple: (client, user)

    """
    user = await make_user()
    _override_current_user(user)
    yield client, user


@pytest_asyncio.fixture
async def admin_client(client: AsyncClient, make_user):
    """Authenticated client with an admin user.

    Returns:
        tuple: (client, user)

    """
    user = await make_user(roles=[UserRole.ADMIN])
    _override_current_user(user)
    yield client, user


@pytest.fixture
def session_headers():
    """Real session token headers (the authorize endpoint reads the session itself)."""

    def _headers(user: User) -> dict[str, str]:
        token = AuthService.create_session(user).access_token
        return {"Authorization": f"Bearer {token}"}

    return _headers


# OAuth Factories


@pytest_asyncio.fixture
async def make_client(session: AsyncSession, make_user):
    """Factory fixture for registered OAuth clients.

    Usage:
        client, secret = await make_client()                              # approved web client
        client, secret = await make_client(status=ClientStatus.PENDING)   # awaiting review
    """

    async def _factory(
        owner: User | None = None,
        status: ClientStatus = ClientStatus.APPROVED,
        redirect_uris: list[str] | None = None,
        allowed_scopes: list[str] | None = None,
        application_type: ApplicationType = ApplicationType.WEB,
        name: str = "Test App",
    ) -> tuple[OAuthClient, str]:
        if owner is None:
            owner = await make_user()

        scopes = list(allowed_scopes) if allowed_scopes is not None else list(DEFAULT_SCOPES)
        client_secret = generate_client_secret()
        oauth_client = OAuthClient(
            client_id=generate_client_id(),
            client_secret_hash=hash_client_secret(client_secret),
            name=name,
            contacts=[],
            application_type=application_type.value,
            redirect_uris=redirect_uris or [DEFAULT_REDIRECT_URI],
            requested_scopes=scopes,
            allowed_scopes=scopes if status != ClientStatus.PENDING else [],
            status=status.value,
            owner_id=owner.id,
        )
        session.add(oauth_client)
        await session.commit()
        await session.refresh(oauth_client)
        return oauth_client, client_secret

    yield _factory


@pytest.fixture
def pkce_pair() -> tuple[str, str]:
    """(code_verifier, S256 code_challenge)."""
    verifier = secrets.token_urlsafe(48)
    return verifier, compute_code_challenge(verifier)


# OAuth flow helpers


@pytest.fixture
def authorize_query(pkce_pair):
    """Build authorization request parameters for a client (PKCE challenge included)."""

    def _query(oauth_client: OAuthClient, **overrides) -> dict[str, str]:
        params = {
            "response_type": "code",
            "client_id": oauth_client.client_id,
            "redirect_uri": DEFAULT_REDIRECT_URI,
            "scope": "openid profile email",
            "state": "state-123",
            "code_challenge": pkce_pair[1],
            "code_challenge_method": "S256",
        }
        params.update(overrides)
        return {k: v for k, v in params.items() if v is not None}

    return _query


@pytest.fixture
def obtain_code(client: AsyncClient, session_headers, authorize_query):
    """Run authorize + consent over HTTP and return the query of the final redirect.

    Usage:
        params = await obtain_code(user, oauth_client, nonce="n1")
        params["code"], params["state"]
    """

    async def _obtain(user: User, oauth_client: OAuthClient, scopes: list[str] | None = None, **overrides):
        headers = session_headers(user)
        query = authorize_query(oauth_client, **overrides)
        response = await client.get(f"{settings.api_prefix}/oauth/authorize", params=query, headers=headers)

        if response.status_code == 200:
            ticket = response.json()["consent_ticket"]
            response = await client.post(
                f"{settings.api_prefix}/oauth/authorize/consent",
                json={"consent_ticket": ticket, "approved": True, "scopes": scopes},
                headers=headers,
            )

        assert response.status_code == 302, response.text
        return query_params(response.headers["location"])

    return _obtain


@pytest.fixture
def exchange_code(client: AsyncClient, pkce_pair):
    """POST an authorization_code grant with client_secret_basic."""

    async def _exchange(oauth_client: OAuthClient, client_secret: str, code: str, **overrides):
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": DEFAULT_REDIRECT_URI,
            "code_verifier": pkce_pair[0],
        }
        data.update(overrides)
        data = {k: v for k, v in data.items() if v is not None}
        return await client.post(
            f"{settings.api_prefix}/oauth/token", data=data, headers=basic_auth(oauth_client.client_id, client_secret)
        )

    return _exchange


@pytest.fixture
def refresh_tokens(client: AsyncClient):
    """POST a refresh_token grant with client_secret_basic."""

    async def _refresh(oauth_client: OAuthClient, client_secret: str, refresh_token: str, **overrides):
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token, **overrides}
        return await client.post(
            f"{settings.api_prefix}/oauth/token", data=data, headers=basic_auth(oauth_client.client_id, client_secret)
        )

    return _refresh


@pytest.fixture
def issue_tokens(obtain_code, exchange_code):
    """Full authorization code flow; returns the token response body."""

    async def _issue(user: User, oauth_client: OAuthClient, client_secret: str, **overrides) -> dict:
        params = await obtain_code(user, oauth_client, **overrides)
        response = await exchange_code(oauth_client, client_secret, params["code"])
        assert response.status_code == 200, response.text
        return response.json()

    return _issue
