"""Tests for the auth feature.
Covers: AuthService, session dependencies, login/logout, account locking.
"""

from datetime import UTC, datetime, timedelta

from fastapi import status
from sqlalchemy import select

from src.config.settings import settings
from src.features.auth.jwt_utils import SESSION_TOKEN_TYPE, create_token, decode_token
from src.features.auth.service import AuthService
from src.features.user.models import User, UserRole, UserStatus

# AuthService.authenticate_user


class TestAuthenticateUser:
    """Unit tests for AuthService.authenticate_user."""

    async def test_success_with_email(self, session, make_user):
        await make_user(email="login@example.com", password="Pass123!")
        user = await AuthService.authenticate_user(session, "login@example.com", "Pass123!")
        assert user is not None
        assert user.email == "login@example.com"

    async def test_success_with_username(self, session, make_user):
        await make_user(username="byusername", password="Pass123!")
        user = await AuthService.authenticate_user(session, "byusername", "Pass123!")
        assert user is not None
        assert user.username == "byusername"

    async def test_returns_none_for_unknown_credential(self, session):
        result = await AuthService.authenticate_user(session, "ghost@example.com", "Pass123!")
        assert result is None

    async def test_returns_none_for_wrong_password(self, session, make_user):
        await make_user(email="wp@example.com", password="RealPass123!")
        result = await AuthService.authenticate_user(session, "wp@example.com", "WrongPass!")
        assert result is None

    async def test_increments_failed_attempts_on_wrong_password(self, session, make_user):
        await make_user(email="counter@example.com", password="RealPass123!")
        await AuthService.authenticate_user(session, "counter@example.com", "WrongPass!")

        stmt = select(User).where(User.email == "counter@example.com")
        result = await session.execute(stmt)
        user = result.scalar_one_or_none()
        assert user.failed_login_attempts == 1

    async def test_locks_account_after_five_failures(self, session, make_user):
        await make_user(
            email="lockme@example.com",
            password="RealPass123!",
            failed_login_attempts=4,  # one more will trigger lock
        )
        result = await AuthService.authenticate_user(session, "lockme@example.com", "WrongPass!")
        assert result is None

        stmt = select(User).where(User.email == "lockme@example.com")
        result = await session.execute(stmt)
        user = result.scalar_one_or_none()
        assert user.status == UserStatus.LOCKED
        assert user.locked_until is not None
        assert user.locked_until > datetime.now(UTC) - timedelta(seconds=10)

    async def test_resets_failed_attempts_on_success(self, session, make_user):
        await make_user(email="reset@example.com", password="Pass123!", failed_login_attempts=3)
        user = await AuthService.authenticate_user(session, "reset@example.com", "Pass123!")
        assert user is not None
        assert user.failed_login_attempts == 0

    async def test_updates_last_login_at_on_success(self, session, make_user):
        await make_user(email="lastlogin@example.com", password="Pass123!")
        user = await AuthService.authenticate_user(session, "lastlogin@example.com", "Pass123!")
        assert user is not None
        assert user.last_login_at is not None

    async def test_returns_none_for_locked_account(self, session, make_user):
        await make_user(
            email="locked@example.com",
            password="Pass123!",
            status=UserStatus.LOCKED,
            locked_until=datetime.now(UTC) + timedelta(minutes=30),
        )
        result = await AuthService.authenticate_user(session, "locked@example.com", "Pass123!")
        assert result is None

    async def test_allows_login_after_lock_expires(self, session, make_user):
        """A user whose locked_until is in the past should be able to log in again."""
        await make_user(
            email="expired_lock@example.com",
            password="Pass123!",
            status=UserStatus.LOCKED,
            locked_until=datetime.now(UTC) - timedelta(minutes=1),
        )
        user = await AuthService.authenticate_user(session, "expired_lock@example.com", "Pass123!")
        assert user is not None
        assert user.status == UserStatus.ACTIVE

    async def test_returns_none_for_inactive_account(self, session, make_user):
        await make_user(email="inactive@example.com", password="Pass123!", status=UserStatus.INACTIVE)
        result = await AuthService.authenticate_user(session, "inactive@example.com", "Pass123!")
        assert result is None


# AuthService.create_session


class TestCreateSession:
    async def test_session_token_claims(self, make_user):
        user = await make_user(username="sessionuser")
        result = AuthService.create_session(user)

        payload = decode_token(result.access_token)
        assert payload["type"] == SESSION_TOKEN_TYPE
        assert payload["sub"] == str(user.id)
        assert payload["username"] == "sessionuser"
        assert abs(payload["auth_time"] - datetime.now(UTC).timestamp()) < 10
        assert result.expires_in == settings.session_token_expire_minutes * 60

    async def test_safe_return_to_is_echoed(self, make_user):
        user = await make_user()
        result = AuthService.create_session(user, "/api/oauth/authorize?client_id=abc")
        assert result.redirect_to == "/api/oauth/authorize?client_id=abc"

    def test_unsafe_return_to_is_dropped(self):
        assert AuthService.safe_return_to("https://evil.example.com/") is None
        assert AuthService.safe_return_to("//evil.example.com/path") is None
        assert AuthService.safe_return_to("/\\evil.example.com") is None
        assert AuthService.safe_return_to("relative/path") is None
        assert AuthService.safe_return_to(None) is None


# POST {api_prefix}/auth/login  (HTTP layer)


class TestLoginEndpoint:
    async def test_login_success_with_email(self, client, make_user):
        await make_user(email="http@example.com", password="Pass123!")
        response = await client.post(
            f"{settings.api_prefix}/auth/login",
            json={"email": "http@example.com", "password": "Pass123!"},
        )
        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["access_token"]
        assert body["token_type"] == "bearer"
        assert body["expires_in"] > 0

    async def test_login_sets_http_only_session_cookie(self, client, make_user):
        await make_user(username="cookieuser", password="Pass123!")
        response = await client.post(
            f"{settings.api_prefix}/auth/login",
            json={"username": "cookieuser", "password": "Pass123!"},
        )
        assert response.status_code == status.HTTP_200_OK
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{settings.session_cookie_name}=")
        assert "HttpOnly" in cookie
        assert "samesite=lax" in cookie.lower()

    async def test_login_echoes_return_to(self, client, make_user):
        await make_user(username="resume", password="Pass123!")
        response = await client.post(
            f"{settings.api_prefix}/auth/login",
            json={"username": "resume", "password": "Pass123!", "return_to": "/api/oauth/authorize?x=1"},
        )
        assert response.json()["redirect_to"] == "/api/oauth/authorize?x=1"

    async def test_login_wrong_password_returns_401(self, client, make_user):
        await make_user(email="badpass@example.com", password="RealPass123!")
        response = await client.post(
            f"{settings.api_prefix}/auth/login",
            json={"email": "badpass@example.com", "password": "WrongPass123!"},
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_failed_attempts_survive_the_401(self, session, client, make_user):
        user = await make_user(email="persist@example.com", password="RealPass123!")
        await client.post(
            f"{settings.api_prefix}/auth/login",
            json={"email": "persist@example.com", "password": "WrongPass123!"},
        )
        await session.refresh(user)
        assert user.failed_login_attempts == 1

    async def test_login_unknown_user_returns_401(self, client):
        response = await client.post(
            f"{settings.api_prefix}/auth/login",
            json={"email": "nobody@example.com", "password": "Pass123!"},
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_login_locked_account_returns_401(self, client, make_user):
        await make_user(
            email="locked@example.com",
            password="Pass123!",
            status=UserStatus.LOCKED,
            locked_until=datetime.now(UTC) + timedelta(minutes=30),
        )
        response = await client.post(
            f"{settings.api_prefix}/auth/login",
            json={"email": "locked@example.com", "password": "Pass123!"},
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_login_missing_fields_returns_422(self, client):
        response = await client.post(f"{settings.api_prefix}/auth/login", json={"username": "only-this"})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestLogoutEndpoint:
    async def test_logout_clears_cookie(self, client):
        response = await client.post(f"{settings.api_prefix}/auth/logout")
        assert response.status_code == status.HTTP_200_OK
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{settings.session_cookie_name}=")
        assert "Max-Age=0" in cookie


# get_current_user dependency


class TestGetCurrentUserDependency:
    """Exercises get_current_user through /users/me."""

    async def _login(self, client, email: str) -> str:
        login = await client.post(f"{settings.api_prefix}/auth/login", json={"email": email, "password": "Pass123!"})
        return login.json()["access_token"]

    async def test_valid_token_grants_access(self, client, make_user):
        await make_user(email="dep@example.com", password="Pass123!")
        token = await self._login(client, "dep@example.com")

        response = await client.get(f"{settings.api_prefix}/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["email"] == "dep@example.com"

    async def test_session_cookie_grants_access(self, client, make_user):
        await make_user(email="cookie@example.com", password="Pass123!")
        token = await self._login(client, "cookie@example.com")

        client.cookies.clear()
        client.cookies.set(settings.session_cookie_name, token)
        response = await client.get(f"{settings.api_prefix}/users/me")
        assert response.status_code == status.HTTP_200_OK

    async def test_missing_token_returns_401(self, client):
        response = await client.get(f"{settings.api_prefix}/users/me")
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_malformed_token_returns_401(self, client):
        response = await client.get(
            f"{settings.api_prefix}/users/me", headers={"Authorization": "Bearer not.a.real.token"}
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_wrong_token_type_returns_401(self, client, make_user):
        user = await make_user()
        token = create_token({"sub": user.subject}, "consent", timedelta(minutes=5))
        response = await client.get(f"{settings.api_prefix}/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_inactive_user_returns_403(self, session, client, make_user):
        user = await make_user(email="inactive@example.com", password="Pass123!")
        token = await self._login(client, "inactive@example.com")

        # Deactivate the user after the token was issued
        await session.refresh(user)
        user.status = UserStatus.INACTIVE.value
        await session.commit()

        response = await client.get(f"{settings.api_prefix}/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == status.HTTP_403_FORBIDDEN

    async def test_locked_user_returns_403(self, session, client, make_user):
        user = await make_user(email="lockdep@example.com", password="Pass123!")
        token = await self._login(client, "lockdep@example.com")

        # Lock the user after the token was issued
        await session.refresh(user)
        user.status = UserStatus.LOCKED.value
        user.locked_until = datetime.now(UTC) + timedelta(minutes=30)
        await session.commit()

        response = await client.get(f"{settings.api_prefix}/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == status.HTTP_403_FORBIDDEN


class TestRequireRole:
    async def test_admin_endpoint_rejects_regular_user(self, client, make_user, session_headers):
        user = await make_user()
        response = await client.get(f"{settings.api_prefix}/oauth/admin/clients", headers=session_headers(user))
        assert response.status_code == status.HTTP_403_FORBIDDEN

    async def test_admin_endpoint_accepts_admin(self, client, make_user, session_headers):
        admin = await make_user(roles=[UserRole.ADMIN])
        response = await client.get(f"{settings.api_prefix}/oauth/admin/clients", headers=session_headers(admin))
        assert response.status_code == status.HTTP_200_OK


# User model unit tests (no HTTP, no DB)


class TestUserModel:
    def test_hash_and_verify_password(self):
        hashed = User.hash_password("MySecret!")
        user = User(email="x@x.com", username="x", full_name="X", hashed_password=hashed)
        assert user.verify_password("MySecret!")
        assert not user.verify_password("NotMySecret!")

    def test_is_active_follows_status(self):
        active = User(email="x@x.com", username="x", full_name="X", hashed_password="h", status=UserStatus.ACTIVE)
        inactive = User(email="y@x.com", username="y", full_name="Y", hashed_password="h", status=UserStatus.INACTIVE)
        assert active.is_active is True
        assert inactive.is_active is False

    def test_is_locked_window(self):
        future = datetime.now(UTC) + timedelta(minutes=10)
        past = datetime.now(UTC) - timedelta(minutes=1)
        assert User(hashed_password="h", locked_until=future).is_locked() is True
        assert User(hashed_password="h", locked_until=past).is_locked() is False
        assert User(hashed_password="h").is_locked() is False

    def test_has_role(self):
        user = User(email="x@x.com", username="x", full_name="X", hashed_password="h", roles=[UserRole.ADMIN])
        assert user.has_role(UserRole.ADMIN) is True
        assert user.has_role(UserRole.FACULTY) is False

    def test_subject_is_string_id(self):
        user = User(id=42, email="x@x.com", username="x", full_name="X", hashed_password="h")
        assert user.subject == "42"
