"""Application settings and configuration."""

import logging
from urllib.parse import urlparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def parse_space_separated(value: str | None) -> list[str]:
    """Split a space or comma separated env value into a clean list."""
    if not value:
        return []
    return [item for item in value.replace(",", " ").split() if item]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application (hardcoded constants)
    app_name: str = "Campus OpenID Provider"
    app_version: str = "0.1.0"

    # Environment-specific settings
    debug: bool = False
    environment: str  # development, staging, production

    # Database (postgresql+asyncpg in deployments, sqlite+aiosqlite locally)
    database_url: str
    database_pool_size: int = 10
    database_max_overflow: int = 20
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    database_echo: bool = False
    database_create_schema: bool = False  # create_all on startup (no migrations yet)

    # API
    api_prefix: str = "/api"

    # First-party session (HS256)
    secret_key: str
    jwt_algorithm: str = "HS256"
    session_token_expire_minutes: int = 60
    session_cookie_name: str = "campus_session"
    session_cookie_secure: bool = True
    login_url: str = "/login"

    # Rate limiting
    rate_limit_enabled: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # OAuth 2.1 / OpenID Connect
    oauth_issuer: str = "http://localhost:8000"
    oauth_access_token_lifetime: int = 900
    oauth_id_token_lifetime: int = 900
    oauth_refresh_token_lifetime: int = 30 * 24 * 60 * 60
    oauth_auth_code_lifetime: int = 600
    oauth_scopes: str = "openid profile email offline_access"
    oauth_grant_types: str = "authorization_code refresh_token"
    oauth_pkce_methods: str = "S256"
    oauth_require_pkce: bool = True
    oauth_require_consent: bool = True
    oauth_rotate_refresh_tokens: bool = True
    oauth_revoke_on_reuse: bool = True
    oauth_max_active_families: int = 5
    oauth_authorize_rate_limit: str = "30/minute"
    oauth_token_rate_limit: str = "60/minute"
    oauth_registration_rate_limit: str = "10/hour"
    oauth_allowed_redirect_schemes: str | None = None
    oauth_private_key: str | None = None
    oauth_private_key_path: str | None = None
    oauth_public_key: str | None = None
    oauth_public_key_path: str | None = None
    oauth_client_id_prefix: str = "ec_"
    oauth_cleanup_interval_seconds: int = 3600

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        valid_envs = {"development", "staging", "production"}
        env = str(v).lower()
        if env not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}, got {env}")
        return env

    @field_validator("oauth_issuer", mode="after")
    @classmethod
    def strip_issuer_slash(cls, v: str) -> str:
        """Issuer identifiers are compared byte-for-byte, so drop a trailing slash."""
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_oauth(self) -> "Settings":
        """Reject OAuth configurations the server cannot safely run with.

        Raises:
            ValueError: If the issuer, lifetimes, scopes or PKCE methods are invalid.

        """
        issuer = urlparse(self.oauth_issuer)
        if issuer.scheme not in {"http", "https"} or not issuer.netloc:
            raise ValueError(f"OAUTH_ISSUER must be an absolute http(s) URL, got {self.oauth_issuer!r}")
        if self.is_production and issuer.scheme != "https":
            raise ValueError("OAUTH_ISSUER must use https in production")

        if self.oauth_access_token_lifetime < 60:
            raise ValueError("OAUTH_ACCESS_TOKEN_LIFETIME must be at least 60 seconds")
        if self.oauth_id_token_lifetime < 60:
            raise ValueError("OAUTH_ID_TOKEN_LIFETIME must be at least 60 seconds")
        if self.oauth_refresh_token_lifetime <= self.oauth_access_token_lifetime:
            raise ValueError("OAUTH_REFRESH_TOKEN_LIFETIME must be longer than OAUTH_ACCESS_TOKEN_LIFETIME")
        if not 60 <= self.oauth_auth_code_lifetime <= 600:
            raise ValueError("OAUTH_AUTH_CODE_LIFETIME must be between 60 and 600 seconds")

        if "openid" not in self.supported_scopes:
            raise ValueError("OAUTH_SCOPES must include 'openid'")
        if self.pkce_methods != ["S256"]:
            raise ValueError("OAUTH_PKCE_METHODS only supports 'S256'")
        if self.oauth_max_active_families < 1:
            raise ValueError("OAUTH_MAX_ACTIVE_FAMILIES must be at least 1")

        unknown_grants = set(self.grant_types) - {"authorization_code", "refresh_token"}
        if unknown_grants:
            raise ValueError(f"Unsupported OAUTH_GRANT_TYPES: {sorted(unknown_grants)}")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def supported_scopes(self) -> list[str]:
        return parse_space_separated(self.oauth_scopes)

    @property
    def grant_types(self) -> list[str]:
        return parse_space_separated(self.oauth_grant_types)

    @property
    def pkce_methods(self) -> list[str]:
        return parse_space_separated(self.oauth_pkce_methods)

    @property
    def allowed_redirect_schemes(self) -> list[str]:
        """Schemes accepted for client redirect URIs.

        Defaults to https only in production and https plus http (loopback hosts only)
        everywhere else.
        """
        if self.oauth_allowed_redirect_schemes:
            return [s.lower() for s in parse_space_separated(self.oauth_allowed_redirect_schemes)]
        return ["https"] if self.is_production else ["https", "http"]


settings = Settings()  # type: ignore[call-arg]
