"""OpenID Provider metadata (/.well-known/openid-configuration)."""

from functools import lru_cache
from typing import Any

from src.config.settings import settings

SUPPORTED_CLAIMS = [
    "sub",
    "iss",
    "aud",
    "exp",
    "iat",
    "auth_time",
    "nonce",
    "at_hash",
    "name",
    "preferred_username",
    "picture",
    "updated_at",
    "email",
    "email_verified",
]


def endpoint_url(path: str) -> str:
    return f"{settings.oauth_issuer}{settings.api_prefix}{path}"


@lru_cache(maxsize=1)
def get_openid_configuration() -> dict[str, Any]:
    """Build the discovery document once; cleared together with the key cache."""
    from .keys import SIGNING_ALGORITHM

    return {
        "issuer": settings.oauth_issuer,
        "authorization_endpoint": endpoint_url("/oauth/authorize"),
        "token_endpoint": endpoint_url("/oauth/token"),
        "userinfo_endpoint": endpoint_url("/oauth/userinfo"),
        "revocation_endpoint": endpoint_url("/oauth/revoke"),
        "introspection_endpoint": endpoint_url("/oauth/introspect"),
        "jwks_uri": f"{settings.oauth_issuer}/.well-known/jwks.json",
        "scopes_supported": settings.supported_scopes,
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "grant_types_supported": settings.grant_types,
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "revocation_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "introspection_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "code_challenge_methods_supported": settings.pkce_methods,
        "claims_supported": SUPPORTED_CLAIMS,
        "prompt_values_supported": ["none", "login", "consent"],
    }


def clear_discovery_cache() -> None:
    get_openid_configuration.cache_clear()
