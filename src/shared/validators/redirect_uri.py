"""Redirect URI validation functions."""

from urllib.parse import urlsplit

from src.config.settings import settings

DANGEROUS_SCHEMES = frozenset({"javascript", "data", "vbscript", "file"})
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
MAX_REDIRECT_URI_LENGTH = 2048


def validate_redirect_uri(uri: str, allowed_schemes: list[str] | None = None) -> str:
    """Validate a client redirect URI at registration time.

    Requirements:
    - Absolute URI with a host and no fragment
    - Never a script/data scheme (javascript:, data:, vbscript:, file:)
    - Scheme in the allowed list (https always; http only when enabled)
    - http only for loopback hosts (localhost, 127.0.0.1, [::1])

    The URI is returned untouched: authorization requests are matched against the
    registered value by exact string comparison.

    Args:
        uri: Redirect URI to validate
        allowed_schemes: Accepted schemes, defaults to the configured list

    Returns:
        The validated URI

    Raises:
        ValueError: If the URI is not acceptable

    Examples:
        >>> validate_redirect_uri("https://app.example.edu/callback")
        'https://app.example.edu/callback'
        >>> validate_redirect_uri("javascript:alert(1)")
        Traceback (most recent call last):
        ...
        ValueError: Redirect URI uses a forbidden scheme: javascript

    """
    if not uri or uri != uri.strip():
        raise ValueError("Redirect URI must be a non-empty string without surrounding whitespace")
    if len(uri) > MAX_REDIRECT_URI_LENGTH:
        raise ValueError(f"Redirect URI must be at most {MAX_REDIRECT_URI_LENGTH} characters")

    parts = urlsplit(uri)
    scheme = parts.scheme.lower()

    if scheme in DANGEROUS_SCHEMES:
        raise ValueError(f"Redirect URI uses a forbidden scheme: {scheme}")

    schemes = allowed_schemes if allowed_schemes is not None else settings.allowed_redirect_schemes
    if scheme not in schemes:
        raise ValueError(f"Redirect URI scheme must be one of {sorted(schemes)}, got {scheme or 'none'}")

    if not parts.netloc or not parts.hostname:
        raise ValueError("Redirect URI must be absolute and include a host")
    if parts.fragment or uri.endswith("#"):
        raise ValueError("Redirect URI must not contain a fragment")
    if parts.username or parts.password:
        raise ValueError("Redirect URI must not contain credentials")

    if scheme == "http" and parts.hostname.lower() not in LOOPBACK_HOSTS:
        raise ValueError("http redirect URIs are only allowed for localhost")

    return uri
