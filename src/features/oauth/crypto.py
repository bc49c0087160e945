"""Random credentials, hashing and PKCE helpers for the authorization server."""

import base64
import hashlib
import hmac
import secrets

from pwdlib import PasswordHash

from src.config.settings import settings

secret_hasher = PasswordHash.recommended()

CODE_VERIFIER_MIN_LENGTH = 43
CODE_VERIFIER_MAX_LENGTH = 128


def b64url(data: bytes) -> str:
    """Base64url without padding (RFC 7515 section 2)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_client_id() -> str:
    """Opaque client identifier: configured prefix plus 24 hex characters."""
    return f"{settings.oauth_client_id_prefix}{secrets.token_hex(12)}"


def generate_client_secret() -> str:
    return secrets.token_hex(32)


def hash_client_secret(secret: str) -> str:
    """Salted Argon2 hash; the plaintext secret is never stored."""
    return secret_hasher.hash(secret)


def verify_client_secret(secret: str, secret_hash: str) -> bool:
    return secret_hasher.verify(secret, secret_hash)


def generate_authorization_code() -> str:
    return secrets.token_hex(32)


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def generate_family_id() -> str:
    return secrets.token_hex(16)


def generate_ticket_id() -> str:
    return secrets.token_hex(16)


def hash_token(token: str) -> str:
    """Deterministic SHA-256 digest used to look up stored refresh tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def compute_code_challenge(code_verifier: str) -> str:
    """S256 transform: base64url(SHA256(ascii(code_verifier)))."""
    return b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def verify_code_challenge(code_verifier: str, code_challenge: str, method: str = "S256") -> bool:
    """Check a PKCE verifier against the stored challenge in constant time.

    Only S256 is accepted; ``plain`` always fails.
    """
    if method != "S256":
        return False
    if not CODE_VERIFIER_MIN_LENGTH <= len(code_verifier) <= CODE_VERIFIER_MAX_LENGTH:
        return False
    try:
        computed = compute_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode(), code_challenge.encode())


def compute_at_hash(access_token: str) -> str:
    """OIDC ``at_hash``: left half of SHA-256 of the access token, base64url encoded."""
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return b64url(digest[: len(digest) // 2])
