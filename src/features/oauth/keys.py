"""RS256 signing key management, JWKS publication and token signing/verification."""

import hashlib
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.exceptions import (
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
)

from src.config.settings import settings

from .crypto import b64url

logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "RS256"
DEFAULT_PRIVATE_KEY_PATH = Path("keys/private.pem")


class KeyConfigurationError(RuntimeError):
    """Signing key material is missing or inconsistent."""


class TokenVerificationError(Exception):
    """Base class for signed token verification failures."""


class TokenExpiredError(TokenVerificationError):
    pass


class BadSignatureError(TokenVerificationError):
    pass


class BadIssuerError(TokenVerificationError):
    pass


class BadAudienceError(TokenVerificationError):
    pass


class MalformedTokenError(TokenVerificationError):
    pass


@dataclass(frozen=True)
class SigningKey:
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey
    kid: str
    jwk: dict[str, str]


def generate_private_key_pem(key_size: int = 2048) -> str:
    """Generate a PKCS#8 PEM encoded RSA private key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


def public_key_pem(private_pem: str) -> str:
    key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=None)
    return (
        key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("ascii")
    )


def _int_to_b64url(value: int) -> str:
    return b64url(value.to_bytes((value.bit_length() + 7) // 8, "big"))


def build_jwk(public_key: rsa.RSAPublicKey) -> dict[str, str]:
    """Public JWK with a key id derived from the modulus (first 16 hex chars of its SHA-256)."""
    numbers = public_key.public_numbers()
    n = _int_to_b64url(numbers.n)
    e = _int_to_b64url(numbers.e)
    kid = hashlib.sha256(n.encode("ascii")).hexdigest()[:16]
    return {"kty": "RSA", "use": "sig", "alg": SIGNING_ALGORITHM, "kid": kid, "n": n, "e": e}


def _normalize_pem(value: str) -> str:
    # Env vars often carry PEM bodies with literal "\n" sequences
    return value.replace("\\n", "\n").strip() + "\n"


class KeyManager:
    """Process-wide signing key holder.

    Key material is loaded at most once, on first use, under a lock. After that the
    key, the key id and the JWKS document are read-only.
    """

    def __init__(
        self,
        private_key: str | None = None,
        private_key_path: str | None = None,
        public_key: str | None = None,
        public_key_path: str | None = None,
        allow_ephemeral: bool = False,
    ):
        self._private_key = private_key
        self._private_key_path = private_key_path
        self._public_key = public_key
        self._public_key_path = public_key_path
        self._allow_ephemeral = allow_ephemeral
        self._lock = threading.Lock()
        self._signing_key: SigningKey | None = None
        self._jwks: dict[str, Any] | None = None

    @classmethod
    def from_settings(cls) -> "KeyManager":
        return cls(
            private_key=settings.oauth_private_key,
            private_key_path=settings.oauth_private_key_path,
            public_key=settings.oauth_public_key,
            public_key_path=settings.oauth_public_key_path,
            allow_ephemeral=not settings.is_production,
        )

    def _read_private_pem(self) -> str:
        if self._private_key:
            return _normalize_pem(self._private_key)

        path = Path(self._private_key_path) if self._private_key_path else DEFAULT_PRIVATE_KEY_PATH
        if path.is_file():
            logger.info(f"Loading OAuth signing key from {path}")
            return path.read_text(encoding="ascii")
        if self._private_key_path:
            raise KeyConfigurationError(f"OAuth private key file not found: {path}")

        if not self._allow_ephemeral:
            raise KeyConfigurationError(
                "No OAuth signing key configured; set OAUTH_PRIVATE_KEY or OAUTH_PRIVATE_KEY_PATH"
            )
        logger.warning("No OAuth signing key configured, generating an ephemeral key (tokens die with the process)")
        return generate_private_key_pem()

    def _read_public_pem(self) -> str | None:
        if self._public_key:
            return _normalize_pem(self._public_key)
        if self._public_key_path:
            path = Path(self._public_key_path)
            if not path.is_file():
                raise KeyConfigurationError(f"OAuth public key file not found: {path}")
            return path.read_text(encoding="ascii")
        return None

    def _load(self) -> SigningKey:
        private_key = serialization.load_pem_private_key(self._read_private_pem().encode("ascii"), password=None)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise KeyConfigurationError("OAuth signing key must be an RSA private key")
        if private_key.key_size < 2048:
            raise KeyConfigurationError("OAuth signing key must be at least 2048 bits")

        public_key = private_key.public_key()
        configured_public = self._read_public_pem()
        if configured_public is not None:
            loaded = serialization.load_pem_public_key(configured_public.encode("ascii"))
            if not isinstance(loaded, rsa.RSAPublicKey) or loaded.public_numbers() != public_key.public_numbers():
                raise KeyConfigurationError("Configured OAuth public key does not match the private key")

        jwk = build_jwk(public_key)
        logger.info(f"OAuth signing key loaded (kid={jwk['kid']})")
        return SigningKey(private_key=private_key, public_key=public_key, kid=jwk["kid"], jwk=jwk)

    @property
    def signing_key(self) -> SigningKey:
        if self._signing_key is None:
            with self._lock:
                if self._signing_key is None:
                    self._signing_key = self._load()
        return self._signing_key

    @property
    def kid(self) -> str:
        return self.signing_key.kid

    def jwks(self) -> dict[str, Any]:
        """JSON Web Key Set with the single active public key."""
        if self._jwks is None:
            self._jwks = {"keys": [dict(self.signing_key.jwk)]}
        return self._jwks

    def sign(self, claims: dict[str, Any]) -> str:
        """Sign claims as an RS256 JWT whose header names the key id."""
        key = self.signing_key
        return jwt.encode(
            claims,
            key.private_key,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": key.kid, "typ": "JWT"},
        )

    def verify(self, token: str, issuer: str | None = None, audience: str | None = None) -> dict[str, Any]:
        """Verify signature and expiry, and optionally issuer and audience.

        Args:
            token: Compact JWT
            issuer: Expected ``iss`` (skipped when None)
            audience: Expected ``aud`` (skipped when None)

        Returns:
            Verified claims

        Raises:
            TokenExpiredError: ``exp`` is in the past
            BadSignatureError: Signature or key id does not match
            BadIssuerError: ``iss`` differs from the expected issuer
            BadAudienceError: ``aud`` does not contain the expected audience
            MalformedTokenError: Token cannot be parsed or lacks required claims

        """
        key = self.signing_key
        try:
            header = jwt.get_unverified_header(token)
        except InvalidTokenError as err:
            raise MalformedTokenError(str(err)) from err
        if header.get("kid") not in (None, key.kid):
            raise BadSignatureError("Unknown key id")

        try:
            return jwt.decode(
                token,
                key.public_key,
                algorithms=[SIGNING_ALGORITHM],
                issuer=issuer,
                audience=audience,
                options={"require": ["exp", "iat", "iss", "sub"], "verify_aud": audience is not None},
            )
        except ExpiredSignatureError as err:
            raise TokenExpiredError(str(err)) from err
        except InvalidSignatureError as err:
            raise BadSignatureError(str(err)) from err
        except InvalidIssuerError as err:
            raise BadIssuerError(str(err)) from err
        except InvalidAudienceError as err:
            raise BadAudienceError(str(err)) from err
        except InvalidTokenError as err:
            raise MalformedTokenError(str(err)) from err


_key_manager: KeyManager | None = None
_key_manager_lock = threading.Lock()


def get_key_manager() -> KeyManager:
    """Return the process-wide KeyManager, creating it from settings on first use."""
    global _key_manager
    if _key_manager is None:
        with _key_manager_lock:
            if _key_manager is None:
                _key_manager = KeyManager.from_settings()
    return _key_manager


def reset_key_manager() -> None:
    """Drop the cached key, JWKS and discovery document (key rotation, tests)."""
    global _key_manager
    with _key_manager_lock:
        _key_manager = None

    from .discovery import clear_discovery_cache

    clear_discovery_cache()


if __name__ == "__main__":
    # python -m src.features.oauth.keys [output_dir]
    import sys

    out_dir = Path(sys.argv[1] if len(sys.argv) > 1 else "keys")
    out_dir.mkdir(parents=True, exist_ok=True)
    private_pem = generate_private_key_pem()
    (out_dir / "private.pem").write_text(private_pem, encoding="ascii")
    (out_dir / "private.pem").chmod(0o600)
    (out_dir / "public.pem").write_text(public_key_pem(private_pem), encoding="ascii")
    print(f"Wrote {out_dir / 'private.pem'} and {out_dir / 'public.pem'}")
