"""Tests for signing keys, token crypto helpers and the discovery endpoints."""

import base64
import hashlib
import time

import jwt
import pytest
from fastapi import status
from jwt.algorithms import RSAAlgorithm

from src.config.settings import settings
from src.features.oauth.crypto import (
    compute_at_hash,
    compute_code_challenge,
    generate_client_id,
    generate_client_secret,
    hash_client_secret,
    hash_token,
    verify_client_secret,
    verify_code_challenge,
)
from src.features.oauth.keys import (
    BadAudienceError,
    BadIssuerError,
    BadSignatureError,
    KeyConfigurationError,
    KeyManager,
    MalformedTokenError,
    TokenExpiredError,
    generate_private_key_pem,
    get_key_manager,
    public_key_pem,
)

# RFC 7636 appendix B
RFC_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
RFC_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def claims(**overrides) -> dict:
    now = int(time.time())
    values = {"iss": "http://test", "sub": "1", "aud": "ec_client", "iat": now, "exp": now + 300}
    values.update(overrides)
    return values


class TestPkce:
    def test_known_s256_vector(self):
        assert compute_code_challenge(RFC_VERIFIER) == RFC_CHALLENGE
        assert verify_code_challenge(RFC_VERIFIER, RFC_CHALLENGE) is True

    def test_wrong_verifier_fails(self):
        assert verify_code_challenge("x" * 43, RFC_CHALLENGE) is False

    def test_plain_method_always_fails(self):
        assert verify_code_challenge(RFC_VERIFIER, RFC_VERIFIER, method="plain") is False

    @pytest.mark.parametrize("length", [42, 129])
    def test_verifier_length_bounds(self, length):
        verifier = "a" * length
        assert verify_code_challenge(verifier, compute_code_challenge(verifier)) is False

    def test_non_ascii_verifier_fails(self):
        assert verify_code_challenge("é" * 43, RFC_CHALLENGE) is False


class TestSecretsAndHashes:
    def test_client_id_prefix_and_uniqueness(self):
        ids = {generate_client_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith(settings.oauth_client_id_prefix) for i in ids)

    def test_client_secret_hash_round_trip(self):
        secret = generate_client_secret()
        hashed = hash_client_secret(secret)
        assert hashed != secret
        assert verify_client_secret(secret, hashed) is True
        assert verify_client_secret(secret + "x", hashed) is False

    def test_hash_token_is_sha256_hex(self):
        assert hash_token("abc") == hashlib.sha256(b"abc").hexdigest()

    def test_at_hash_is_left_half_of_sha256(self):
        digest = hashlib.sha256(b"access-token").digest()
        expected = base64.urlsafe_b64encode(digest[:16]).rstrip(b"=").decode()
        assert compute_at_hash("access-token") == expected


class TestKeyManager:
    def test_sign_and_verify(self, signing_key_pem):
        manager = KeyManager(private_key=signing_key_pem)
        token = manager.sign(claims())

        header = jwt.get_unverified_header(token)
        assert header["alg"] == "RS256"
        assert header["kid"] == manager.kid
        assert manager.verify(token, issuer="http://test", audience="ec_client")["sub"] == "1"

    def test_kid_is_stable_for_the_same_key(self, signing_key_pem):
        assert KeyManager(private_key=signing_key_pem).kid == KeyManager(private_key=signing_key_pem).kid

    def test_jwks_exposes_public_key_only(self, signing_key_pem):
        manager = KeyManager(private_key=signing_key_pem)
        (key,) = manager.jwks()["keys"]
        assert key["kty"] == "RSA"
        assert key["use"] == "sig"
        assert key["alg"] == "RS256"
        assert key["kid"] == manager.kid
        assert {"n", "e"} <= set(key)
        assert "d" not in key and "p" not in key

    def test_expired_token(self, signing_key_pem):
        manager = KeyManager(private_key=signing_key_pem)
        token = manager.sign(claims(iat=int(time.time()) - 600, exp=int(time.time()) - 300))
        with pytest.raises(TokenExpiredError):
            manager.verify(token)

    def test_wrong_issuer(self, signing_key_pem):
        manager = KeyManager(private_key=signing_key_pem)
        with pytest.raises(BadIssuerError):
            manager.verify(manager.sign(claims(iss="https://evil.example.com")), issuer="http://test")

    def test_wrong_audience(self, signing_key_pem):
        manager = KeyManager(private_key=signing_key_pem)
        with pytest.raises(BadAudienceError):
            manager.verify(manager.sign(claims()), audience="ec_other")

    def test_token_from_another_key(self, signing_key_pem):
        other = KeyManager(private_key=generate_private_key_pem())
        token = other.sign(claims())
        with pytest.raises(BadSignatureError):
            KeyManager(private_key=signing_key_pem).verify(token)

    def test_garbage_token(self, signing_key_pem):
        with pytest.raises(MalformedTokenError):
            KeyManager(private_key=signing_key_pem).verify("not-a-jwt")

    def test_missing_required_claim(self, signing_key_pem):
        manager = KeyManager(private_key=signing_key_pem)
        payload = claims()
        del payload["sub"]
        with pytest.raises(MalformedTokenError):
            manager.verify(manager.sign(payload))

    def test_pem_with_escaped_newlines(self, signing_key_pem):
        manager = KeyManager(private_key=signing_key_pem.replace("\n", "\\n"))
        assert manager.kid == KeyManager(private_key=signing_key_pem).kid

    def test_matching_public_key_is_accepted(self, signing_key_pem):
        manager = KeyManager(private_key=signing_key_pem, public_key=public_key_pem(signing_key_pem))
        assert manager.kid

    def test_mismatched_public_key_is_rejected(self, signing_key_pem):
        manager = KeyManager(private_key=signing_key_pem, public_key=public_key_pem(generate_private_key_pem()))
        with pytest.raises(KeyConfigurationError, match="does not match"):
            _ = manager.signing_key

    def test_missing_key_file(self, tmp_path):
        manager = KeyManager(private_key_path=str(tmp_path / "missing.pem"))
        with pytest.raises(KeyConfigurationError, match="not found"):
            _ = manager.signing_key

    def test_key_file(self, tmp_path, signing_key_pem):
        path = tmp_path / "private.pem"
        path.write_text(signing_key_pem)
        assert KeyManager(private_key_path=str(path)).kid == KeyManager(private_key=signing_key_pem).kid

    def test_no_key_without_ephemeral_fallback(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(KeyConfigurationError, match="No OAuth signing key"):
            _ = KeyManager(allow_ephemeral=False).signing_key

    def test_ephemeral_key_in_development(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert KeyManager(allow_ephemeral=True).kid

    def test_small_keys_are_rejected(self):
        manager = KeyManager(private_key=generate_private_key_pem(key_size=1024))
        with pytest.raises(KeyConfigurationError, match="2048"):
            _ = manager.signing_key

    def test_process_wide_manager_uses_settings(self, oauth_signing_key):
        assert get_key_manager() is get_key_manager()
        assert get_key_manager().kid == KeyManager(private_key=oauth_signing_key).kid


class TestDiscoveryEndpoints:
    async def test_openid_configuration(self, client):
        response = await client.get("/.well-known/openid-configuration")
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["cache-control"] == "public, max-age=3600"

        body = response.json()
        prefix = f"{settings.oauth_issuer}{settings.api_prefix}"
        assert body["issuer"] == settings.oauth_issuer
        assert body["authorization_endpoint"] == f"{prefix}/oauth/authorize"
        assert body["token_endpoint"] == f"{prefix}/oauth/token"
        assert body["jwks_uri"] == f"{settings.oauth_issuer}/.well-known/jwks.json"
        assert body["response_types_supported"] == ["code"]
        assert body["code_challenge_methods_supported"] == ["S256"]
        assert body["id_token_signing_alg_values_supported"] == ["RS256"]
        assert "openid" in body["scopes_supported"]
        assert set(body["token_endpoint_auth_methods_supported"]) == {"client_secret_basic", "client_secret_post"}

    async def test_jwks(self, client):
        response = await client.get("/.well-known/jwks.json")
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["cache-control"] == "public, max-age=900"

        (key,) = response.json()["keys"]
        assert key["kid"] == get_key_manager().kid
        assert "d" not in key

    async def test_jwks_verifies_issued_tokens(self, client):
        token = get_key_manager().sign(claims(iss=settings.oauth_issuer))
        jwk = (await client.get("/.well-known/jwks.json")).json()["keys"][0]

        public_key = RSAAlgorithm.from_jwk(jwk)
        decoded = jwt.decode(token, public_key, algorithms=["RS256"], audience="ec_client")
        assert decoded["iss"] == settings.oauth_issuer
