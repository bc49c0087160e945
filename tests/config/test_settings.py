"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError

from src.config.settings import Settings, parse_space_separated


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "development",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "secret_key": "x" * 32,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestParseSpaceSeparated:
    def test_spaces_and_commas(self):
        assert parse_space_separated("openid, profile  email") == ["openid", "profile", "email"]

    def test_empty(self):
        assert parse_space_separated(None) == []
        assert parse_space_separated("") == []


class TestSettingsDefaults:
    def test_oauth_defaults(self):
        s = make_settings()
        assert s.oauth_access_token_lifetime == 900
        assert s.oauth_refresh_token_lifetime == 30 * 24 * 60 * 60
        assert s.oauth_auth_code_lifetime == 600
        assert s.supported_scopes == ["openid", "profile", "email", "offline_access"]
        assert s.grant_types == ["authorization_code", "refresh_token"]
        assert s.pkce_methods == ["S256"]
        assert s.oauth_require_pkce is True
        assert s.oauth_rotate_refresh_tokens is True
        assert s.oauth_max_active_families == 5

    def test_issuer_trailing_slash_is_dropped(self):
        assert make_settings(oauth_issuer="https://id.example.edu/").oauth_issuer == "https://id.example.edu"

    def test_environment_is_case_insensitive(self):
        assert make_settings(environment="Staging").environment == "staging"

    def test_redirect_schemes_by_environment(self):
        assert make_settings().allowed_redirect_schemes == ["https", "http"]
        production = make_settings(environment="production", oauth_issuer="https://id.example.edu")
        assert production.allowed_redirect_schemes == ["https"]

    def test_redirect_schemes_override(self):
        s = make_settings(oauth_allowed_redirect_schemes="HTTPS com.example.app")
        assert s.allowed_redirect_schemes == ["https", "com.example.app"]


class TestSettingsValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"environment": "qa"},
            {"oauth_issuer": "not-a-url"},
            {"oauth_access_token_lifetime": 30},
            {"oauth_id_token_lifetime": 10},
            {"oauth_refresh_token_lifetime": 600},
            {"oauth_auth_code_lifetime": 3600},
            {"oauth_auth_code_lifetime": 30},
            {"oauth_scopes": "profile email"},
            {"oauth_pkce_methods": "S256 plain"},
            {"oauth_max_active_families": 0},
            {"oauth_grant_types": "authorization_code client_credentials"},
        ],
    )
    def test_rejects_invalid_configuration(self, overrides):
        with pytest.raises(ValidationError):
            make_settings(**overrides)

    def test_production_requires_https_issuer(self):
        with pytest.raises(ValidationError, match="https in production"):
            make_settings(environment="production", oauth_issuer="http://id.example.edu")

    def test_refresh_only_grant_list_is_accepted(self):
        assert make_settings(oauth_grant_types="authorization_code").grant_types == ["authorization_code"]
