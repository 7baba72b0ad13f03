"""Tests for auth mode resolution and settings loading."""

import pytest

from tenantgate.config import (
    AUTH_MODE_FEATURES,
    AuthMode,
    Settings,
    describe_auth_mode,
    get_settings,
    parse_auth_mode,
    reset_settings_cache,
    resolve_auth_mode,
    supports_feature,
)


class TestParseAuthMode:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("mock", AuthMode.MOCK),
            ("oauth", AuthMode.OAUTH),
            ("legacy", AuthMode.LEGACY),
            ("  LEGACY ", AuthMode.LEGACY),
            ("Mock", AuthMode.MOCK),
        ],
    )
    def test_known_values(self, raw, expected):
        assert parse_auth_mode(raw) is expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "saml", 42])
    def test_unset_or_unknown_defaults_to_oauth(self, raw):
        assert parse_auth_mode(raw) is AuthMode.OAUTH

    def test_enum_passes_through(self):
        assert parse_auth_mode(AuthMode.LEGACY) is AuthMode.LEGACY


class TestResolveAuthMode:
    def test_resolution_is_cached(self, monkeypatch):
        monkeypatch.setenv("AUTH_MODE", "legacy")
        reset_settings_cache()
        first = resolve_auth_mode()

        # Changing the environment does not change an already resolved mode
        monkeypatch.setenv("AUTH_MODE", "mock")
        assert resolve_auth_mode() is first is AuthMode.LEGACY

        reset_settings_cache()
        assert resolve_auth_mode() is AuthMode.MOCK

    def test_missing_env_resolves_to_oauth(self, monkeypatch):
        monkeypatch.delenv("AUTH_MODE", raising=False)
        reset_settings_cache()
        assert resolve_auth_mode() is AuthMode.OAUTH


class TestFeatures:
    def test_every_mode_has_features(self):
        for mode in AuthMode:
            assert AUTH_MODE_FEATURES[mode]
            assert describe_auth_mode(mode)

    def test_supports_feature(self):
        assert supports_feature(AuthMode.OAUTH, "pkce")
        assert supports_feature("legacy", "password_reset")
        assert supports_feature(AuthMode.MOCK, "tenant_switch")
        assert not supports_feature(AuthMode.MOCK, "password_reset")
        assert not supports_feature(AuthMode.OAUTH, "no_such_feature")
        assert not supports_feature("nonsense", "pkce")


class TestSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("API_URL", "https://id.example.com")
        monkeypatch.setenv("LOCKOUT_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        reset_settings_cache()
        settings = get_settings()

        assert settings.api_url == "https://id.example.com/"
        assert settings.api_base == "https://id.example.com"
        assert settings.discovery_url == "https://id.example.com/.well-known/openid-configuration"
        assert settings.lockout_max_attempts == 3
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_redirect_uri_defaults_to_app_callback(self):
        settings = Settings(app_url="https://app.example.com/")
        assert settings.redirect_uri == "https://app.example.com/api/auth/callback/spearfish"

        explicit = Settings(oauth_redirect_uri="https://other.example/cb")
        assert explicit.redirect_uri == "https://other.example/cb"

    def test_production_flag(self):
        assert Settings(environment="production").is_production
        assert not Settings().is_production
