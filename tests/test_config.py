"""
Tests for application configuration.
"""

import os
from unittest.mock import patch

import pytest


def make_settings(**overrides):
    from config import Settings

    with patch.dict(os.environ, {}, clear=True):
        return Settings(_env_file=None, **overrides)


class TestAppModeEnum:
    """Tests for AppMode enum."""

    def test_app_mode_values(self):
        from config import AppMode

        assert AppMode.DEV.value == "dev"
        assert AppMode.PROD.value == "prod"
        assert AppMode("prod") == AppMode.PROD


class TestSettingsDefaults:
    """Tests for Settings default values."""

    def test_default_app_mode(self):
        from config import AppMode

        settings = make_settings()
        assert settings.APP_MODE == AppMode.DEV
        assert not settings.is_prod

    def test_default_database_url(self):
        assert "sqlite" in make_settings().DATABASE_URL

    def test_security_defaults(self):
        """Session, lockout and MFA parameters."""
        settings = make_settings()
        assert settings.SESSION_TIMEOUT_MINUTES == 30
        assert settings.SESSION_ABSOLUTE_TIMEOUT_HOURS == 24
        assert settings.SESSION_REFRESH_THRESHOLD_MINUTES == 5
        assert settings.CSRF_TOKEN_EXPIRY_HOURS == 24
        assert settings.LOCKOUT_MAX_ATTEMPTS == 5
        assert settings.LOCKOUT_WINDOW_MINUTES == 15
        assert settings.MFA_ISSUER == "PICORTEX AI"
        assert settings.MFA_VALID_WINDOW == 2
        assert settings.MFA_BACKUP_CODE_COUNT == 10
        assert settings.REDIS_URL is None

    def test_rate_limit_classes(self):
        classes = make_settings().rate_limit_classes
        assert classes == {
            "auth": (5, 60),
            "api": (30, 60),
            "admin": (60, 60),
            "payment": (3, 60),
            "webhook": (100, 60),
        }

    def test_rate_limit_classes_follow_overrides(self):
        classes = make_settings(RATE_LIMIT_AUTH=10, RATE_LIMIT_WINDOW=120).rate_limit_classes
        assert classes["auth"] == (10, 120)
        assert classes["api"] == (30, 120)

    def test_csrf_exempt_paths(self):
        assert make_settings().csrf_exempt_paths == ["/api/stripe/webhook", "/api/whatsapp/webhook"]
        assert make_settings(CSRF_EXEMPT_PATHS=" /hooks/a , ,/hooks/b").csrf_exempt_paths == [
            "/hooks/a",
            "/hooks/b",
        ]


class TestCorsOrigins:
    def test_dev_includes_localhost(self):
        origins = make_settings().CORS_ORIGINS
        assert "http://localhost:3000" in origins
        assert "*" not in origins

    def test_prod_uses_configured_only(self):
        settings = make_settings(APP_MODE="prod", CORS_ALLOWED_ORIGINS="https://app.picortex.ai, ")
        assert settings.CORS_ORIGINS == ["https://app.picortex.ai"]

    def test_prod_without_origins_is_empty(self):
        assert make_settings(APP_MODE="prod").CORS_ORIGINS == []


class TestValidateSettings:
    """Startup validation."""

    def test_prod_rejects_default_secret(self):
        from config import _validate_settings

        with pytest.raises(ValueError, match="Default SECRET_KEY"):
            _validate_settings(make_settings(APP_MODE="prod"))

    def test_prod_rejects_debug(self):
        from config import _validate_settings

        settings = make_settings(APP_MODE="prod", DEBUG=True, SECRET_KEY="x" * 48)
        with pytest.raises(ValueError, match="DEBUG=True"):
            _validate_settings(settings)

    def test_prod_warns_on_short_secret(self):
        from config import SecurityWarning, _validate_settings

        with pytest.warns(SecurityWarning):
            _validate_settings(make_settings(APP_MODE="prod", SECRET_KEY="short-but-not-default"))

    def test_dev_accepts_default_secret(self):
        from config import _validate_settings

        settings = make_settings()
        assert _validate_settings(settings) is settings

    @pytest.mark.parametrize("rounds", [3, 32])
    def test_hash_rounds_out_of_range(self, rounds):
        from config import _validate_settings

        with pytest.raises(ValueError, match="PASSWORD_HASH_ROUNDS"):
            _validate_settings(make_settings(PASSWORD_HASH_ROUNDS=rounds))

    @pytest.mark.parametrize("rounds", [4, 31])
    def test_hash_rounds_bounds_accepted(self, rounds):
        from config import _validate_settings

        _validate_settings(make_settings(PASSWORD_HASH_ROUNDS=rounds))
