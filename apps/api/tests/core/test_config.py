"""
Tests for application settings.
"""

import pytest
from pydantic import ValidationError

from shule.core.config import Settings


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_access_secret": "access-secret-value",
        "jwt_refresh_secret": "refresh-secret-value",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestSettings:
    """Tests for Settings validation and derived values."""

    def test_defaults(self):
        settings = make_settings(python_env="development")

        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 7
        assert settings.refresh_cookie_path == "/api/v1/auth/session"
        assert settings.refresh_cookie_samesite == "strict"
        assert settings.refresh_token_rotation is False
        assert settings.is_development is True

    def test_secrets_must_differ(self):
        with pytest.raises(ValidationError):
            make_settings(jwt_refresh_secret="access-secret-value")

    def test_production_refuses_development_secrets(self):
        with pytest.raises(ValidationError):
            Settings(
                _env_file=None,
                python_env="production",
                jwt_access_secret="dev-access-secret-change-me",
                jwt_refresh_secret="real-refresh-secret",
            )

    def test_cookie_secure_in_production(self):
        settings = make_settings(python_env="production")

        assert settings.refresh_cookie_secure is True

    def test_cookie_secure_when_samesite_none(self):
        settings = make_settings(python_env="development", refresh_cookie_samesite="none")

        assert settings.refresh_cookie_secure is True

    def test_cookie_not_secure_in_development(self):
        settings = make_settings(python_env="development")

        assert settings.refresh_cookie_secure is False

    def test_cors_origins_list(self):
        settings = make_settings(cors_origins="http://a.test, http://b.test,")

        assert settings.cors_origins_list == ["http://a.test", "http://b.test"]

    def test_hash_rounds_lower_bound(self):
        with pytest.raises(ValidationError):
            make_settings(password_hash_rounds=3)
