import pytest

from boxoffice.config import MOCK_SECRET_DEFAULT, Settings, check_settings
from boxoffice.errors import ConfigError


class TestFromEnv:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.environment == "development"
        assert settings.payment_provider == "mock"
        assert settings.webhook_secret == MOCK_SECRET_DEFAULT
        assert settings.store_backend == "redis"
        assert settings.public_url == "http://localhost:3000"
        assert settings.missing() == []

    def test_stripe_has_no_default_secret(self):
        settings = Settings.from_env({"PAYMENT_PROVIDER": "stripe"})
        assert settings.webhook_secret is None
        assert settings.missing() == ["STRIPE_SECRET_KEY", "WEBHOOK_SECRET"]

    def test_stripe_webhook_secret_alias(self):
        settings = Settings.from_env({
            "PAYMENT_PROVIDER": "stripe",
            "STRIPE_SECRET_KEY": "sk_test",
            "STRIPE_WEBHOOK_SECRET": "whsec_1",
        })
        assert settings.webhook_secret == "whsec_1"
        assert settings.missing() == []

    def test_node_env_fallback(self):
        assert Settings.from_env({"NODE_ENV": "production"}).production

    def test_blank_values_count_as_unset(self):
        settings = Settings.from_env({"ORDERSTORE_BACKEND": "pg", "DATABASE_URL": "  "})
        assert settings.missing() == ["DATABASE_URL"]

    def test_sheets_requirements(self):
        settings = Settings.from_env({"ORDERSTORE_BACKEND": "sheets", "GOOGLE_SHEETS_ID": "abc"})
        assert settings.missing() == [
            "GOOGLE_SERVICE_ACCOUNT_EMAIL", "GOOGLE_SERVICE_ACCOUNT_KEY",
        ]

    def test_frontend_url_trailing_slash(self):
        settings = Settings.from_env({"FRONTEND_URL": "https://shop.example.com/"})
        assert settings.public_url == "https://shop.example.com"

    def test_provided_names_only(self):
        settings = Settings.from_env({"EMAIL_USER": "me@example.com", "EMAIL_PASSWORD": ""})
        assert "EMAIL_USER" in settings.provided
        assert "EMAIL_PASSWORD" not in settings.provided


class TestCheckSettings:
    def test_development_tolerates_missing(self):
        check_settings(Settings.from_env({"MAIL_BACKEND": "smtp"}))

    def test_production_requires_frontend_url(self):
        settings = Settings.from_env({"ENVIRONMENT": "production", "WEBHOOK_SECRET": "s3cret"})
        with pytest.raises(ConfigError) as excinfo:
            check_settings(settings)
        assert excinfo.value.context["missing"] == ["FRONTEND_URL"]

    def test_production_rejects_default_secret(self):
        settings = Settings.from_env({
            "ENVIRONMENT": "production", "FRONTEND_URL": "https://shop.example.com",
        })
        with pytest.raises(ConfigError):
            check_settings(settings)

    def test_unknown_backend_always_fails(self):
        with pytest.raises(ConfigError):
            check_settings(Settings.from_env({"ORDERSTORE_BACKEND": "mongo"}))

    def test_complete_production_config(self):
        check_settings(Settings.from_env({
            "ENVIRONMENT": "production",
            "FRONTEND_URL": "https://shop.example.com",
            "WEBHOOK_SECRET": "s3cret",
            "ORDERSTORE_BACKEND": "memory",
        }))
