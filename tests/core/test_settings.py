"""
Tests for settings loading and secret fallbacks.
"""

import pytest

from learnacademy.security.settings import DEFAULT_SECRET_KEY, Environment, Settings

pytestmark = pytest.mark.unit


def test_nested_overrides_from_environment(monkeypatch):
    monkeypatch.setenv("AUDIT__RETENTION_DAYS", "400")
    monkeypatch.setenv("CSRF__EXPIRY_SECONDS", "600")

    settings = Settings()

    assert settings.audit.retention_days == 400
    assert settings.csrf.expiry_seconds == 600


def test_component_secret_falls_back_to_application_secret():
    settings = Settings(secret_key="app-secret", csrf={"secret": "csrf-secret"})

    assert settings.secret_for("csrf") == "csrf-secret"
    assert settings.secret_for("jwt") == "app-secret"


def test_insecure_defaults_lists_unconfigured_secrets():
    settings = Settings(secret_key=DEFAULT_SECRET_KEY, jwt={"secret_key": "jwt-secret"})

    missing = settings.insecure_defaults()

    assert "jwt" not in missing
    assert {"audit", "csrf", "encryption"} <= set(missing)


def test_production_rejects_default_secret():
    with pytest.raises(ValueError):
        Settings(environment="production", secret_key=DEFAULT_SECRET_KEY)


def test_environment_is_case_insensitive():
    assert Settings(environment="TEST").is_testing is True
    assert Settings(environment="Production", secret_key="real").environment == Environment.PRODUCTION
