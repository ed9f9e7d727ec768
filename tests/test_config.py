"""
Configuration tests.
"""

import pytest

from app.config import Settings, get_settings


def test_get_settings_returns_settings() -> None:
    """get_settings returns a cached Settings instance."""
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert get_settings() is settings


def test_settings_has_required_attributes() -> None:
    """Settings has all required attributes."""
    settings = get_settings()
    assert settings.app_name == "incident-remediation-core"
    assert hasattr(settings, "database_url")
    assert hasattr(settings, "db_connect_timeout")
    assert settings.lawbook_path == ""
    assert settings.remediation_max_wait_seconds == 300


def test_generic_postgres_url_gets_psycopg_driver(monkeypatch: pytest.MonkeyPatch) -> None:
    """postgresql:// URLs are rewritten to use the psycopg3 driver."""
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/incidents")
    settings = Settings()
    assert settings.database_url == "postgresql+psycopg://u:p@db:5432/incidents"


def test_default_url_built_from_pg_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("PGUSER", "ops")
    monkeypatch.setenv("PGPASSWORD", "pw")
    monkeypatch.setenv("PGHOST", "pg.internal")
    monkeypatch.setenv("PGPORT", "6543")
    monkeypatch.setenv("PGDATABASE", "incidents")
    settings = Settings()
    assert settings.database_url == "postgresql+psycopg://ops:pw@pg.internal:6543/incidents"


def test_governance_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LAWBOOK_PATH", " /etc/lawbook.yaml ")
    monkeypatch.setenv("DEPLOY_ENV", "prod")
    monkeypatch.setenv("REMEDIATION_MAX_WAIT_SECONDS", "120")
    monkeypatch.setenv("DEBUG", "true")
    settings = Settings()
    assert settings.lawbook_path == "/etc/lawbook.yaml"
    assert settings.deploy_env == "prod"
    assert settings.remediation_max_wait_seconds == 120
    assert settings.debug is True
