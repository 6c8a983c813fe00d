"""Tests for core/config.py."""

from scantrack.core.config import Settings


def test_default_settings():
    s = Settings()
    assert s.app_port == 8000
    assert s.app_host == "0.0.0.0"
    assert s.log_level == "INFO"
    assert s.database_url  # non-empty


def test_reconciliation_defaults():
    s = Settings()
    assert s.ci_request_timeout == 5.0
    assert s.reconcile_interval_seconds == 30
    assert s.max_concurrent_reconciles == 5
    assert s.scan_max_runtime_minutes == 60
    assert s.push_job_name == "push_to_hub"


def test_sync_db_url():
    s = Settings(database_url="postgresql+asyncpg://user:pw@localhost/db")
    assert "+asyncpg" not in s.sync_database_url
    assert "postgresql" in s.sync_database_url


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("GITLAB_PROJECT_ID", "acme/security-pipelines")
    monkeypatch.setenv("RECONCILE_INTERVAL_SECONDS", "120")
    s = Settings()
    assert s.gitlab_project_id == "acme/security-pipelines"
    assert s.reconcile_interval_seconds == 120
