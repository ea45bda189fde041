"""Settings from the environment."""

import pytest

from isoscan.config import ONE_MIB, Settings


def test_defaults(monkeypatch):
    for var in ("SQLALCHEMY_DATABASE_URI", "ISOSCAN_PRODUCTION", "ISOSCAN_SUBSTRATE", "ISOSCAN_SWEEP_MAX_AGE"):
        monkeypatch.delenv(var, raising=False)

    settings = Settings.from_env()

    assert settings.substrate == "kubernetes"
    assert settings.max_payload_bytes == ONE_MIB
    assert settings.mount_path == "/src"
    assert settings.effective_sweep_max_age == settings.unit_ttl_seconds


def test_overrides_from_env(monkeypatch):
    monkeypatch.setenv("ISOSCAN_SUBSTRATE", " Local ")
    monkeypatch.setenv("ISOSCAN_TENANT_LIMIT", "7")
    monkeypatch.setenv("ISOSCAN_PERSIST_BACKOFF", "0.25")
    monkeypatch.setenv("ISOSCAN_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("ISOSCAN_SWEEP_MAX_AGE", "120")
    monkeypatch.setenv("ISOSCAN_DISPATCH_GRACE", "45")

    settings = Settings.from_env()

    assert settings.substrate == "local"
    assert settings.tenant_concurrency_limit == 7
    assert settings.persist_backoff_seconds == 0.25
    assert settings.scheduler_enabled is False
    assert settings.effective_sweep_max_age == 120
    assert settings.dispatch_grace_seconds == 45


def test_bad_integer(monkeypatch):
    monkeypatch.setenv("ISOSCAN_TENANT_LIMIT", "lots")
    with pytest.raises(RuntimeError, match="ISOSCAN_TENANT_LIMIT"):
        Settings.from_env()


def test_production_requires_database(monkeypatch):
    monkeypatch.setenv("ISOSCAN_PRODUCTION", "true")
    monkeypatch.delenv("SQLALCHEMY_DATABASE_URI", raising=False)
    with pytest.raises(RuntimeError, match="SQLALCHEMY_DATABASE_URI"):
        Settings.from_env()
