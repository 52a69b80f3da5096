"""Tests for environment-driven settings."""

from __future__ import annotations

from endo.core.config.settings import get_settings


def test_defaults_bind_loopback(monkeypatch):
    monkeypatch.delenv("ENDO_HOST", raising=False)
    settings = get_settings()
    assert settings.endo_host == "127.0.0.1"
    assert settings.endo_allow_insecure_bind is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("ENDO_PORT", "9100")
    monkeypatch.setenv("DIARY_PASSPHRASE", "hunter22")
    monkeypatch.setenv("ENDO_ALLOW_INSECURE_BIND", "true")
    settings = get_settings()
    assert settings.endo_port == 9100
    assert settings.diary_passphrase == "hunter22"
    assert settings.endo_allow_insecure_bind is True
