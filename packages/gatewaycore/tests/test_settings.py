"""
Tests for gateway settings.
"""

import pytest
from pydantic import ValidationError

from gatewaycore.settings import Settings, get_settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = Settings(_env_file=None)

        assert settings.DATABASE_URL == "sqlite:///./whatsapp.db"
        assert settings.WHATSAPP_ADAPTER == "stub"
        assert settings.PORT == 3001
        assert settings.RECONNECT_DELAY_SECONDS == 3.0
        assert settings.RECONNECT_MAX_ATTEMPTS == 50
        assert settings.INSTANCE_EVENTS_ENABLED is False
        assert set(settings.SEED_TENANTS) == {"token_usuario_1", "token_usuario_2"}

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WHATSAPP_ADAPTER", "evolution")
        monkeypatch.setenv("RECONNECT_MAX_ATTEMPTS", "0")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("SEED_TENANTS", '{"loja1": "Loja 1"}')

        settings = Settings(_env_file=None)

        assert settings.WHATSAPP_ADAPTER == "evolution"
        assert settings.RECONNECT_MAX_ATTEMPTS == 0
        assert settings.LOG_LEVEL == "DEBUG"
        assert settings.SEED_TENANTS == {"loja1": "Loja 1"}

    def test_negative_attempts_rejected(self, monkeypatch):
        monkeypatch.setenv("RECONNECT_MAX_ATTEMPTS", "-1")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_unknown_adapter_rejected(self, monkeypatch):
        monkeypatch.setenv("WHATSAPP_ADAPTER", "baileys")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()
