"""
Gateway Settings

Environment-driven configuration shared by the gateway app, the CLI and
the session library. Values come from the process environment or a local
``.env`` file.
"""

import functools
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Database ---
    DATABASE_URL: str = "sqlite:///./whatsapp.db"

    # --- Sessions ---
    SESSIONS_DIR: str = "./sessions"
    WHATSAPP_ADAPTER: Literal["stub", "evolution"] = "stub"
    PAIRING_TIMEOUT_SECONDS: float = 30.0
    RESTORE_ON_STARTUP: bool = True
    DEFAULT_TENANT_NAME: str = "Usuario"

    # --- Reconnection ---
    RECONNECT_DELAY_SECONDS: float = 3.0
    RECONNECT_BACKOFF_FACTOR: float = 1.0
    RECONNECT_MAX_DELAY_SECONDS: float = 60.0
    RECONNECT_MAX_ATTEMPTS: int = 50

    # --- Evolution API ---
    EVOLUTION_API_URL: str = "http://localhost:8080"
    EVOLUTION_API_KEY: str = ""
    EVOLUTION_POLL_INTERVAL_SECONDS: float = 2.0

    # --- Stub adapter ---
    STUB_AUTO_PAIR_SECONDS: float | None = None

    # --- Redis / instance events ---
    REDIS_URL: str = "redis://localhost:6379/0"
    INSTANCE_EVENTS_ENABLED: bool = False
    INSTANCE_EVENTS_STREAM: str = "whatsapp:instance_events"

    # --- Seed data ---
    SEED_TENANTS: dict[str, str] = {
        "token_usuario_1": "Usuario Teste 1",
        "token_usuario_2": "Usuario Teste 2",
    }

    # --- HTTP ---
    HOST: str = "0.0.0.0"
    PORT: int = 3001
    CORS_ORIGINS: list[str] = ["*"]

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    @field_validator("RECONNECT_MAX_ATTEMPTS")
    @classmethod
    def _non_negative_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("RECONNECT_MAX_ATTEMPTS must be >= 0 (0 disables the ceiling)")
        return v


@functools.lru_cache()
def get_settings() -> Settings:
    """Get application settings (cached)."""
    return Settings()
