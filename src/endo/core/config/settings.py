"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Endo diary server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: the diary holds health data and there is no auth layer.
    endo_host: str = "127.0.0.1"
    endo_port: int = 8001
    endo_log_level: str = "info"
    endo_allow_insecure_bind: bool = False

    # Storage (diary data bank)
    db_path: str = "~/.endo/diary.db"

    # Flat JSON store written by the pre-SQLite diary; imported once on startup
    legacy_store_path: str = "~/.endo/legacy_storage.json"

    # Passphrase for the encrypted entry collection (session secret)
    diary_passphrase: str = ""


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
