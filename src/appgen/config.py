"""Runtime configuration for appgen."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings, overridable through ``APPGEN_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="APPGEN_", env_file=".env", extra="ignore")

    # Workspaces
    workspace_root: Path = Path("temp-projects")
    db_path: Path = Path(".appgen/appgen.db")

    # Dev servers
    base_port: int = 3001
    dev_host: str = "127.0.0.1"
    install_command: str = "npm install --no-audit --no-fund"
    dev_command: str = "npx next dev -p {port}"
    install_timeout_seconds: float = 600.0
    ready_timeout_seconds: float = 60.0
    ready_poll_interval_seconds: float = 0.5
    settle_delay_seconds: float = 1.0
    terminate_timeout_seconds: float = 5.0

    # Code generation
    generation_base_url: str = "https://generativelanguage.googleapis.com"
    generation_timeout_seconds: float = 120.0
    default_model: str = "gemini-1.5-flash"
    max_image_bytes: int = 5 * 1024 * 1024
    allowed_image_types: tuple[str, ...] = ("image/png", "image/jpeg", "image/webp", "image/gif")

    # Service
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 3000


@lru_cache
def get_settings() -> Settings:
    return Settings()
