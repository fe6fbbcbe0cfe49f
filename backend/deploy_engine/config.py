from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOY_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_prefix: str = "/api"
    allowed_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )
    database_url: str = "sqlite+aiosqlite:///./deploy_engine.db"
    data_dir: Path = Path("/var/lib/deploy-engine")
    unit_dir: Path = Field(
        default=Path("/etc/systemd/system"),
        description="Directory the service manager loads unit files from",
    )
    unit_prefix: str = "deploy-project"
    base_port: int = 10000
    build_timeout_seconds: float = 30 * 60
    start_grace_seconds: float = 2.0
    shell: str = "bash"
    runtime_log_lines: int = 200
    proxy_api_url: str | None = Field(
        default=None,
        description="Base URL of the reverse-proxy host API; route registration is skipped when unset",
    )
    proxy_api_token: str | None = None
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"

    @property
    def sources_dir(self) -> Path:
        return self.data_dir / "sources"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
