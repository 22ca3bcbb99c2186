"""Application settings using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "gitferry"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # ==========================================================================
    # Database
    # ==========================================================================
    database_url: str = Field(default="sqlite+aiosqlite:///./gitferry.db")
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # ==========================================================================
    # Git
    # ==========================================================================
    git_executable: str = "git"
    git_command_timeout_seconds: float = 120.0
    git_push_timeout_seconds: float = 300.0
    git_ssl_verify: bool = True
    git_user_name: str = "Code Merge Tool Pipeline"
    git_user_email: str = "pipeline@codemergetool.local"

    # ==========================================================================
    # Source fetch progress
    # ==========================================================================
    clone_timeout_seconds: float = 300.0  # 5 minutes
    progress_teardown_delay_seconds: float = 1.0
    progress_stream_idle_seconds: float = 15.0
    progress_stream_max_idle_seconds: float = 600.0

    # ==========================================================================
    # Hosting providers
    # ==========================================================================
    github_api_url: str = "https://api.github.com"
    github_force_with_lease: bool = True
    gitlab_force_with_lease: bool = True
    http_timeout_seconds: float = 30.0

    # ==========================================================================
    # Retention
    # ==========================================================================
    retention_default_days: int = 30

    # ==========================================================================
    # API
    # ==========================================================================
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: list[str] = Field(default=["http://localhost:3000"])
    admin_token: str = Field(default="")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
