"""Configuration management for TaskHero."""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Seeded into the configurations table on fresh init and before legacy
# config.json values are overlaid.
DEFAULT_CONFIGURATIONS: Dict[str, Dict[str, Any]] = {
    "ai_models": {
        "main": {
            "provider": "anthropic",
            "modelId": "claude-3-7-sonnet-20250219",
            "maxTokens": 64000,
            "temperature": 0.2,
            "baseUrl": "https://api.anthropic.com/v1",
        },
        "research": {
            "provider": "perplexity",
            "modelId": "sonar-pro",
            "maxTokens": 8700,
            "temperature": 0.1,
            "baseUrl": "https://api.perplexity.ai/v1",
        },
        "fallback": {
            "provider": "anthropic",
            "modelId": "claude-3-5-sonnet",
            "maxTokens": 64000,
            "temperature": 0.2,
            "baseUrl": "https://api.anthropic.com/v1",
        },
    },
    "global_settings": {
        "logLevel": "info",
        "debug": False,
        "defaultSubtasks": 5,
        "defaultPriority": "medium",
        "projectName": "TaskHero",
        "ollamaBaseUrl": "http://localhost:11434/api",
    },
}

ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "WAL"}


class Settings(BaseSettings):
    """Data-layer settings loaded from TASKHERO_* environment variables."""

    data_dir_name: str = Field(".taskmaster", alias="TASKHERO_DATA_DIR")
    database_filename: str = Field("taskhero.db", alias="TASKHERO_DATABASE_FILENAME")
    backups_dir_name: str = Field("backups", alias="TASKHERO_BACKUPS_DIR")

    # DELETE journal is crash-safe and keeps the store a single file, which
    # file-level backups depend on
    journal_mode: str = Field("DELETE", alias="TASKHERO_JOURNAL_MODE")
    busy_timeout_ms: int = Field(30000, alias="TASKHERO_BUSY_TIMEOUT_MS")

    max_backups: int = Field(7, alias="TASKHERO_MAX_BACKUPS")

    log_level: str = Field("INFO", alias="TASKHERO_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"TASKHERO_LOG_LEVEL must be one of {allowed}, got: {v}")
        return v_upper

    @field_validator("journal_mode")
    @classmethod
    def validate_journal_mode(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in ALLOWED_JOURNAL_MODES:
            raise ValueError(
                f"TASKHERO_JOURNAL_MODE must be one of {sorted(ALLOWED_JOURNAL_MODES)}, got: {v}"
            )
        return v_upper

    @field_validator("busy_timeout_ms", "max_backups")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be at least 1, got: {v}")
        return v

    def data_dir(self, project_root: Path | str) -> Path:
        """Directory holding the database, backups and legacy JSON files."""
        return Path(project_root) / self.data_dir_name

    def database_path(self, project_root: Path | str) -> Path:
        return self.data_dir(project_root) / self.database_filename

    def backups_dir(self, project_root: Path | str) -> Path:
        return self.data_dir(project_root) / self.backups_dir_name


def load_environment(env_file: str = ".env") -> None:
    """Load environment variables from .env file.

    Args:
        env_file: Path to .env file (default: .env in current directory)
    """
    env_path = Path(env_file)
    if env_path.exists():
        load_dotenv(env_path)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, loading .env on first use."""
    load_environment()
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for an entry point (CLI, API server, MCP server).

    Args:
        level: Log level name; defaults to the configured TASKHERO_LOG_LEVEL
    """
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
