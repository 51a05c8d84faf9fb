"""Configuration for the Changeflow Core API and automation poller."""
import logging
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger("changeflow-core.config")


class Settings(BaseModel):
    """Runtime settings read from the environment."""

    database_url: str = Field(default="sqlite:///./changeflow.db")
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = Field(default="INFO")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1, le=65535)

    # Shared secret guarding /automation/* (sent as a bearer token)
    automation_secret: Optional[str] = Field(default=None)
    automation_batch_size: int = Field(default=100, ge=1, le=1000)
    automation_recent_hours: int = Field(default=24, ge=1, le=24 * 30)
    automation_interval_seconds: int = Field(default=60, ge=1, le=3600)

    # Used by the poller to reach the sweep endpoint
    api_base_url: str = Field(default="http://localhost:8000/api/v1")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value):
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.upper()


def _env(name: str, *fallbacks: str) -> Optional[str]:
    for key in (name, *fallbacks):
        value = os.getenv(key)
        if value not in (None, ""):
            return value
    return None


def load_settings() -> Settings:
    """Build settings from environment variables (and a local .env file)."""
    load_dotenv()

    raw = {
        "database_url": _env("DATABASE_URL"),
        "cors_origins": _env("CORS_ORIGINS"),
        "log_level": _env("LOG_LEVEL"),
        "host": _env("API_HOST"),
        "port": _env("API_PORT"),
        "automation_secret": _env("AUTOMATION_SECRET", "CRON_SECRET"),
        "automation_batch_size": _env("AUTOMATION_BATCH_SIZE"),
        "automation_recent_hours": _env("AUTOMATION_RECENT_HOURS"),
        "automation_interval_seconds": _env("AUTOMATION_INTERVAL_SECONDS"),
        "api_base_url": _env("API_BASE_URL"),
    }
    try:
        return Settings(**{key: value for key, value in raw.items() if value is not None})
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise


@lru_cache
def get_settings() -> Settings:
    """Cached settings accessor."""
    return load_settings()
