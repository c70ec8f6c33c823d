from __future__ import annotations

import logging
import re
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

INSECURE_DEV_JWT_SECRET = "insecure-development-secret-change-me"
DURATION_UNITS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}
_DURATION_PATTERN = re.compile(r"^(\d+)\s*([smhd]?)$")


class ConfigurationError(RuntimeError):
    """Raised when the process cannot start with the given configuration."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = "development"

    database_url: str = "sqlite:///./expenses.db"

    jwt_secret: str | None = None
    jwt_expires_in: str = "7d"
    session_cookie_name: str = "authToken"

    frontend_origin: str = "http://localhost:3000"

    openai_api_key: str | None = None
    openai_model: str = "gpt-3.5-turbo"
    openai_timeout_seconds: float = 20.0

    log_level: str = "INFO"
    log_format: str = "json"

    rate_limit_enabled: bool = True
    auth_rate_limit: int = 20
    auth_rate_window_seconds: int = 15 * 60
    api_rate_limit: int = 100
    api_rate_window_seconds: int = 60

    @field_validator("app_env", mode="before")
    @classmethod
    def normalize_app_env(cls, value: str) -> str:
        normalized = str(value).strip().lower()
        if normalized not in {"development", "production", "test"}:
            raise ValueError("APP_ENV must be development, production, or test.")
        return normalized

    @field_validator("jwt_expires_in")
    @classmethod
    def validate_jwt_expires_in(cls, value: str) -> str:
        parse_duration(value)
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def session_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_expires_in)


def parse_duration(value: str | int) -> int:
    """Parse "7d", "12h", "30m", "45s" or a bare number of seconds."""
    if isinstance(value, int):
        seconds = value
    else:
        match = _DURATION_PATTERN.match(value.strip().lower())
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        amount, unit = match.groups()
        seconds = int(amount) * DURATION_UNITS[unit or "s"]
    if seconds <= 0:
        raise ValueError("Duration must be greater than zero.")
    return seconds


def resolve_jwt_secret(settings: Settings) -> str:
    if settings.jwt_secret:
        return settings.jwt_secret
    if settings.is_production:
        raise ConfigurationError(
            "JWT_SECRET environment variable is required in production."
        )
    logger.warning(
        "JWT_SECRET not set; using an insecure default secret (development only)"
    )
    return INSECURE_DEV_JWT_SECRET


@lru_cache
def get_settings() -> Settings:
    return Settings()
