from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

MODULE_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ANALYTICS_DB_PATH = MODULE_ROOT / "data" / "analytics.sqlite"
DEFAULT_TRACKED_PLATFORMS = ("openai", "gemini")

API_REQUIRED_ENVS = (
    "AGGREGATION_API_URL",
    "AGGREGATION_API_KEY",
)


class Settings(BaseModel):
    aggregation_api_url: str = ""
    aggregation_api_key: str = ""
    analytics_db_path: Path = Field(default=DEFAULT_ANALYTICS_DB_PATH)
    tracked_platforms: tuple[str, ...] = DEFAULT_TRACKED_PLATFORMS
    request_timeout_seconds: float = Field(default=20.0, gt=0.0)
    user_agent: str = "visibility-tracker/0.1"
    poll_initial_delay_seconds: float = Field(default=1.0, ge=0.0)
    poll_interval_seconds: float = Field(default=5.0, gt=0.0)
    poll_max_attempts: int = Field(default=240, ge=1)
    settle_delay_seconds: float = Field(default=15.0, ge=0.0)
    progress_tick_seconds: float = Field(default=1.0, gt=0.0)
    progress_tick_increment: float = Field(default=0.5, ge=0.0)
    log_level: str = "INFO"
    tz: str = "UTC"

    @field_validator("aggregation_api_url")
    @classmethod
    def _validate_api_url(cls, value: str) -> str:
        if value and not value.startswith("https://"):
            raise ValueError("AGGREGATION_API_URL must use https://")
        return value.rstrip("/")

    @field_validator("tracked_platforms")
    @classmethod
    def _validate_platforms(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("TRACKED_PLATFORMS must name at least one platform")
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError(f"LOG_LEVEL must be DEBUG, INFO, WARNING or ERROR, got {value!r}")
        return level


def _env_value(environ: Mapping[str, str], key: str) -> str:
    return environ.get(key, "").strip()


def parse_platforms_csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return DEFAULT_TRACKED_PLATFORMS
    platforms = [item.strip().lower() for item in value.split(",") if item.strip()]
    return tuple(dict.fromkeys(platforms))


def missing_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> list[str]:
    source = os.environ if environ is None else environ
    return [key for key in required if not _env_value(source, key)]


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    source = os.environ if environ is None else environ
    try:
        payload = {
            "aggregation_api_url": _env_value(source, "AGGREGATION_API_URL"),
            "aggregation_api_key": _env_value(source, "AGGREGATION_API_KEY"),
            "analytics_db_path": Path(
                _env_value(source, "ANALYTICS_DB_PATH") or DEFAULT_ANALYTICS_DB_PATH
            ),
            "tracked_platforms": parse_platforms_csv(_env_value(source, "TRACKED_PLATFORMS")),
            "request_timeout_seconds": float(_env_value(source, "REQUEST_TIMEOUT_SECONDS") or "20"),
            "user_agent": _env_value(source, "USER_AGENT") or "visibility-tracker/0.1",
            "poll_initial_delay_seconds": float(
                _env_value(source, "POLL_INITIAL_DELAY_SECONDS") or "1"
            ),
            "poll_interval_seconds": float(_env_value(source, "POLL_INTERVAL_SECONDS") or "5"),
            "poll_max_attempts": int(_env_value(source, "POLL_MAX_ATTEMPTS") or "240"),
            "settle_delay_seconds": float(_env_value(source, "SETTLE_DELAY_SECONDS") or "15"),
            "progress_tick_seconds": float(_env_value(source, "PROGRESS_TICK_SECONDS") or "1"),
            "progress_tick_increment": float(
                _env_value(source, "PROGRESS_TICK_INCREMENT") or "0.5"
            ),
            "log_level": _env_value(source, "LOG_LEVEL") or "INFO",
            "tz": _env_value(source, "TZ") or "UTC",
        }
        return Settings(**payload)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def assert_required_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> None:
    missing = missing_envs(required, environ)
    if missing:
        keys = ", ".join(missing)
        raise ValueError(f"Missing required environment variables: {keys}")


def mask_secret(value: str, visible_prefix: int = 3, visible_suffix: int = 2) -> str:
    if not value:
        return ""
    if len(value) <= visible_prefix + visible_suffix:
        return "*" * len(value)
    hidden = "*" * (len(value) - visible_prefix - visible_suffix)
    return f"{value[:visible_prefix]}{hidden}{value[-visible_suffix:]}"
