"""Configuration management for Warden MCP."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class WardenSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    cli_path: str | None = Field(default=None, validation_alias="WARDEN_CLI_PATH")
    cli_name: str = Field(default="dotnet", validation_alias="WARDEN_CLI_NAME")
    log_level: str = Field(default="INFO", validation_alias="WARDEN_LOG_LEVEL")
    cache_ttl_seconds: float = Field(default=300.0, validation_alias="WARDEN_CACHE_TTL_SECONDS")
    session_output_lines: int = Field(default=1000, validation_alias="WARDEN_SESSION_OUTPUT_LINES")
    stop_timeout_seconds: float = Field(default=5.0, validation_alias="WARDEN_STOP_TIMEOUT_SECONDS")
    global_operations: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="WARDEN_GLOBAL_OPERATIONS"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "WARDEN_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("cli_name")
    @classmethod
    def _validate_cli_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("WARDEN_CLI_NAME must not be empty")
        return normalized

    @field_validator("cache_ttl_seconds")
    @classmethod
    def _validate_cache_ttl(cls, value: float) -> float:
        if value < 1:
            raise ValueError("WARDEN_CACHE_TTL_SECONDS must be >= 1")
        return value

    @field_validator("session_output_lines")
    @classmethod
    def _validate_output_lines(cls, value: int) -> int:
        if value < 1:
            raise ValueError("WARDEN_SESSION_OUTPUT_LINES must be >= 1")
        return value

    @field_validator("stop_timeout_seconds")
    @classmethod
    def _validate_stop_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("WARDEN_STOP_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("global_operations", mode="before")
    @classmethod
    def _parse_global_operations(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(str(item).strip() for item in value if str(item).strip())
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        raise TypeError("WARDEN_GLOBAL_OPERATIONS must be a list or a comma-separated string")


@lru_cache(maxsize=1)
def get_settings() -> WardenSettings:
    """Return cached settings instance."""

    return WardenSettings()


__all__ = ["WardenSettings", "get_settings"]
