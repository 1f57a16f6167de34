from __future__ import annotations

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env once at module import so every BaseSettings subclass sees the env vars
load_dotenv()

FailurePolicyName = Literal["continue_on_failure", "abort_on_first_failure"]


class DatabaseSettings(BaseSettings):
    """Async SQLAlchemy connection settings. Env vars prefixed with DATABASE_."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    url: str = "postgresql+asyncpg://postgres@localhost:5432/studio_agent"
    echo: bool = False
    pool_size: int = Field(5, gt=0)
    max_overflow: int = Field(10, ge=0)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        allowed = ("postgresql+asyncpg://", "sqlite+aiosqlite://")
        if not v.startswith(allowed):
            raise ValueError(
                f"DATABASE_URL must use an async driver {allowed} (got '{v.split('://')[0]}')"
            )
        return v


class ExecutorSettings(BaseSettings):
    """Tool execution settings. Env vars prefixed with EXECUTOR_."""

    model_config = SettingsConfigDict(env_prefix="EXECUTOR_")

    default_timeout_s: float = Field(30.0, gt=0, le=600)
    read_only_failure_policy: FailurePolicyName = "continue_on_failure"
    read_write_failure_policy: FailurePolicyName = "abort_on_first_failure"
    audit_page_size: int = Field(200, gt=0, le=5000)


class ShadowSettings(BaseSettings):
    """V1/V2 shadow comparison settings. Env vars prefixed with SHADOW_."""

    model_config = SettingsConfigDict(env_prefix="SHADOW_")

    enabled: bool = False
    equivalence: Literal["outcome", "tool_sequence"] = "outcome"


class LoggingSettings(BaseSettings):
    """Env vars prefixed with LOG_."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    json_output: bool = True
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed} (got '{v}')")
        return v.upper()


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    shadow: ShadowSettings = Field(default_factory=ShadowSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
