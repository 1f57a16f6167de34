"""Tests for Database/Executor/Shadow/Logging settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from studio_agent.config.settings import (
    DatabaseSettings,
    ExecutorSettings,
    LoggingSettings,
    Settings,
    ShadowSettings,
)


class TestDatabaseSettings:
    def test_default_is_asyncpg(self) -> None:
        s = DatabaseSettings()
        assert s.url.startswith("postgresql+asyncpg://")

    def test_sqlite_accepted(self) -> None:
        s = DatabaseSettings(url="sqlite+aiosqlite:///agent.db")
        assert s.url == "sqlite+aiosqlite:///agent.db"

    def test_sync_driver_rejected(self) -> None:
        with pytest.raises(ValidationError, match="DATABASE_URL must use an async driver"):
            DatabaseSettings(url="postgresql://localhost/agent")

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///env.db")
        monkeypatch.setenv("DATABASE_POOL_SIZE", "2")
        s = DatabaseSettings()
        assert s.url == "sqlite+aiosqlite:///env.db"
        assert s.pool_size == 2


class TestExecutorSettings:
    def test_defaults(self) -> None:
        s = ExecutorSettings()
        assert s.default_timeout_s == 30.0
        assert s.read_only_failure_policy == "continue_on_failure"
        assert s.read_write_failure_policy == "abort_on_first_failure"
        assert s.audit_page_size == 200

    def test_non_positive_timeout_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ExecutorSettings(default_timeout_s=0)

    def test_unknown_policy_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ExecutorSettings(read_write_failure_policy="retry_forever")

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EXECUTOR_READ_ONLY_FAILURE_POLICY", "abort_on_first_failure")
        assert ExecutorSettings().read_only_failure_policy == "abort_on_first_failure"


class TestShadowSettings:
    def test_disabled_by_default(self) -> None:
        s = ShadowSettings()
        assert s.enabled is False
        assert s.equivalence == "outcome"

    def test_invalid_equivalence_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ShadowSettings(equivalence="reply_text")


class TestLoggingSettings:
    def test_level_normalized(self) -> None:
        assert LoggingSettings(level="debug").level == "DEBUG"

    def test_invalid_level_rejected(self) -> None:
        with pytest.raises(ValidationError, match="LOG_LEVEL must be one of"):
            LoggingSettings(level="chatty")


class TestRootSettings:
    def test_composes_sections(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SHADOW_ENABLED", "true")
        s = Settings()
        assert s.shadow.enabled is True
        assert s.executor.default_timeout_s == 30.0
