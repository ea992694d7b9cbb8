"""Pytest configuration and fixtures for iterctl tests."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional

import pytest

from iterctl.execution.base import SettingInfo, Severity
from iterctl.execution.duckdb_executor import DuckDBExecutor


class FakeEngine:
    """In-memory engine: a dict of settings plus a log of issued statements."""

    dialect = "postgres"

    def __init__(
        self,
        settings: Optional[dict[str, str]] = None,
        fixed: tuple[str, ...] = (),
        rows: Optional[list[dict[str, Any]]] = None,
    ):
        self.settings = dict(settings or {})
        self.fixed = set(fixed)
        self.rows = rows or []
        self.queries: list[str] = []
        self.get_calls: list[str] = []
        self.set_calls: list[tuple[str, str]] = []
        self.notices: list[tuple[Severity, str]] = []

    def connect(self) -> None:
        pass

    def close(self) -> None:
        pass

    def execute(self, sql: str) -> list[dict[str, Any]]:
        self.queries.append(sql)
        if sql.lstrip().upper().startswith("SELECT"):
            return list(self.rows)
        return []

    def get_setting(self, name: str) -> SettingInfo:
        self.get_calls.append(name)
        if name not in self.settings:
            return SettingInfo.unavailable(name)
        return SettingInfo(
            name=name,
            value=self.settings[name],
            available=True,
            settable=name not in self.fixed,
        )

    def set_setting(self, name: str, value: str) -> None:
        self.set_calls.append((name, value))
        self.settings[name] = value

    def notice(self, severity: Severity, message: str) -> None:
        self.notices.append((severity, message))

    @contextmanager
    def transaction(self) -> Iterator[None]:
        yield


# =============================================================================
# ENGINE FIXTURES
# =============================================================================

@pytest.fixture
def fake_engine() -> FakeEngine:
    """Engine that knows optimizer, hashagg and client_min_messages."""
    return FakeEngine(
        settings={
            "optimizer": "on",
            "enable_hashagg": "on",
            "client_min_messages": "notice",
        }
    )


@pytest.fixture
def duck() -> Iterator[DuckDBExecutor]:
    """In-memory DuckDB with a one-row argument table ``args``."""
    with DuckDBExecutor(":memory:") as db:
        db.execute(
            "CREATE TABLE args AS "
            "SELECT CAST(4.0 AS DOUBLE) AS threshold, 10 AS max_iter"
        )
        yield db


@pytest.fixture
def make_engine():
    """Factory for FakeEngine with custom settings."""
    return FakeEngine
