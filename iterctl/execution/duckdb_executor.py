"""DuckDB engine adapter."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

try:
    import duckdb
except ImportError as e:
    raise ImportError(
        "DuckDB is not installed. Install with: pip install duckdb"
    ) from e

from ..errors import EngineQueryError
from ..sql import Identifier, Literal, SqlTemplate
from .base import SettingInfo, Severity, forward_notice

logger = logging.getLogger(__name__)

_SET_SQL = SqlTemplate("SET {name} = {value}")


class DuckDBExecutor:
    """DuckDB engine for running iterations in-process.

    Usage:
        with DuckDBExecutor(":memory:") as db:
            db.execute("CREATE TABLE args (max_iter INTEGER)")
            with db.transaction():
                ...

    Args:
        database: Path to database file or ":memory:" for in-memory database.
        read_only: If True, open database in read-only mode.
    """

    dialect = "duckdb"

    def __init__(self, database: str = ":memory:", read_only: bool = False):
        self.database = database
        self.read_only = read_only
        self._conn: duckdb.DuckDBPyConnection | None = None

    def connect(self) -> None:
        """Open connection to DuckDB."""
        if self._conn is not None:
            return  # Already connected

        self._conn = duckdb.connect(
            database=self.database,
            read_only=self.read_only,
        )

    def close(self) -> None:
        """Close connection to DuckDB."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "DuckDBExecutor":
        """Context manager entry - opens connection."""
        self.connect()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit - closes connection."""
        self.close()

    def _ensure_connected(self) -> duckdb.DuckDBPyConnection:
        """Ensure connection is open and return it."""
        if self._conn is None:
            self.connect()
        assert self._conn is not None
        return self._conn

    def execute(self, sql: str, params: list[Any] | None = None) -> list[dict[str, Any]]:
        """Execute SQL and return results as list of dicts.

        Args:
            sql: SQL statement. Supports positional ``?`` params.
            params: Query parameters (optional).

        Returns:
            List of dictionaries, one per row.

        Raises:
            EngineQueryError: If DuckDB rejects or fails the statement.
        """
        conn = self._ensure_connected()
        try:
            result = conn.execute(sql, params) if params else conn.execute(sql)
            columns = [desc[0] for desc in result.description] if result.description else []
            rows = result.fetchall() if columns else []
        except duckdb.Error as e:
            raise EngineQueryError(str(e), sql=sql) from e

        return [dict(zip(columns, row)) for row in rows]

    def get_setting(self, name: str) -> SettingInfo:
        """Read a setting from duckdb_settings()."""
        rows = self.execute(
            "SELECT name, value FROM duckdb_settings() WHERE name = ?", [name]
        )
        if not rows:
            return SettingInfo.unavailable(name)
        value = rows[0]["value"]
        return SettingInfo(
            name=name,
            value=None if value is None else str(value),
            available=True,
            settable=not self.read_only,
        )

    def set_setting(self, name: str, value: str) -> None:
        """Set a session setting via SET."""
        self.execute(
            _SET_SQL.render(self.dialect, name=Identifier(name), value=Literal(value))
        )

    def notice(self, severity: Severity, message: str) -> None:
        """DuckDB has no server notices; forward straight to logging."""
        forward_notice(__name__, severity, message)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed block as one DuckDB transaction."""
        conn = self._ensure_connected()
        conn.begin()
        try:
            yield
        except BaseException:
            conn.rollback()
            raise
        conn.commit()
