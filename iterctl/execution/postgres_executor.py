"""PostgreSQL / Greenplum engine adapter."""

from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from typing import Any, Iterator, Optional

try:
    import psycopg2
    from psycopg2.extras import RealDictCursor
except ImportError as e:
    raise ImportError(
        "psycopg2 is not installed. Install with: pip install psycopg2-binary"
    ) from e

from ..errors import EngineQueryError
from .base import SettingInfo, Severity, forward_notice

logger = logging.getLogger(__name__)

# pg_settings.context values a regular session may change with SET
_SETTABLE_CONTEXTS = frozenset({"user", "superuser"})

# "NOTICE:  message\n" as delivered in connection.notices
_NOTICE_RE = re.compile(r"^\s*([A-Z0-9]+):\s*(.*?)\s*$", re.DOTALL)


class PostgresExecutor:
    """PostgreSQL executor that leaves transaction control to the caller.

    Statements run inside the connection's implicit transaction and are never
    committed here: wrap a run in ``transaction()`` (or call ``commit()``)
    to make it durable. A failed statement aborts the transaction until the
    caller rolls back.

    Usage:
        with PostgresExecutor(host="localhost", database="test_db") as db:
            with db.transaction():
                db.execute("CREATE TEMP TABLE args AS SELECT 10 AS max_iter")

    Environment variables (used as defaults):
        - ITERCTL_POSTGRES_HOST: PostgreSQL host
        - ITERCTL_POSTGRES_PORT: PostgreSQL port
        - ITERCTL_POSTGRES_DATABASE: Database name
        - ITERCTL_POSTGRES_USER: Username
        - ITERCTL_POSTGRES_PASSWORD: Password

    Args:
        host: PostgreSQL server hostname.
        port: PostgreSQL server port.
        database: Database name.
        user: Username for authentication.
        password: Password for authentication.
        schema: Schema to put first on the search path (default: public).
        statement_timeout_ms: Per-statement timeout (0 = no limit).
    """

    dialect = "postgres"

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        schema: str = "public",
        statement_timeout_ms: int = 0,
    ):
        self.host = host or os.getenv("ITERCTL_POSTGRES_HOST", "localhost")
        self.port = port or int(os.getenv("ITERCTL_POSTGRES_PORT", "5432"))
        self.database = database or os.getenv("ITERCTL_POSTGRES_DATABASE", "postgres")
        self.user = user or os.getenv("ITERCTL_POSTGRES_USER", "postgres")
        self.password = password or os.getenv("ITERCTL_POSTGRES_PASSWORD", "postgres")
        self.schema = schema
        self.statement_timeout_ms = statement_timeout_ms
        self._conn: Optional[psycopg2.extensions.connection] = None

    def connect(self) -> None:
        """Open connection to PostgreSQL."""
        if self._conn is not None and not self._conn.closed:
            return  # Already connected

        self._conn = psycopg2.connect(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
        )
        self._conn.autocommit = False
        with self._conn.cursor() as cur:
            cur.execute("SELECT set_config('search_path', %s, false)", (f"{self.schema}, public",))
        self._conn.commit()

    def close(self) -> None:
        """Close connection to PostgreSQL."""
        if self._conn is not None:
            try:
                # Uncommitted work is discarded, matching session-end semantics
                self._conn.rollback()
            except psycopg2.Error as e:
                logger.debug(f"Rollback on close failed: {e}")
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "PostgresExecutor":
        """Context manager entry - opens connection."""
        self.connect()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit - closes connection."""
        self.close()

    def _ensure_connected(self) -> psycopg2.extensions.connection:
        """Ensure connection is open and return it."""
        if self._conn is None or self._conn.closed:
            self.connect()
        assert self._conn is not None
        return self._conn

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Execute SQL and return results as list of dicts.

        Args:
            sql: SQL statement to execute.
            params: Query parameters (optional).

        Returns:
            List of dictionaries, one per row.

        Raises:
            EngineQueryError: If the server reports an error.
        """
        conn = self._ensure_connected()

        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                if self.statement_timeout_ms > 0:
                    # SET LOCAL so the timeout reverts automatically on commit/rollback
                    cur.execute("SET LOCAL statement_timeout = %s", (self.statement_timeout_ms,))
                if params:
                    cur.execute(sql, params)
                else:
                    cur.execute(sql)
                rows = [dict(row) for row in cur.fetchall()] if cur.description else []
        except psycopg2.Error as e:
            raise EngineQueryError(str(e).strip(), sql=sql) from e
        finally:
            self._drain_notices(conn)
        return rows

    def _drain_notices(self, conn: psycopg2.extensions.connection) -> None:
        """Forward server notices collected by psycopg2 to logging."""
        while conn.notices:
            raw = conn.notices.pop(0)
            match = _NOTICE_RE.match(raw)
            if match:
                try:
                    severity = Severity.parse(match.group(1))
                except ValueError:
                    severity = Severity.NOTICE
                self.notice(severity, match.group(2))
            else:
                self.notice(Severity.NOTICE, raw.strip())

    def get_setting(self, name: str) -> SettingInfo:
        """Read a setting from pg_settings."""
        rows = self.execute(
            "SELECT name, setting, context FROM pg_settings WHERE name = %s",
            (name,),
        )
        if not rows:
            return SettingInfo.unavailable(name)
        row = rows[0]
        return SettingInfo(
            name=name,
            value=row["setting"],
            available=True,
            settable=row["context"] in _SETTABLE_CONTEXTS,
        )

    def set_setting(self, name: str, value: str) -> None:
        """Set a session setting; reverted by rollback of the enclosing transaction."""
        self.execute("SELECT set_config(%s, %s, false)", (name, value))

    def notice(self, severity: Severity, message: str) -> None:
        forward_notice(__name__, severity, message)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit the enclosed block on success, roll it back on failure."""
        conn = self._ensure_connected()
        try:
            yield
        except BaseException:
            conn.rollback()
            raise
        conn.commit()

    def rollback(self) -> None:
        """Rollback the current transaction."""
        if self._conn:
            self._conn.rollback()

    def commit(self) -> None:
        """Commit the current transaction."""
        if self._conn:
            self._conn.commit()
