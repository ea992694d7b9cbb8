"""Engine adapters for iterctl.

Executor imports are lazy and only loaded when accessed. This allows running
against a single engine without installing drivers for all engines
(psycopg2, duckdb).
"""

from .base import Engine, SettingInfo, Severity
from .factory import create_executor_from_dsn, create_executor_from_settings


def __getattr__(name: str):
    """Lazy import for concrete executor classes."""
    if name == "DuckDBExecutor":
        from .duckdb_executor import DuckDBExecutor
        return DuckDBExecutor
    if name == "PostgresExecutor":
        from .postgres_executor import PostgresExecutor
        return PostgresExecutor
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    # Executors (lazy)
    "DuckDBExecutor",
    "PostgresExecutor",
    # Protocol and types
    "Engine",
    "SettingInfo",
    "Severity",
    # Factory functions
    "create_executor_from_dsn",
    "create_executor_from_settings",
]
