"""iterctl: driver for iterative computations run inside a SQL engine.

Components:
- sql:        typed statement templates (Identifier / Literal / Fragment)
- execution:  engine adapters (DuckDB, PostgreSQL/Greenplum) and factory
- guards:     scoped engine-setting guards (optimizer, hashagg, min severity)
- controller: IterationController with single-row, multi-column and
              dual-state strategies

Usage:
    from iterctl import IterationController, create_executor_from_dsn

    engine = create_executor_from_dsn(":memory:")
    with engine, engine.transaction():
        engine.execute("CREATE TABLE args AS SELECT 0.001 AS tol")
        with IterationController(engine, "args", "state", "DOUBLE") as it:
            while not it.test("_state IS NOT NULL AND _state < _args.tol"):
                it.update("COALESCE(_state, 1.0) / 2")
"""

__version__ = "0.1.0"

from .controller import ControllerState, IterationController, SeedMode, Strategy
from .errors import ConfigPermissionError, EngineQueryError, IterctlError, UsageError
from .execution import (
    Engine,
    SettingInfo,
    Severity,
    create_executor_from_dsn,
    create_executor_from_settings,
)
from .guards import (
    EngineCapabilities,
    ScopedSetting,
    SettingGuard,
    hashagg_control,
    min_severity,
    optimizer_control,
    run_guarded,
)
from .sql import Fragment, Identifier, Literal, SqlTemplate

__all__ = [
    "IterationController",
    "ControllerState",
    "SeedMode",
    "Strategy",
    "IterctlError",
    "ConfigPermissionError",
    "EngineQueryError",
    "UsageError",
    "Engine",
    "SettingInfo",
    "Severity",
    "create_executor_from_settings",
    "create_executor_from_dsn",
    "EngineCapabilities",
    "ScopedSetting",
    "SettingGuard",
    "hashagg_control",
    "min_severity",
    "optimizer_control",
    "run_guarded",
    "Fragment",
    "Identifier",
    "Literal",
    "SqlTemplate",
]
