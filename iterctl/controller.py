"""Iteration controller: state log persistence for iterative SQL algorithms.

An algorithm driver binds the controller to an argument relation (one row of
run parameters) and a state relation, then drives the loop:

    with IterationController(engine, "args", "state", "DOUBLE PRECISION") as it:
        while not it.test("_state IS NOT NULL AND _state < _args.tolerance"):
            it.update("COALESCE(_state, 0) / 2")

Every expression is evaluated in one scope: the argument row as ``_args``
left-joined to the state row of the current iteration. The state value is
exposed according to the strategy:

  - SINGLE_ROW:    ``_state`` is the single state column
  - MULTI_COLUMN:  the state row's columns, also qualified as ``_state.<col>``
  - DUAL_STATE:    ``_state_previous`` and ``_state_current`` hold the rows
                   at iteration - 1 and iteration; update() sees ``_state``
                   as in SINGLE_ROW

The controller never begins or commits a transaction. Everything it writes
belongs to the caller's unit of work, and any EngineQueryError propagates
unchanged.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import Settings, get_settings
from .errors import UsageError
from .execution.base import Engine, Severity
from .guards import EngineCapabilities, min_severity, optimizer_control
from .schemas import ControllerState, SeedMode, Strategy
from .sql import Fragment, Identifier, Literal, SqlTemplate

logger = logging.getLogger(__name__)


# ── Statement templates ───────────────────────────────────────────────────

_DROP_STATE = SqlTemplate("DROP TABLE IF EXISTS {rel_state}")

_CREATE_STATE = SqlTemplate(
    "CREATE {temp}TABLE {rel_state} (\n"
    "    _iteration INTEGER PRIMARY KEY,\n"
    "    {columns}\n"
    ")"
)

_SEED_STATE = SqlTemplate("INSERT INTO {rel_state} (_iteration) VALUES ({iteration})")

_EVALUATE = SqlTemplate(
    "SELECT ({expression}) AS expression\n"
    "FROM {rel_args} AS _args\n"
    "LEFT OUTER JOIN ({lookup}) AS {alias} ON TRUE"
)

_INSERT_STATE = SqlTemplate(
    "INSERT INTO {rel_state}\n"
    "SELECT {next_iteration}, {new_state}\n"
    "FROM {rel_args} AS _args\n"
    "LEFT OUTER JOIN ({lookup}) AS {alias} ON TRUE"
)

_DELETE_ITERATION = SqlTemplate("DELETE FROM {rel_state} WHERE _iteration = {iteration}")

_TRUNCATE_BEFORE = SqlTemplate("DELETE FROM {rel_state} WHERE _iteration < {iteration}")

_FETCH_STATE = SqlTemplate("SELECT * FROM {rel_state} ORDER BY _iteration")

# Per-strategy lookup of the state row(s) at a given iteration
_LOOKUP = {
    Strategy.SINGLE_ROW: SqlTemplate(
        "SELECT _state FROM {rel_state} WHERE _iteration = {iteration}"
    ),
    Strategy.MULTI_COLUMN: SqlTemplate(
        "SELECT * FROM {rel_state} WHERE _iteration = {iteration}"
    ),
    Strategy.DUAL_STATE: SqlTemplate(
        "SELECT _prev._state AS _state_previous, _cur._state AS _state_current\n"
        "    FROM (SELECT _state FROM {rel_state} WHERE _iteration = {previous}) AS _prev\n"
        "    CROSS JOIN (SELECT _state FROM {rel_state} WHERE _iteration = {iteration}) AS _cur"
    ),
}

_LOOKUP_ALIAS = {
    Strategy.SINGLE_ROW: Identifier("_log"),
    Strategy.MULTI_COLUMN: Identifier("_state"),
    Strategy.DUAL_STATE: Identifier("_log"),
}


class IterationController:
    """Drive an iterative computation whose state lives in an engine table.

    Args:
        engine: Engine providing query, settings and notice capabilities.
        rel_args: Relation holding the single argument row.
        rel_state: Relation to (re)create as the state log.
        state_type: Engine type of ``_state`` (single-row, dual-state), or
            the column definitions of the state row (multi-column).
        strategy: State retrieval strategy.
        temporary_tables: Create the state log as a temporary table. The
            CREATE uses the unqualified name, as temporary tables live in a
            session schema.
        truncate_after_update: Keep only the newest state row (the newest
            two under dual-state).
        seed_state: Insert a null state at iteration 0 on enter.
        seed_mode: How the first update treats the seed row.
        verbose: Emit every statement as an engine notice.
        capabilities: Pre-probed engine capabilities; probed here if omitted.
    """

    def __init__(
        self,
        engine: Engine,
        rel_args: str,
        rel_state: str,
        state_type: str,
        *,
        strategy: Strategy = Strategy.SINGLE_ROW,
        temporary_tables: bool = True,
        truncate_after_update: bool = False,
        seed_state: bool = False,
        seed_mode: SeedMode = SeedMode.SUPPLEMENT,
        verbose: bool = False,
        capabilities: Optional[EngineCapabilities] = None,
    ):
        self.engine = engine
        self.rel_args = Identifier(rel_args)
        self.rel_state = Identifier(rel_state)
        self.state_type = state_type
        self.strategy = Strategy(strategy)
        self.temporary_tables = temporary_tables
        self.truncate_after_update = truncate_after_update
        self.seed_state = seed_state
        self.seed_mode = SeedMode(seed_mode)
        self.verbose = verbose
        self.capabilities = capabilities or EngineCapabilities.probe(engine)

        self._state = ControllerState.UNINITIALIZED
        self._iteration = -1
        self._seeded = False

    @classmethod
    def from_settings(
        cls,
        engine: Engine,
        rel_args: str,
        rel_state: str,
        state_type: str,
        settings: Optional[Settings] = None,
        **overrides: Any,
    ) -> "IterationController":
        """Build a controller whose policy flags default from Settings."""
        settings = settings or get_settings()
        policy: dict[str, Any] = {
            "temporary_tables": settings.temporary_tables,
            "truncate_after_update": settings.truncate_after_update,
            "seed_state": settings.seed_state,
            "seed_mode": settings.seed_mode,
            "verbose": settings.verbose,
        }
        policy.update(overrides)
        return cls(engine, rel_args, rel_state, state_type, **policy)

    # ── Properties ────────────────────────────────────────────────────────

    @property
    def iteration(self) -> int:
        """Last committed iteration, -1 before the first update."""
        return self._iteration

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def dialect(self) -> str:
        return self.engine.dialect

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def enter(self) -> "IterationController":
        """Drop and recreate the state log, then become ACTIVE."""
        if self._state is not ControllerState.UNINITIALIZED:
            raise UsageError(f"Cannot enter controller in state {self._state.value}")

        create_name = (
            Identifier(self.rel_state.unqualified) if self.temporary_tables else self.rel_state
        )
        if self.strategy is Strategy.MULTI_COLUMN:
            columns = Fragment(self.state_type)
        else:
            columns = Fragment(f"_state {self.state_type}")

        with min_severity(self.engine, Severity.WARNING, capabilities=self.capabilities):
            self._run(_DROP_STATE, rel_state=self.rel_state)
            self._run(
                _CREATE_STATE,
                temp=Fragment("TEMPORARY " if self.temporary_tables else ""),
                rel_state=create_name,
                columns=columns,
            )

        if self.seed_state:
            self._run(_SEED_STATE, rel_state=self.rel_state, iteration=Literal(0))
            self._seeded = True

        self._state = ControllerState.ACTIVE
        logger.info(
            f"Iteration controller active on {self.rel_state.name} "
            f"({self.strategy.value}, seeded={self._seeded})"
        )
        return self

    def exit(self) -> None:
        """Mark the controller TERMINATED; the state log is left in place."""
        if self._state is not ControllerState.ACTIVE:
            raise UsageError(f"Cannot exit controller in state {self._state.value}")
        self._state = ControllerState.TERMINATED
        logger.info(f"Iteration controller on {self.rel_state.name} done at iteration {self._iteration}")

    def __enter__(self) -> "IterationController":
        return self.enter()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._state is ControllerState.ACTIVE:
            self.exit()

    # ── Iteration ─────────────────────────────────────────────────────────

    def evaluate(self, expression: str) -> Optional[Any]:
        """Evaluate an expression against the arguments and current state.

        Returns the scalar result, or None when the query yields no row.
        None means undetermined, not false.
        """
        self._require_active()
        key = self._current_key()

        if self.strategy is Strategy.DUAL_STATE:
            if key < 0:
                raise UsageError("Dual-state evaluate requires at least one update")
            if key == 0:
                logger.debug("Dual-state evaluate at iteration 0: no previous state")
                return None

        # Outer join on ON TRUE trips a known optimizer defect; use the legacy planner
        with optimizer_control(self.engine, False, capabilities=self.capabilities):
            rows = self._run(
                _EVALUATE,
                expression=Fragment(expression),
                rel_args=self.rel_args,
                lookup=self._lookup(key),
                alias=_LOOKUP_ALIAS[self.strategy],
            )
        if not rows:
            return None
        return rows[0]["expression"]

    def test(self, condition: str) -> Optional[bool]:
        """Evaluate a condition as boolean; None means keep iterating."""
        result = self.evaluate(f"CAST(({condition}) AS BOOLEAN)")
        return None if result is None else bool(result)

    def update(self, new_state: str | SqlTemplate, **bindings: Any) -> int:
        """Append the next state row and advance the iteration counter.

        ``new_state`` is evaluated in the same scope as ``evaluate`` but
        against the state of the current (pre-increment) iteration. A plain
        string without bindings is spliced verbatim, so brace literals such
        as ``'{1,2}'::float8[]`` need no escaping.

        Placeholders are substituted when keyword bindings are given or
        ``new_state`` is a SqlTemplate. Then ``{name}`` is bound to an
        Identifier, Literal or Fragment value; ``rel_args``, ``rel_state``
        and ``iteration`` are always available, and literal braces must be
        doubled.

        Returns the new iteration number.
        """
        self._require_active()
        current = self._current_key()
        next_key = self._next_key()

        if bindings or isinstance(new_state, SqlTemplate):
            template = new_state if isinstance(new_state, SqlTemplate) else SqlTemplate(new_state)
            scope = {
                "rel_args": self.rel_args,
                "rel_state": self.rel_state,
                "iteration": Literal(current),
            }
            scope.update(bindings)
            sql = template.render(self.dialect, **scope)
        else:
            sql = new_state
        if self.strategy is Strategy.MULTI_COLUMN:
            expression = Fragment(sql)
        else:
            expression = Fragment(f"({sql})")

        if self._seeded and next_key == 0:
            # first update replaces the seed row
            self._run(_DELETE_ITERATION, rel_state=self.rel_state, iteration=Literal(0))

        self._run(
            _INSERT_STATE,
            rel_state=self.rel_state,
            next_iteration=Literal(next_key),
            new_state=expression,
            rel_args=self.rel_args,
            lookup=self._lookup(current, self._update_strategy),
            alias=_LOOKUP_ALIAS[self._update_strategy],
        )
        self._iteration = next_key
        self._seeded = False

        if self.truncate_after_update:
            self._run(
                _TRUNCATE_BEFORE,
                rel_state=self.rel_state,
                iteration=Literal(self._oldest_kept_key()),
            )

        logger.debug(f"{self.rel_state.name}: iteration {next_key} written")
        return next_key

    # ── Inspection / cleanup ──────────────────────────────────────────────

    def fetch_state_log(self) -> list[dict[str, Any]]:
        """Return all state log rows ordered by iteration."""
        if self._state is ControllerState.UNINITIALIZED:
            raise UsageError("State log does not exist before enter()")
        return self._run(_FETCH_STATE, rel_state=self.rel_state)

    def drop_state(self) -> None:
        """Drop the state log after the run; it is kept by default."""
        if self._state is not ControllerState.TERMINATED:
            raise UsageError("drop_state() is only allowed after exit()")
        with min_severity(self.engine, Severity.WARNING, capabilities=self.capabilities):
            self._run(_DROP_STATE, rel_state=self.rel_state)

    # ── Internals ─────────────────────────────────────────────────────────

    def _require_active(self) -> None:
        if self._state is not ControllerState.ACTIVE:
            raise UsageError(
                f"Operation requires an active controller (state: {self._state.value})"
            )

    def _current_key(self) -> int:
        """Iteration whose state row expressions currently see."""
        if self._iteration < 0 and self._seeded:
            return 0
        return self._iteration

    def _next_key(self) -> int:
        if self._iteration < 0 and self._seeded and self.seed_mode is SeedMode.SUPPLEMENT:
            return 1
        return self._iteration + 1

    def _oldest_kept_key(self) -> int:
        """Lowest iteration truncation keeps; dual-state needs the previous row."""
        if self.strategy is Strategy.DUAL_STATE:
            return self._iteration - 1
        return self._iteration

    @property
    def _update_strategy(self) -> Strategy:
        """Strategy whose scope new-state expressions see.

        Dual-state only changes what evaluate() exposes; updates read the
        single previous state as ``_state``.
        """
        if self.strategy is Strategy.DUAL_STATE:
            return Strategy.SINGLE_ROW
        return self.strategy

    def _lookup(self, key: int, strategy: Optional[Strategy] = None) -> Fragment:
        sql = _LOOKUP[strategy or self.strategy].render(
            self.dialect,
            rel_state=self.rel_state,
            iteration=Literal(key),
            previous=Literal(key - 1),
        )
        return Fragment(sql)

    def _run(self, template: SqlTemplate, **bindings: Any) -> list[dict[str, Any]]:
        sql = template.render(self.dialect, **bindings)
        if self.verbose:
            self.engine.notice(Severity.NOTICE, sql)
        logger.debug(sql)
        return self.engine.execute(sql)
