"""Tests for IterationController (single-row strategy) on DuckDB."""

import logging

import duckdb
import pytest

from iterctl.controller import ControllerState, IterationController, SeedMode
from iterctl.errors import EngineQueryError, UsageError
from iterctl.sql import Identifier, Literal, SqlTemplate


def _tables(engine) -> set[str]:
    return {row["table_name"] for row in engine.execute("SELECT table_name FROM duckdb_tables()")}


def _keys(ctl: IterationController) -> list[int]:
    return [row["_iteration"] for row in ctl.fetch_state_log()]


@pytest.fixture
def controller(duck):
    return IterationController(duck, "args", "state", "DOUBLE")


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:

    def test_states(self, controller):
        assert controller.state is ControllerState.UNINITIALIZED
        controller.enter()
        assert controller.state is ControllerState.ACTIVE
        assert controller.iteration == -1
        controller.exit()
        assert controller.state is ControllerState.TERMINATED

    def test_operations_require_active(self, controller):
        with pytest.raises(UsageError):
            controller.evaluate("1")
        with pytest.raises(UsageError):
            controller.update("1.0")
        controller.enter()
        controller.exit()
        with pytest.raises(UsageError):
            controller.test("TRUE")
        with pytest.raises(UsageError):
            controller.update("1.0")

    def test_enter_twice(self, controller):
        controller.enter()
        with pytest.raises(UsageError):
            controller.enter()

    def test_exit_before_enter(self, controller):
        with pytest.raises(UsageError):
            controller.exit()

    def test_enter_replaces_stale_state(self, duck):
        duck.execute("CREATE TEMP TABLE state (_iteration INTEGER, _state DOUBLE)")
        duck.execute("INSERT INTO state VALUES (7, 1.0)")
        with IterationController(duck, "args", "state", "DOUBLE") as ctl:
            assert ctl.fetch_state_log() == []

    def test_exit_keeps_state_log(self, duck):
        with IterationController(duck, "args", "state", "DOUBLE") as ctl:
            ctl.update("1.0")
        assert ctl.state is ControllerState.TERMINATED
        assert "state" in _tables(duck)
        assert _keys(ctl) == [0]

    def test_drop_state(self, duck):
        with IterationController(duck, "args", "state", "DOUBLE") as ctl:
            ctl.update("1.0")
            with pytest.raises(UsageError):
                ctl.drop_state()
        ctl.drop_state()
        assert "state" not in _tables(duck)

    def test_context_exit_on_error(self, duck):
        with pytest.raises(RuntimeError):
            with IterationController(duck, "args", "state", "DOUBLE") as ctl:
                raise RuntimeError("driver failed")
        assert ctl.state is ControllerState.TERMINATED

    def test_durable_table(self, duck):
        with IterationController(
            duck, "args", "main.state", "DOUBLE", temporary_tables=False
        ) as ctl:
            ctl.update("2.0")
        rows = duck.execute(
            "SELECT temporary FROM duckdb_tables() WHERE table_name = 'state'"
        )
        assert rows == [{"temporary": False}]

    def test_invalid_relation_name(self, duck):
        with pytest.raises(UsageError):
            IterationController(duck, "args", "a..b", "DOUBLE")


# =============================================================================
# Counter and state log
# =============================================================================

class TestUpdate:

    @pytest.mark.parametrize("k", [1, 2, 5])
    def test_counter_and_rows_without_truncation(self, duck, k):
        with IterationController(duck, "args", "state", "DOUBLE") as ctl:
            for i in range(k):
                assert ctl.update(f"{i}.5") == i
            assert ctl.iteration == k - 1
            assert _keys(ctl) == list(range(k))

    @pytest.mark.parametrize("k", [1, 2, 5])
    def test_counter_and_rows_with_truncation(self, duck, k):
        with IterationController(
            duck, "args", "state", "DOUBLE", truncate_after_update=True
        ) as ctl:
            for i in range(k):
                ctl.update(f"{i}.5")
            assert ctl.iteration == k - 1
            assert _keys(ctl) == [k - 1]

    def test_new_state_sees_previous_iteration(self, controller):
        controller.enter()
        for _ in range(3):
            controller.update("COALESCE(_state, 1.0) * 2")
        assert controller.evaluate("_state") == 8.0
        assert [r["_state"] for r in controller.fetch_state_log()] == [2.0, 4.0, 8.0]

    def test_new_state_sees_arguments(self, controller):
        controller.enter()
        controller.update("_args.threshold + _args.max_iter")
        assert controller.evaluate("_state") == 14.0

    def test_bindings(self, controller):
        controller.enter()
        controller.update("1.0")
        controller.update(
            "(SELECT max(_state) FROM {rel_state} WHERE _iteration <= {iteration}) + {step}",
            step=Literal(2),
        )
        assert controller.evaluate("_state") == 3.0

    def test_identifier_binding(self, duck, controller):
        duck.execute("CREATE TABLE offsets AS SELECT CAST(0.25 AS DOUBLE) AS delta")
        controller.enter()
        controller.update("(SELECT delta FROM {tbl})", tbl=Identifier("offsets"))
        assert controller.evaluate("_state") == 0.25

    def test_raw_binding_rejected(self, controller):
        controller.enter()
        with pytest.raises(UsageError):
            controller.update("{value}", value="1; DROP TABLE args")
        assert controller.iteration == -1

    def test_failed_update_does_not_advance(self, controller):
        controller.enter()
        controller.update("1.0")
        with pytest.raises(EngineQueryError) as exc_info:
            controller.update("no_such_column + 1")
        assert isinstance(exc_info.value.__cause__, duckdb.Error)
        assert "no_such_column" in exc_info.value.sql
        assert controller.iteration == 0

    def test_brace_literal_without_bindings(self, duck):
        with IterationController(duck, "args", "state", "VARCHAR") as ctl:
            ctl.update("'{1,2}'")
            assert ctl.evaluate("_state") == "{1,2}"

    def test_struct_literal_without_bindings(self, duck):
        with IterationController(duck, "args", "state", "STRUCT(a INTEGER)") as ctl:
            ctl.update("{'a': 7}")
            assert ctl.evaluate("struct_extract(_state, 'a')") == 7

    def test_template_opts_into_placeholders(self, controller):
        controller.enter()
        controller.update("2.0")
        controller.update(SqlTemplate("(SELECT max(_state) FROM {rel_state}) + 1"))
        assert controller.evaluate("_state") == 3.0


# =============================================================================
# Evaluate / test
# =============================================================================

class TestEvaluate:

    def test_round_trip(self, controller):
        controller.enter()
        controller.update("CAST(0.1 AS DOUBLE) + CAST(0.2 AS DOUBLE)")
        stored = controller.fetch_state_log()[0]["_state"]
        assert controller.evaluate("_state") == stored

    def test_idempotent(self, controller):
        controller.enter()
        controller.update("3.0")
        first = controller.evaluate("_state * _args.max_iter")
        assert controller.evaluate("_state * _args.max_iter") == first
        assert controller.test("_state < 4") is controller.test("_state < 4")

    def test_no_state_yet_is_null(self, controller):
        controller.enter()
        assert controller.evaluate("_state") is None
        assert controller.test("_state > 4") is None

    def test_arguments_visible_before_update(self, controller):
        controller.enter()
        assert controller.evaluate("_args.max_iter") == 10

    def test_empty_arguments_is_undetermined(self, duck):
        duck.execute("CREATE TABLE no_args (max_iter INTEGER)")
        with IterationController(duck, "no_args", "state", "DOUBLE") as ctl:
            assert ctl.evaluate("1") is None
            assert ctl.test("TRUE") is None

    def test_test_returns_bool(self, controller):
        controller.enter()
        controller.update("5.0")
        assert controller.test("_state > 4") is True
        assert controller.test("_state > _args.max_iter") is False

    def test_driver_loop(self, controller):
        with controller as ctl:
            while not ctl.test("_state IS NOT NULL AND _state < 0.1"):
                ctl.update("COALESCE(_state, 1.0) / 2")
        assert ctl.iteration == 3

    def test_engine_error_propagates(self, controller):
        controller.enter()
        with pytest.raises(EngineQueryError):
            controller.evaluate("missing_column")


# =============================================================================
# Seeding
# =============================================================================

class TestSeed:

    def test_seed_row_without_advancing(self, duck):
        with IterationController(duck, "args", "state", "DOUBLE", seed_state=True) as ctl:
            assert ctl.iteration == -1
            assert ctl.fetch_state_log() == [{"_iteration": 0, "_state": None}]

    def test_supplement_keeps_seed(self, duck):
        with IterationController(duck, "args", "state", "DOUBLE", seed_state=True) as ctl:
            assert ctl.update("5.0") == 1
            assert _keys(ctl) == [0, 1]
            assert ctl.iteration == 1
            assert ctl.test("_state > 4") is True

    def test_supplement_second_update(self, duck):
        with IterationController(duck, "args", "state", "DOUBLE", seed_state=True) as ctl:
            ctl.update("5.0")
            assert ctl.update("_state + 1") == 2
            assert ctl.evaluate("_state") == 6.0

    def test_overwrite_replaces_seed(self, duck):
        with IterationController(
            duck, "args", "state", "DOUBLE",
            seed_state=True, seed_mode=SeedMode.OVERWRITE,
        ) as ctl:
            assert ctl.update("5.0") == 0
            assert ctl.fetch_state_log() == [{"_iteration": 0, "_state": 5.0}]

    def test_seed_truncated_after_first_update(self, duck):
        with IterationController(
            duck, "args", "state", "DOUBLE",
            seed_state=True, truncate_after_update=True,
        ) as ctl:
            ctl.update("5.0")
            assert _keys(ctl) == [1]

    def test_seed_visible_to_evaluate(self, duck):
        with IterationController(duck, "args", "state", "DOUBLE", seed_state=True) as ctl:
            assert ctl.evaluate("_state IS NULL") is True


# =============================================================================
# Transactions and notices
# =============================================================================

class TestAmbient:

    def test_rollback_discards_run(self, duck):
        ctl = IterationController(duck, "args", "state", "DOUBLE", temporary_tables=False)
        with pytest.raises(EngineQueryError):
            with duck.transaction():
                ctl.enter()
                ctl.update("1.0")
                ctl.update("bogus")
        assert "state" not in _tables(duck)

    def test_commit_keeps_run(self, duck):
        ctl = IterationController(duck, "args", "state", "DOUBLE", temporary_tables=False)
        with duck.transaction():
            with ctl:
                ctl.update("1.0")
                ctl.update("_state + 1")
        assert [r["_state"] for r in duck.execute("SELECT _state FROM state ORDER BY 1")] == [1.0, 2.0]

    def test_verbose_emits_statements(self, duck, caplog):
        caplog.set_level(logging.INFO, logger="iterctl.execution.duckdb_executor")
        with IterationController(duck, "args", "state", "DOUBLE", verbose=True) as ctl:
            ctl.update("1.0")
        assert "DROP TABLE IF EXISTS state" in caplog.text
        assert "INSERT INTO state" in caplog.text

    def test_quiet_by_default(self, duck, caplog):
        caplog.set_level(logging.INFO, logger="iterctl.execution.duckdb_executor")
        with IterationController(duck, "args", "state", "DOUBLE") as ctl:
            ctl.update("1.0")
        assert "INSERT INTO state" not in caplog.text
