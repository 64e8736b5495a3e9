"""
Tests for the suite lifecycle state machine and the savepoint stack,
driven against a fake connection that records statements.
"""

import psycopg2
import pytest
from psycopg2 import sql

from rls_harness.errors import InvalidTransition, IsolationError
from rls_harness.isolation import IsolationEngine
from rls_harness.lifecycle import (
    BROKEN, SUITE_CLOSED, SUITE_OPEN, TEST_OPEN, UNOPENED, SuiteLifecycle,
)


# ── Fake connection ──────────────────────────────────────────────────────────

def _render(statement):
    if isinstance(statement, sql.Composed):
        return "".join(_render(part) for part in statement.seq)
    if isinstance(statement, sql.Identifier):
        return ".".join(f'"{s}"' for s in statement.strings)
    if isinstance(statement, sql.SQL):
        return statement.string
    return str(statement)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def execute(self, statement, params=None):
        text = _render(statement)
        self.conn.statements.append(text)
        for prefix, exc in self.conn.failures:
            if text.startswith(prefix):
                if self.conn.drop_on_failure:
                    self.conn.closed = 2
                raise exc


class FakeConnection:
    def __init__(self):
        self.statements = []
        self.failures = []
        self.drop_on_failure = False
        self.closed = 0

    def cursor(self, **kwargs):
        return FakeCursor(self)

    def fail_on(self, prefix, exc=None):
        self.failures.append((prefix, exc or psycopg2.OperationalError("server closed the connection")))


@pytest.fixture()
def conn():
    return FakeConnection()


@pytest.fixture()
def engine(conn):
    return IsolationEngine(conn)


# ── State machine ────────────────────────────────────────────────────────────

class TestSuiteLifecycle:
    def test_initial_state(self):
        assert SuiteLifecycle.initial == UNOPENED

    @pytest.mark.parametrize("from_state,to_state", [
        (UNOPENED, SUITE_OPEN),
        (SUITE_OPEN, TEST_OPEN),
        (TEST_OPEN, SUITE_OPEN),
        (SUITE_OPEN, SUITE_CLOSED),
        (TEST_OPEN, SUITE_CLOSED),
        (TEST_OPEN, BROKEN),
        (BROKEN, SUITE_CLOSED),
    ])
    def test_valid_edges(self, from_state, to_state):
        t = SuiteLifecycle.validate_transition(from_state, to_state)
        assert (t.from_state, t.to_state) == (from_state, to_state)

    @pytest.mark.parametrize("from_state,to_state", [
        (UNOPENED, TEST_OPEN),
        (TEST_OPEN, TEST_OPEN),
        (SUITE_CLOSED, SUITE_OPEN),
        (BROKEN, SUITE_OPEN),
        (SUITE_CLOSED, TEST_OPEN),
    ])
    def test_invalid_edges(self, from_state, to_state):
        with pytest.raises(InvalidTransition) as exc_info:
            SuiteLifecycle.validate_transition(from_state, to_state)
        assert exc_info.value.from_state == from_state
        assert exc_info.value.allowed == SuiteLifecycle.allowed_transitions(from_state)

    def test_invalid_transition_is_isolation_error(self):
        with pytest.raises(IsolationError):
            SuiteLifecycle.validate_transition(UNOPENED, TEST_OPEN)


# ── Savepoint stack ──────────────────────────────────────────────────────────

class TestIsolationEngine:
    def test_full_cycle_statements(self, engine, conn):
        engine.open_suite()
        engine.push("ctx-1")
        engine.pop()
        engine.push("ctx-2")
        engine.pop()
        engine.close_suite()
        assert conn.statements == [
            "BEGIN",
            'SAVEPOINT "harness_test_1"',
            'ROLLBACK TO SAVEPOINT "harness_test_1"',
            'RELEASE SAVEPOINT "harness_test_1"',
            'SAVEPOINT "harness_test_2"',
            'ROLLBACK TO SAVEPOINT "harness_test_2"',
            'RELEASE SAVEPOINT "harness_test_2"',
            "ROLLBACK",
        ]
        assert engine.state == SUITE_CLOSED

    def test_depth_is_one_during_test(self, engine):
        engine.open_suite()
        frame = engine.push()
        assert engine.depth == 1
        assert frame.depth == 1
        assert engine.state == TEST_OPEN
        engine.check_statement()
        engine.pop()
        assert engine.depth == 0

    def test_pop_returns_context_snapshot(self, engine):
        engine.open_suite()
        engine.push("snapshot")
        assert engine.pop().context == "snapshot"

    def test_push_before_suite_open(self, engine):
        with pytest.raises(InvalidTransition):
            engine.push()

    def test_pop_without_push(self, engine):
        engine.open_suite()
        with pytest.raises(InvalidTransition):
            engine.pop()

    def test_nested_push_rejected(self, engine):
        engine.open_suite()
        engine.push()
        with pytest.raises(InvalidTransition):
            engine.push()

    def test_depth_drift_breaks_session(self, engine):
        engine.open_suite()
        engine.push()
        engine.frames.append(engine.frames[0])  # simulate a leaked frame
        with pytest.raises(IsolationError):
            engine.check_statement()
        assert engine.state == BROKEN

    def test_statement_before_suite(self, engine):
        with pytest.raises(IsolationError):
            engine.check_statement()

    def test_statement_after_suite(self, engine):
        engine.open_suite()
        engine.close_suite()
        with pytest.raises(IsolationError):
            engine.check_statement()

    def test_commit_on_persist(self, engine, conn):
        engine.open_suite()
        engine.close_suite(commit=True)
        assert conn.statements[-1] == "COMMIT"

    def test_close_with_open_test_discards_it(self, engine, conn):
        engine.open_suite()
        engine.push()
        engine.close_suite(commit=True)
        assert conn.statements[-2:] == [
            'ROLLBACK TO SAVEPOINT "harness_test_1"',
            "COMMIT",
        ]
        assert engine.depth == 0

    def test_close_twice_is_noop(self, engine, conn):
        engine.open_suite()
        engine.close_suite()
        engine.close_suite()
        assert conn.statements.count("ROLLBACK") == 1

    def test_close_unopened_sends_nothing(self, engine, conn):
        engine.close_suite()
        assert conn.statements == []
        assert engine.state == SUITE_CLOSED


class TestIsolationFailures:
    def test_failed_rollback_breaks_session(self, engine, conn):
        engine.open_suite()
        engine.push()
        conn.fail_on("ROLLBACK TO SAVEPOINT")
        with pytest.raises(IsolationError):
            engine.pop()
        assert engine.state == BROKEN
        assert not engine.usable

    def test_broken_session_refuses_everything(self, engine, conn):
        engine.open_suite()
        engine.push()
        conn.fail_on("ROLLBACK TO SAVEPOINT")
        with pytest.raises(IsolationError):
            engine.pop()
        with pytest.raises(IsolationError):
            engine.check_statement()
        with pytest.raises(IsolationError):
            engine.push()
        with pytest.raises(IsolationError):
            engine.pop()

    def test_broken_session_can_be_closed(self, engine, conn):
        engine.open_suite()
        engine.push()
        conn.fail_on("ROLLBACK TO SAVEPOINT")
        with pytest.raises(IsolationError):
            engine.pop()
        sent = len(conn.statements)
        engine.close_suite()
        assert engine.state == SUITE_CLOSED
        assert len(conn.statements) == sent

    def test_statement_error_fails_frame_only(self, engine):
        engine.open_suite()
        frame = engine.push()
        exc = psycopg2.errors.QueryCanceled("canceling statement due to statement timeout")
        assert engine.record_failure(exc) is False
        assert frame.failed
        assert frame.error is exc
        assert engine.state == TEST_OPEN
        engine.pop()
        assert engine.state == SUITE_OPEN

    def test_first_error_is_kept(self, engine):
        engine.open_suite()
        frame = engine.push()
        first = psycopg2.errors.QueryCanceled("first")
        engine.record_failure(first)
        engine.record_failure(psycopg2.errors.InFailedSqlTransaction("second"))
        assert frame.error is first

    def test_dropped_connection_breaks_session(self, engine, conn):
        engine.open_suite()
        engine.push()
        conn.closed = 2
        assert engine.record_failure(psycopg2.OperationalError("gone")) is True
        assert engine.state == BROKEN

    def test_failed_begin_breaks_session(self, engine, conn):
        conn.fail_on("BEGIN")
        conn.drop_on_failure = True
        with pytest.raises(IsolationError):
            engine.open_suite()
        assert engine.state == BROKEN
