"""
Transaction isolation engine.

One long-lived transaction per suite on the session connection, one savepoint
per test. Rolling the savepoint back after each test discards the test's
writes and its set_config() identity changes together; seeded rows were
committed by the admin connection beforehand and are never touched.

The connection must be in autocommit mode: the engine issues BEGIN /
SAVEPOINT / ROLLBACK TO itself so psycopg2 never opens an implicit
transaction behind its back.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import psycopg2
from psycopg2 import sql

from rls_harness.errors import IsolationError
from rls_harness.lifecycle import (
    BROKEN, SUITE_CLOSED, SUITE_OPEN, TEST_OPEN, UNOPENED, SuiteLifecycle,
)

log = logging.getLogger(__name__)

SAVEPOINT_PREFIX = "harness_test_"


@dataclass
class SavepointFrame:
    """A per-test checkpoint inside the suite transaction."""
    name: str
    depth: int
    context: Any = None         # IdentityContext active when the frame opened
    failed: bool = False
    error: Optional[BaseException] = None


class IsolationEngine:
    """
    Drives the suite lifecycle on one connection.

        engine = IsolationEngine(conn)
        engine.open_suite()
        engine.push(context)    # beforeEach
        ...                     # test body, depth == 1
        engine.pop()            # afterEach, always
        engine.close_suite()    # afterAll
    """

    lifecycle = SuiteLifecycle

    def __init__(self, conn):
        self.conn = conn
        self.state = self.lifecycle.initial
        self.frames = []
        self.broken_reason = None
        self._counter = 0

    @property
    def depth(self):
        return len(self.frames)

    @property
    def current_frame(self):
        return self.frames[-1] if self.frames else None

    @property
    def usable(self):
        return self.state not in (BROKEN, SUITE_CLOSED)

    # ── Lifecycle hooks ──────────────────────────────────────────────

    def open_suite(self):
        self._ensure_not_broken()
        self._transition(SUITE_OPEN)
        self._execute(sql.SQL("BEGIN"), fatal=True)
        log.debug("Suite transaction opened")

    def push(self, context=None):
        """Open this test's savepoint. Exactly one frame may be open at a time."""
        self._ensure_not_broken()
        self.lifecycle.validate_transition(self.state, TEST_OPEN)
        if self.frames:
            self.mark_broken(None, f"savepoint depth drift: {self.depth} frame(s) still open")
            raise IsolationError(
                f"Cannot open a test savepoint: {self.depth} frame(s) already open"
            )
        self._counter += 1
        frame = SavepointFrame(
            name=f"{SAVEPOINT_PREFIX}{self._counter}",
            depth=self.depth + 1,
            context=context,
        )
        self._execute(sql.SQL("SAVEPOINT {}").format(sql.Identifier(frame.name)), fatal=True)
        self.frames.append(frame)
        self.state = TEST_OPEN
        log.debug("SAVEPOINT %s", frame.name)
        return frame

    def pop(self):
        """Roll back and release this test's savepoint. Returns the closed frame."""
        self._ensure_not_broken()
        self.lifecycle.validate_transition(self.state, SUITE_OPEN)
        if self.depth != 1:
            self.mark_broken(None, f"savepoint depth drift: depth={self.depth}")
            raise IsolationError(f"Expected one open test frame, found {self.depth}")

        frame = self.frames[-1]
        if frame.failed:
            log.warning(
                "Rolling back %s after failed statement: %s", frame.name, frame.error
            )
        name = sql.Identifier(frame.name)
        self._execute(sql.SQL("ROLLBACK TO SAVEPOINT {}").format(name), fatal=True)
        self._execute(sql.SQL("RELEASE SAVEPOINT {}").format(name), fatal=True)
        self.frames.pop()
        self.state = SUITE_OPEN
        log.debug("ROLLBACK TO SAVEPOINT %s", frame.name)
        return frame

    def close_suite(self, commit=False):
        """End the suite transaction: ROLLBACK by default, COMMIT when persisting."""
        if self.state == SUITE_CLOSED:
            return
        self.lifecycle.validate_transition(self.state, SUITE_CLOSED)
        if self.state in (UNOPENED, BROKEN):
            self.state = SUITE_CLOSED
            self.frames.clear()
            return
        if self.state == TEST_OPEN:
            # never persist a half-finished test
            frame = self.frames[-1]
            self._execute(
                sql.SQL("ROLLBACK TO SAVEPOINT {}").format(sql.Identifier(frame.name)),
                fatal=True,
            )
        self._execute(sql.SQL("COMMIT" if commit else "ROLLBACK"), fatal=True)
        self.frames.clear()
        self.state = SUITE_CLOSED
        log.debug("Suite transaction %s", "committed" if commit else "rolled back")

    # ── Statement bookkeeping ────────────────────────────────────────

    def check_statement(self):
        """Called before every session statement."""
        self._ensure_not_broken()
        if self.state in (UNOPENED, SUITE_CLOSED):
            raise IsolationError(
                f"No suite transaction is open (state {self.state}); "
                f"statements on the session must run inside the suite"
            )
        if self.state == TEST_OPEN and self.depth != 1:
            self.mark_broken(None, f"savepoint depth drift: depth={self.depth}")
            raise IsolationError(f"Expected one open test frame, found {self.depth}")

    def record_failure(self, exc):
        """
        A statement raised. A dropped connection breaks the session; anything
        else (including statement_timeout cancellation) only fails the frame.
        Returns True when the session is now broken.
        """
        if self.conn.closed:
            self.mark_broken(exc, "connection lost")
            return True
        frame = self.current_frame
        if frame is not None and not frame.failed:
            frame.failed = True
            frame.error = exc
        return False

    def mark_broken(self, exc, reason):
        if self.state in (BROKEN, SUITE_CLOSED):
            return
        log.error("Session marked unusable: %s", reason)
        self.broken_reason = exc or IsolationError(reason)
        self.lifecycle.validate_transition(self.state, BROKEN)
        self.state = BROKEN

    # ── Internal ─────────────────────────────────────────────────────

    def _transition(self, to_state):
        self.lifecycle.validate_transition(self.state, to_state)
        self.state = to_state

    def _ensure_not_broken(self):
        if self.state == BROKEN:
            raise IsolationError(
                f"Session is unusable after an isolation failure: {self.broken_reason}"
            ) from self.broken_reason

    def _execute(self, statement, fatal=False):
        try:
            with self.conn.cursor() as cur:
                cur.execute(statement)
        except psycopg2.Error as exc:
            if fatal:
                self.mark_broken(exc, f"isolation statement failed: {exc}".strip())
                raise IsolationError(
                    f"Isolation statement failed: {exc}".strip()
                ) from exc
            raise
