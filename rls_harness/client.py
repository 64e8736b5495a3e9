"""
PgTestClient: a connection with an emulated identity and a savepoint stack.

The session client runs every statement inside the suite transaction, under
the current IdentityContext. The admin client is a plain autocommit
connection for schema setup, seeding and out-of-band checks; it never
impersonates anyone.

Usage:
    db.before_each()
    db.set_context({"role": "authenticated", "request.jwt.claim.sub": uid})
    pets = db.many("SELECT id FROM rls_test.pets")
    db.after_each()
"""

import logging
from contextlib import contextmanager

import psycopg2
import psycopg2.extras

from rls_harness import loaders
from rls_harness.config import PgConfig
from rls_harness.context import ROLE_KEY, IdentityContext
from rls_harness.errors import CardinalityError, HarnessError, IsolationError
from rls_harness.isolation import IsolationEngine

log = logging.getLogger(__name__)


class QueryResult:
    """Driver-shaped result: rows plus the affected/returned row count."""

    def __init__(self, rows, row_count, status=None):
        self.rows = rows
        self.row_count = row_count
        self.status = status

    def __iter__(self):
        return iter(self.rows)

    def __len__(self):
        return len(self.rows)

    def __getitem__(self, index):
        return self.rows[index]

    def __repr__(self):
        return f"QueryResult(row_count={self.row_count}, status={self.status!r})"


class PgTestClient:
    """
    Wraps a psycopg2 connection with cardinality-checked query helpers.

    isolated=True:  session client, suite transaction + per-test savepoints,
                    identity emulation through set_context()/clear_context().
    isolated=False: admin client, autocommit, no identity emulation.
    """

    def __init__(self, conn, config=None, name="session", isolated=True):
        self.conn = conn
        self.config = config or PgConfig()
        self.name = name
        self.conn.autocommit = True
        psycopg2.extras.register_uuid(conn_or_curs=conn)

        self.isolation = IsolationEngine(conn) if isolated else None
        # never-set and cleared are the same identity: anonymous
        self._context = IdentityContext.anonymous(self.config.anon_role)
        self._context_dirty = isolated
        self._applied_keys = set()

    def __repr__(self):
        state = self.isolation.state if self.isolation else "autocommit"
        return f"<PgTestClient {self.name} {state}>"

    # ── Identity ─────────────────────────────────────────────────────

    @property
    def context(self) -> IdentityContext:
        return self._context

    def set_context(self, ctx=None, **claims):
        """
        Replace the emulated identity. Not a merge: claims from the previous
        context are cleared unless repeated here.

            db.set_context({"role": "authenticated", "request.jwt.claim.sub": uid})
            db.set_context(role="service_role")
        """
        self._require_isolation("set_context")
        mapping = dict(ctx or {})
        mapping.update(claims)
        self._swap_context(IdentityContext.from_mapping(mapping))

    def clear_context(self):
        """Back to the anonymous role with no claims."""
        self._require_isolation("clear_context")
        self._swap_context(IdentityContext.anonymous(self.config.anon_role))

    def _swap_context(self, new_context):
        self._context = new_context
        self._context_dirty = True
        log.debug("%s context -> %s", self.name, new_context.as_dict())

    def _apply_context(self, cur):
        if not self._context_dirty:
            return
        pairs = self._context.settings(
            default_role=self.config.default_role or self.config.anon_role,
            stale_keys=self._applied_keys,
        )
        placeholders = ", ".join("set_config(%s, %s, true)" for _ in pairs)
        params = [item for pair in pairs for item in pair]
        cur.execute(f"SELECT {placeholders}", params)
        self._applied_keys.update(k for k, _ in pairs if k != ROLE_KEY)
        self._context_dirty = False

    # ── Queries ──────────────────────────────────────────────────────

    def query(self, sql, params=None) -> QueryResult:
        """Run a statement and return rows + row count (for UPDATE/DELETE counts)."""
        return self._run(sql, params)

    def any(self, sql, params=None):
        """Zero or more rows, no cardinality check."""
        return self._run(sql, params).rows

    def many(self, sql, params=None):
        """One or more rows. Raises CardinalityError on zero."""
        rows = self._run(sql, params).rows
        if not rows:
            raise CardinalityError("at least 1", 0, sql)
        return rows

    def one(self, sql, params=None):
        """Exactly one row. Raises CardinalityError on zero or several."""
        rows = self._run(sql, params).rows
        if len(rows) != 1:
            raise CardinalityError(1, len(rows), sql)
        return rows[0]

    def one_or_none(self, sql, params=None):
        """Zero or one row. Returns None when nothing matched."""
        rows = self._run(sql, params).rows
        if len(rows) > 1:
            raise CardinalityError("0 or 1", len(rows), sql)
        return rows[0] if rows else None

    def _run(self, sql, params):
        if self.isolation is not None:
            self.isolation.check_statement()
        try:
            with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                if self.isolation is not None:
                    self._apply_context(cur)
                cur.execute(sql, params)
                rows = [dict(r) for r in cur.fetchall()] if cur.description else []
                return QueryResult(rows, cur.rowcount, cur.statusmessage)
        except psycopg2.Error as exc:
            self._statement_failed(exc)
            raise

    def _statement_failed(self, exc):
        if self.isolation is not None and self.isolation.record_failure(exc):
            raise IsolationError(f"{self.name} connection lost: {exc}".strip()) from exc

    # ── Test lifecycle ───────────────────────────────────────────────

    def begin(self):
        """Open the suite transaction (beforeAll)."""
        self._require_isolation("begin")
        self.isolation.open_suite()

    def before_each(self):
        """Open this test's savepoint (beforeEach)."""
        self._require_isolation("before_each")
        self.isolation.push(self._context)

    def after_each(self):
        """Roll back this test's savepoint and its identity changes (afterEach)."""
        self._require_isolation("after_each")
        frame = self.isolation.pop()
        self._context = frame.context
        self._context_dirty = True
        return frame

    def end(self, commit=False):
        """Close the suite transaction (afterAll). Rolls back unless *commit*."""
        if self.isolation is not None:
            self.isolation.close_suite(commit=commit)

    @contextmanager
    def isolated(self):
        """before_each()/after_each() around a block, whatever the block raises."""
        self.before_each()
        try:
            yield self
        finally:
            self.after_each()

    # ── Loading ──────────────────────────────────────────────────────

    @contextmanager
    def cursor(self):
        """
        A cursor for bulk work. On the admin client the block is its own
        transaction; on the session client it runs inside the current frame.
        """
        if self.isolation is not None:
            self.isolation.check_statement()
            try:
                with self.conn.cursor() as cur:
                    self._apply_context(cur)
                    yield cur
            except psycopg2.Error as exc:
                self._statement_failed(exc)
                raise
            return

        old_autocommit = self.conn.autocommit
        self.conn.autocommit = False
        try:
            with self.conn.cursor() as cur:
                yield cur
            self.conn.commit()
        except Exception:
            if not self.conn.closed:
                self.conn.rollback()
            raise
        finally:
            if not self.conn.closed:
                self.conn.autocommit = old_autocommit

    def load_csv(self, mapping):
        """{'schema.table': path} -> rows loaded per table."""
        with self.cursor() as cur:
            return loaders.load_csv(cur, mapping)

    def load_json(self, mapping):
        """{'schema.table': [row, ...]} -> rows inserted per table."""
        with self.cursor() as cur:
            return loaders.load_json(cur, mapping)

    def load_sql(self, paths):
        with self.cursor() as cur:
            loaders.load_sql(cur, paths)

    # ── Internal ─────────────────────────────────────────────────────

    def _require_isolation(self, operation):
        if self.isolation is None:
            raise HarnessError(
                f"{operation}() is only available on the session client; "
                f"the {self.name} client runs unisolated as its login role"
            )

    def close(self):
        """Close the database connection."""
        if self.conn and not self.conn.closed:
            self.conn.close()
