"""
Connection management for one suite.

Each suite gets its own admin connection and its own session pool, and by
default its own freshly created database, so concurrent suites never share
seeded state or in-flight DDL.
"""

import logging
import uuid

import psycopg2
import psycopg2.pool
from psycopg2 import sql

from rls_harness.config import ADMIN, SESSION, PgConfig
from rls_harness.errors import HarnessConnectionError
from rls_harness.schema import validate_identifier

log = logging.getLogger(__name__)


def connect(config, role, database=None):
    """psycopg2.connect() that fails fast with HarnessConnectionError."""
    kwargs = config.connect_kwargs(role, database=database)
    try:
        return psycopg2.connect(**kwargs)
    except psycopg2.OperationalError as exc:
        target = config.describe(kwargs["dbname"])
        raise HarnessConnectionError(
            f"Cannot connect to {target} as {kwargs['user']}: {exc}".strip(),
            target=target,
        ) from exc


class ConnectionManager:
    """
    Owns every connection a suite uses.

        manager = ConnectionManager(config)
        manager.create_database()          # optional fresh baseline
        admin = manager.acquire_admin()
        session = manager.acquire_session()
        ...
        manager.release_all()              # closes everything, drops the database
    """

    def __init__(self, config=None):
        self.config = config or PgConfig()
        self.database = self.config.database
        self.created_database = False
        self._admin = None
        self._session_pool = None
        self._sessions = []

    # ── Database provisioning ────────────────────────────────────────

    def create_database(self):
        """CREATE DATABASE <prefix><random> [TEMPLATE ...]. Returns its name."""
        name = f"{self.config.database_prefix}{uuid.uuid4().hex[:12]}"
        validate_identifier(name, "database name")
        statement = sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name))
        if self.config.template:
            statement += sql.SQL(" TEMPLATE {}").format(
                sql.Identifier(validate_identifier(self.config.template, "template"))
            )

        conn = connect(self.config, ADMIN)
        try:
            conn.autocommit = True
            with conn.cursor() as cur:
                cur.execute(statement)
        finally:
            conn.close()

        self.database = name
        self.created_database = True
        log.info("Created database %s", name)
        return name

    def drop_database(self):
        if not self.created_database:
            return
        name = self.database
        if self.config.keep_database:
            log.info("Keeping database %s for inspection", name)
            return
        conn = connect(self.config, ADMIN)
        try:
            conn.autocommit = True
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = %s AND pid <> pg_backend_pid()",
                    (name,),
                )
                cur.execute(
                    sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name))
                )
        finally:
            conn.close()
        self.created_database = False
        log.info("Dropped database %s", name)

    # ── Acquisition ──────────────────────────────────────────────────

    def acquire_admin(self):
        """The suite's privileged connection. Autocommit; one per suite."""
        if self._admin is None or self._admin.closed:
            self._admin = connect(self.config, ADMIN, database=self.database)
            self._admin.autocommit = True
        return self._admin

    def acquire_session(self):
        """A restricted-role connection from the suite's pool."""
        if self._session_pool is None:
            kwargs = self.config.connect_kwargs(SESSION, database=self.database)
            try:
                self._session_pool = psycopg2.pool.SimpleConnectionPool(
                    0, self.config.max_sessions, **kwargs
                )
            except psycopg2.OperationalError as exc:
                raise HarnessConnectionError(str(exc), target=self.config.describe(self.database)) from exc
        try:
            conn = self._session_pool.getconn()
        except psycopg2.pool.PoolError as exc:
            raise HarnessConnectionError(
                f"Session pool exhausted ({self.config.max_sessions} connections)",
                target=self.config.describe(self.database),
            ) from exc
        except psycopg2.OperationalError as exc:
            target = self.config.describe(self.database)
            raise HarnessConnectionError(
                f"Cannot connect to {target} as {self.config.session_user}: {exc}".strip(),
                target=target,
            ) from exc
        self._sessions.append(conn)
        return conn

    def release_all(self):
        """Close every connection, then drop the fresh database if one was made."""
        if self._session_pool is not None:
            for conn in self._sessions:
                if not conn.closed and not self._session_pool.closed:
                    self._session_pool.putconn(conn, close=True)
            self._session_pool.closeall()
            self._session_pool = None
        self._sessions = []
        if self._admin is not None:
            if not self._admin.closed:
                self._admin.close()
            self._admin = None
        self.drop_database()

    @property
    def session_pool(self):
        """The raw psycopg2 pool, for seed functions that need extra connections."""
        return self._session_pool
