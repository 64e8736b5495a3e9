"""
Embedded PostgreSQL for running RLS suites without external infrastructure.

pgserver ships pip-installable Postgres binaries. The server started here gets
the emulated API roles, and its pg_hba.conf is rewritten so only the bootstrap
superuser skips authentication; the session login has to use its password,
the same as against a real deployment.

    with TestDatabaseServer(data_dir) as srv:
        conns = get_connections(srv.config(), seeds)
"""

import logging
import os
import urllib.parse

import pgserver
import psycopg2

from rls_harness.config import PgConfig
from rls_harness.schema import AUTHENTICATOR_ROLE, bootstrap_roles

log = logging.getLogger(__name__)

DEFAULT_DATA_DIR = os.path.join(os.getcwd(), ".pgdata", "rls_harness")

SESSION_PASSWORD = "authenticator_secret"  # local test cluster only

_HBA_TEMPLATE = """\
# TYPE  DATABASE  USER           ADDRESS        METHOD
local   all       {superuser}                   trust
local   all       all                           scram-sha-256
host    all       all            127.0.0.1/32   scram-sha-256
host    all       all            ::1/128        scram-sha-256
"""


class TestDatabaseServer:
    """A private Postgres cluster with anon / authenticated / service_role provisioned."""

    __test__ = False

    def __init__(self, data_dir=None, session_user=AUTHENTICATOR_ROLE,
                 session_password=None):
        self.data_dir = os.path.abspath(data_dir or DEFAULT_DATA_DIR)
        self.session_user = session_user
        self.session_password = session_password or SESSION_PASSWORD
        self._pg = None
        self._uri = None

    @property
    def superuser(self):
        parsed = urllib.parse.urlparse(self._require_started())
        return parsed.username or os.getenv("USER", "postgres")

    def start(self):
        """Start (or reattach to) the cluster, provision roles, lock down auth."""
        os.makedirs(self.data_dir, exist_ok=True)
        self._pg = pgserver.get_server(self.data_dir)
        self._uri = self._pg.get_uri()

        conn = psycopg2.connect(self._uri)
        try:
            bootstrap_roles(conn, self.session_user, self.session_password)
            if self._write_hba():
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_reload_conf()")
                log.info("Reloaded pg_hba.conf for %s", self.data_dir)
        finally:
            conn.close()

        log.info("Embedded PostgreSQL ready in %s", self.data_dir)
        return self

    def _write_hba(self):
        """Rewrite pg_hba.conf when it differs. Returns True if it changed."""
        path = os.path.join(self.data_dir, "pg_hba.conf")
        wanted = _HBA_TEMPLATE.format(superuser=self.superuser)
        if os.path.exists(path):
            with open(path) as f:
                if f.read().strip() == wanted.strip():
                    return False
        with open(path, "w") as f:
            f.write(wanted)
        return True

    def _require_started(self):
        if self._uri is None:
            raise RuntimeError("TestDatabaseServer.start() has not been called")
        return self._uri

    def conn_info(self):
        """host (socket directory), port and database of the running cluster."""
        parsed = urllib.parse.urlparse(self._require_started())
        query = urllib.parse.parse_qs(parsed.query)
        return {
            "host": query.get("host", ["/tmp"])[0],
            "port": parsed.port or 5432,
            "dbname": parsed.path.lstrip("/") or "postgres",
        }

    def config(self, **overrides) -> PgConfig:
        """A PgConfig pointing the harness at this cluster."""
        info = self.conn_info()
        return PgConfig(
            host=info["host"],
            port=info["port"],
            database=info["dbname"],
            admin_user=self.superuser,
            session_user=self.session_user,
            session_password=self.session_password,
        ).merge(overrides)

    def stop(self):
        if self._pg is not None:
            self._pg.cleanup()
        self._pg = None
        self._uri = None

    def __enter__(self):
        return self.start()

    def __exit__(self, *args):
        self.stop()
