"""
Connection settings for the harness.

Defaults follow libpq: PGHOST / PGPORT / PGDATABASE / PGUSER / PGPASSWORD
describe the privileged (admin) login. The restricted session login that tests
run under comes from RLS_SESSION_USER / RLS_SESSION_PASSWORD.
"""

import dataclasses
import os
from dataclasses import dataclass
from typing import Optional


ADMIN = "admin"
SESSION = "session"


@dataclass(frozen=True)
class PgConfig:
    host: str = "localhost"
    port: int = 5432
    database: str = "postgres"

    # Superuser / BYPASSRLS login: schema setup, seeding, out-of-band checks
    admin_user: str = "postgres"
    admin_password: Optional[str] = None

    # Login role of the session connection. Must be a member of every role a
    # test switches to (Supabase's "authenticator" pattern).
    session_user: str = "authenticator"
    session_password: Optional[str] = None

    connect_timeout: int = 5
    statement_timeout_ms: int = 30000

    anon_role: str = "anon"
    default_role: Optional[str] = None

    fresh_database: bool = True
    template: Optional[str] = None
    database_prefix: str = "rls_test_"
    keep_database: bool = False

    persist: bool = False
    max_sessions: int = 2

    @classmethod
    def from_env(cls, environ=None) -> "PgConfig":
        """Build a config from libpq-style environment variables."""
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            host=env.get("PGHOST", defaults.host),
            port=int(env.get("PGPORT", defaults.port)),
            database=env.get("PGDATABASE", defaults.database),
            admin_user=env.get("PGUSER", defaults.admin_user),
            admin_password=env.get("PGPASSWORD", defaults.admin_password),
            session_user=env.get("RLS_SESSION_USER", defaults.session_user),
            session_password=env.get(
                "RLS_SESSION_PASSWORD", defaults.session_password
            ),
            connect_timeout=int(
                env.get("RLS_CONNECT_TIMEOUT", defaults.connect_timeout)
            ),
            statement_timeout_ms=int(
                env.get("RLS_STATEMENT_TIMEOUT_MS", defaults.statement_timeout_ms)
            ),
        )

    def merge(self, overrides=None) -> "PgConfig":
        """Return a copy with *overrides* applied. Unknown keys raise TypeError."""
        if not overrides:
            return self
        return dataclasses.replace(self, **overrides)

    def connect_kwargs(self, role=SESSION, database=None) -> dict:
        """Keyword arguments for psycopg2.connect() as *role* ("admin"/"session")."""
        if role == ADMIN:
            user, password = self.admin_user, self.admin_password
        elif role == SESSION:
            user, password = self.session_user, self.session_password
        else:
            raise ValueError(f"Unknown connection role: {role!r}")

        kwargs = {
            "host": self.host,
            "port": self.port,
            "dbname": database or self.database,
            "user": user,
            "connect_timeout": self.connect_timeout,
            "application_name": f"rls_harness_{role}",
        }
        if password is not None:
            kwargs["password"] = password
        # seeding on the admin login is not bounded by the per-test timeout
        if role == SESSION and self.statement_timeout_ms:
            kwargs["options"] = f"-c statement_timeout={int(self.statement_timeout_ms)}"
        return kwargs

    def describe(self, database=None) -> str:
        """host:port/db for log and error messages (never includes passwords)."""
        return f"{self.host}:{self.port}/{database or self.database}"
