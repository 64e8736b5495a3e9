"""
Identifier validation and role provisioning.

Role names and table names can't be bound as query parameters, so they are
validated here and quoted with psycopg2.sql before being interpolated.
"""

import logging
import re

from psycopg2 import sql

from rls_harness.errors import InvalidIdentifier

log = logging.getLogger(__name__)

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")
_MAX_IDENT_BYTES = 63


def validate_identifier(name, what="identifier"):
    """Reject anything that isn't a plain, unquoted Postgres identifier."""
    if not isinstance(name, str) or not _IDENT.match(name):
        raise InvalidIdentifier(f"Invalid {what}: {name!r}")
    if len(name.encode("utf-8")) > _MAX_IDENT_BYTES:
        raise InvalidIdentifier(f"{what.capitalize()} too long: {name!r}")
    return name


def is_plain_identifier(name):
    return isinstance(name, str) and bool(_IDENT.match(name))


def validate_setting_name(name):
    """A custom GUC name: two or more dot-separated identifiers."""
    if not isinstance(name, str):
        raise InvalidIdentifier(f"Invalid claim key: {name!r}")
    parts = name.split(".")
    if len(parts) < 2:
        raise InvalidIdentifier(
            f"Invalid claim key: {name!r} (expected a dotted name such as "
            f"'request.jwt.claim.sub')"
        )
    for part in parts:
        if not _IDENT.match(part):
            raise InvalidIdentifier(f"Invalid claim key: {name!r}")
    return name


def table_identifier(qualified):
    """'schema.table' (or 'table') -> psycopg2.sql.Identifier."""
    parts = qualified.split(".") if isinstance(qualified, str) else []
    if len(parts) not in (1, 2):
        raise InvalidIdentifier(f"Invalid table name: {qualified!r}")
    for part in parts:
        validate_identifier(part, "table name")
    return sql.Identifier(*parts)


def column_identifiers(columns):
    return sql.SQL(", ").join(
        sql.Identifier(validate_identifier(c, "column name")) for c in columns
    )


# ── Role provisioning ───────────────────────────────────────────────────────

ANON_ROLE = "anon"
AUTHENTICATED_ROLE = "authenticated"
SERVICE_ROLE = "service_role"
AUTHENTICATOR_ROLE = "authenticator"


def ensure_role(cur, name, attributes, password=None):
    """CREATE ROLE if missing, otherwise ALTER it to *attributes*. Idempotent."""
    validate_identifier(name, "role name")
    cur.execute("SELECT 1 FROM pg_roles WHERE rolname = %s", (name,))
    verb = "CREATE" if cur.fetchone() is None else "ALTER"
    statement = sql.SQL("{} ROLE {} {}").format(
        sql.SQL(verb), sql.Identifier(name), sql.SQL(attributes)
    )
    if password is not None:
        cur.execute(statement + sql.SQL(" PASSWORD %s"), (password,))
    else:
        cur.execute(statement)
    log.debug("%s ROLE %s", verb, name)


def bootstrap_roles(conn, session_user=AUTHENTICATOR_ROLE, session_password=None):
    """
    Create the emulated API roles and the session login that switches between
    them. Mirrors the Supabase role layout:

      anon, authenticated  NOLOGIN NOBYPASSRLS
      service_role         NOLOGIN BYPASSRLS
      <session_user>       LOGIN NOINHERIT, member of all three
    """
    conn.autocommit = True
    with conn.cursor() as cur:
        ensure_role(cur, ANON_ROLE, "NOLOGIN NOINHERIT NOBYPASSRLS")
        ensure_role(cur, AUTHENTICATED_ROLE, "NOLOGIN NOINHERIT NOBYPASSRLS")
        ensure_role(cur, SERVICE_ROLE, "NOLOGIN NOINHERIT BYPASSRLS")
        ensure_role(
            cur, session_user,
            "LOGIN NOINHERIT NOSUPERUSER NOCREATEDB NOCREATEROLE NOBYPASSRLS",
            password=session_password,
        )
        for role in (ANON_ROLE, AUTHENTICATED_ROLE, SERVICE_ROLE):
            cur.execute(
                sql.SQL("GRANT {} TO {}").format(
                    sql.Identifier(role), sql.Identifier(session_user)
                )
            )
