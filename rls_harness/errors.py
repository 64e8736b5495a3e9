"""
Harness error taxonomy.

Fatal errors (connection, seeding, isolation) abort the suite.
CardinalityError and ordinary database errors stay local to the failing test.
Permission / RLS denials are never special-cased: psycopg2 raises them and the
harness lets them through so tests can assert on them.
"""

import psycopg2.errors


class HarnessError(Exception):
    """Base class for every error raised by the harness itself."""


class HarnessConnectionError(HarnessError, ConnectionError):
    """Database unreachable, authentication refused, or pool exhausted."""

    def __init__(self, message, target=None):
        self.target = target
        super().__init__(message)


class SeedError(HarnessError):
    """Raised when a seed step fails. Aborts the suite before any test runs."""

    def __init__(self, step, index, cause):
        self.step = step
        self.index = index
        self.cause = cause
        super().__init__(
            f"Seed step #{index} ({step.describe()}) failed: {cause}"
        )


class CardinalityError(HarnessError):
    """Raised when one()/many()/one_or_none() get an unexpected row count."""

    def __init__(self, expected, actual, sql):
        self.expected = expected
        self.actual = actual
        self.sql = sql
        super().__init__(
            f"Expected {expected} row(s), got {actual}: {_shorten(sql)}"
        )


class IsolationError(HarnessError):
    """A savepoint or suite transaction could not be managed.

    Once raised for a dropped connection or failed rollback the session is
    permanently unusable.
    """


class InvalidTransition(IsolationError):
    """Raised when a lifecycle hook is called out of order."""

    def __init__(self, from_state, to_state, allowed):
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed
        super().__init__(
            f"Cannot transition from '{from_state}' to '{to_state}'. "
            f"Allowed: {allowed}"
        )


class InvalidIdentifier(HarnessError, ValueError):
    """A role name or claim key that cannot be safely sent to Postgres."""


# Surfaced verbatim from the driver, aliased for readable assertions.
PolicyDenied = psycopg2.errors.InsufficientPrivilege


def _shorten(sql, limit=120):
    text = " ".join(str(sql).split())
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text
