"""
Transactional test harness for PostgreSQL row-level-security policies.
"""

from rls_harness import seed
from rls_harness.client import PgTestClient, QueryResult
from rls_harness.config import PgConfig
from rls_harness.connections import Connections, get_connections
from rls_harness.context import IdentityContext
from rls_harness.errors import (
    CardinalityError, HarnessConnectionError, HarnessError, InvalidIdentifier,
    IsolationError, PolicyDenied, SeedError,
)
