"""
pytest integration.

Enable in a conftest.py:

    pytest_plugins = ["rls_harness.pytest_plugin"]

Then declare a suite per test module:

    from rls_harness import seed
    from rls_harness.pytest_plugin import connections_fixture

    conns = connections_fixture("conns", seeds=[seed.schema(MODULE_DIR)])

    @pytest.fixture(autouse=True)
    def _isolate(conns):
        with conns.isolated():
            yield

When PGHOST is set the suites run against that server (see PgConfig.from_env);
otherwise one embedded server is started for the whole session.
"""

import os
import tempfile

import pytest

from rls_harness.config import PgConfig
from rls_harness.connections import get_connections


@pytest.fixture(scope="session")
def pg_server():
    """Embedded PostgreSQL, or None when PGHOST points at an external server."""
    if os.environ.get("PGHOST"):
        yield None
        return
    from rls_harness.server import TestDatabaseServer

    tmp_dir = tempfile.mkdtemp(prefix="rls_harness_")
    srv = TestDatabaseServer(data_dir=tmp_dir)
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture(scope="session")
def pg_config(pg_server):
    if pg_server is None:
        return PgConfig.from_env()
    return pg_server.config()


def connections_fixture(name, seeds=None, scope="module", **overrides):
    """Build a fixture that sets up a suite with *seeds* and tears it down after."""

    def _connections(pg_config):
        conns = get_connections(pg_config.merge(overrides), seeds)
        yield conns
        conns.teardown()

    _connections.__name__ = name
    return pytest.fixture(scope=scope, name=name)(_connections)
