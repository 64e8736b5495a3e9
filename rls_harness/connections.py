"""
get_connections(): one call per suite.

    conns = get_connections(seeds=[seed.schema("db/app"), seed.json({...})])
    # beforeEach / afterEach
    conns.test_setup()
    conns.session.set_context({"role": "anon"})
    conns.session.any("SELECT * FROM app.pets")
    conns.test_teardown()
    # afterAll
    conns.teardown()

Order of work: fresh database -> admin + session connections -> seeds on the
admin connection (committed) -> suite transaction on the session connection.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, List

from rls_harness import seed
from rls_harness.client import PgTestClient
from rls_harness.config import PgConfig
from rls_harness.modules import PLAN_FILE
from rls_harness.pool import ConnectionManager
from rls_harness.seed import SeedContext, run_seeds

log = logging.getLogger(__name__)


@dataclass
class Connections:
    """The admin client, the session client, and the suite's lifecycle hooks."""

    admin: PgTestClient
    session: PgTestClient
    manager: ConnectionManager
    config: PgConfig
    seeds: List[Any] = field(default_factory=list)
    closed: bool = False

    # pg / db naming used by test suites ported from JS harnesses
    @property
    def pg(self):
        return self.admin

    @property
    def db(self):
        return self.session

    @property
    def database(self):
        return self.manager.database

    # ── Lifecycle hooks ──────────────────────────────────────────────

    def suite_setup(self):
        """Seed through the admin connection, then open the suite transaction."""
        ctx = SeedContext(
            admin=self.admin, session=self.session,
            config=self.config, manager=self.manager,
        )
        run_seeds(ctx, self.seeds)
        self.session.begin()

    def test_setup(self):
        self.session.before_each()

    def test_teardown(self):
        return self.session.after_each()

    def suite_teardown(self):
        """Roll back (or commit, when persisting) and release every connection."""
        if self.closed:
            return
        self.closed = True
        try:
            self.session.end(commit=self.config.persist)
        finally:
            self.manager.release_all()
        log.info("Suite on %s torn down", self.database)

    teardown = suite_teardown

    @contextmanager
    def isolated(self):
        """test_setup()/test_teardown() around one test body."""
        self.test_setup()
        try:
            yield self
        finally:
            self.test_teardown()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.teardown()


def default_seeds(cwd=None):
    """[seed.schema(cwd)] when *cwd* (default: the working directory) is a schema module."""
    cwd = cwd or os.getcwd()
    if os.path.isfile(os.path.join(cwd, PLAN_FILE)):
        return [seed.schema(cwd)]
    return []


def get_connections(config=None, seeds=None) -> Connections:
    """
    Build and set up a suite: returns Connections with the suite transaction open.

    *config* is a PgConfig, a dict of overrides applied to PgConfig.from_env(),
    or None for the environment defaults. *seeds* is an ordered list of seed steps;
    None deploys the schema module in the working directory when it has a
    sqitch.plan, and [] seeds nothing.
    On any setup failure every connection is released before the error propagates.
    """
    if config is None:
        config = PgConfig.from_env()
    elif isinstance(config, dict):
        config = PgConfig.from_env().merge(config)
    if seeds is None:
        seeds = default_seeds()

    manager = ConnectionManager(config)
    try:
        if config.fresh_database:
            manager.create_database()
        admin = PgTestClient(manager.acquire_admin(), config, name="admin", isolated=False)
        session = PgTestClient(manager.acquire_session(), config, name="session")
        conns = Connections(
            admin=admin, session=session, manager=manager,
            config=config, seeds=list(seeds),
        )
        conns.suite_setup()
    except BaseException:
        try:
            manager.release_all()
        except Exception:
            log.exception("Cleanup after failed suite setup also failed")
        raise
    log.info("Suite ready on %s (%d seed step(s))", manager.database, len(conns.seeds))
    return conns
