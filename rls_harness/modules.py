"""
Schema modules: ordered DDL deployed before any data is loaded.

A module is a directory laid out like a sqitch project:

    my_module/
        sqitch.plan
        deploy/
            schemas/app.sql
            schemas/app/tables/pets.sql

The plan lists one change per line, optionally followed by its
dependencies in brackets; anything after that is ignored:

    %project=my_module
    schemas/app 2024-01-01T00:00:00Z dev <dev@example.com> # schema
    schemas/app/tables/pets [schemas/app] 2024-01-01T00:00:00Z dev <dev@example.com>

Changes deploy in dependency order, ties broken by plan order. Deployed
changes are recorded in harness_migrate.changes, so deploying the same
module twice against one database is a no-op.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import List

from rls_harness.loaders import read_sql

log = logging.getLogger(__name__)

PLAN_FILE = "sqitch.plan"
DEPLOY_DIR = "deploy"

_CHANGE_LINE = re.compile(r"^(?P<name>[^\s\[]+)\s*(?:\[(?P<requires>[^\]]*)\])?")


class PlanError(ValueError):
    """Malformed plan, unknown dependency, or dependency cycle."""


@dataclass
class Change:
    name: str
    requires: List[str] = field(default_factory=list)


@dataclass
class SchemaModule:
    project: str
    path: str
    changes: List[Change]

    def script(self, change):
        return os.path.join(self.path, DEPLOY_DIR, f"{change.name}.sql")


def parse_plan(text, default_project=None):
    """Return (project, [Change, ...]) from sqitch.plan contents."""
    project = default_project
    changes = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("%"):
            key, _, value = line[1:].partition("=")
            if key.strip() == "project":
                project = value.strip()
            continue
        if line.startswith("@"):
            continue  # tag
        match = _CHANGE_LINE.match(line)
        if match is None:
            raise PlanError(f"Line {lineno}: cannot parse change: {raw!r}")
        requires = (match.group("requires") or "").split()
        changes.append(Change(name=match.group("name"), requires=requires))
    return project, changes


def deploy_order(changes):
    """Topological order over requires, stable with respect to plan order."""
    by_name = {c.name: c for c in changes}
    ordered = []
    done = set()
    visiting = []

    def visit(change):
        if change.name in done:
            return
        if change.name in visiting:
            cycle = " -> ".join(visiting[visiting.index(change.name):] + [change.name])
            raise PlanError(f"Dependency cycle: {cycle}")
        visiting.append(change.name)
        for dep in change.requires:
            if ":" in dep:
                # cross-project requirement, satisfied by another module step
                continue
            if dep not in by_name:
                raise PlanError(f"Change {change.name!r} requires unknown change {dep!r}")
            visit(by_name[dep])
        visiting.pop()
        done.add(change.name)
        ordered.append(change)

    for change in changes:
        visit(change)
    return ordered


def load_module(path):
    """Read a module directory's plan."""
    path = os.fspath(path)
    plan_path = os.path.join(path, PLAN_FILE)
    if not os.path.isfile(plan_path):
        raise PlanError(f"No {PLAN_FILE} in {path}")
    with open(plan_path, encoding="utf-8") as f:
        project, changes = parse_plan(
            f.read(), default_project=os.path.basename(os.path.normpath(path))
        )
    return SchemaModule(project=project, path=path, changes=changes)


_TRACKING_DDL = """
CREATE SCHEMA IF NOT EXISTS harness_migrate;
CREATE TABLE IF NOT EXISTS harness_migrate.changes (
    project     TEXT NOT NULL,
    change      TEXT NOT NULL,
    deployed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (project, change)
);
"""


def deploy_module(cur, module):
    """Deploy every not-yet-deployed change of *module*. Returns the names deployed."""
    ordered = deploy_order(module.changes)
    cur.execute(_TRACKING_DDL)
    cur.execute(
        "SELECT change FROM harness_migrate.changes WHERE project = %s",
        (module.project,),
    )
    already = {row[0] for row in cur.fetchall()}

    deployed = []
    for change in ordered:
        if change.name in already:
            continue
        script = module.script(change)
        if not os.path.isfile(script):
            raise PlanError(f"Missing deploy script for {change.name!r}: {script}")
        text = read_sql(script)
        if text.strip():
            cur.execute(text)
        cur.execute(
            "INSERT INTO harness_migrate.changes (project, change) VALUES (%s, %s)",
            (module.project, change.name),
        )
        deployed.append(change.name)
        log.debug("Deployed %s:%s", module.project, change.name)

    log.info(
        "Module %s: %d change(s) deployed, %d already present",
        module.project, len(deployed), len(already),
    )
    return deployed
