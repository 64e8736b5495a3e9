"""
Seed pipeline: the baseline every test in a suite starts from.

    from rls_harness import seed

    steps = [
        seed.schema("db/modules/app"),
        seed.json({"auth.users": users, "app.pets": pets}),
        seed.csv({"app.toys": "data/toys.csv"}),
        seed.sqlfile(["data/extra.sql"]),
        seed.fn(lambda ctx: ctx.admin.query("ANALYZE")),
    ]

Steps run strictly in list order on the admin connection, before the suite
transaction opens, so their rows are committed and survive every per-test
rollback. The first failing step raises SeedError and nothing after it runs.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from rls_harness import loaders
from rls_harness.errors import SeedError
from rls_harness.modules import deploy_module, load_module

log = logging.getLogger(__name__)

SCHEMA = "schema-module"
CSV = "csv"
JSON = "json"
SQL_FILE = "sql-file"
FUNCTION = "function"


# ── Step variants ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SchemaModuleSeed:
    path: Optional[str] = None
    apply: Optional[Callable] = None
    kind: str = SCHEMA

    def describe(self):
        if self.path is not None:
            return f"{self.kind} {self.path}"
        return f"{self.kind} {getattr(self.apply, '__name__', 'callable')}"


@dataclass(frozen=True)
class CsvSeed:
    tables: Mapping[str, str]
    kind: str = CSV

    def describe(self):
        return f"{self.kind} {', '.join(self.tables)}"


@dataclass(frozen=True)
class JsonSeed:
    tables: Mapping[str, Sequence[dict]]
    kind: str = JSON

    def describe(self):
        return f"{self.kind} {', '.join(self.tables)}"


@dataclass(frozen=True)
class SqlFileSeed:
    paths: Sequence[str]
    kind: str = SQL_FILE

    def describe(self):
        return f"{self.kind} {', '.join(os.path.basename(p) for p in self.paths)}"


@dataclass(frozen=True)
class FunctionSeed:
    callback: Callable
    kind: str = FUNCTION

    def describe(self):
        return f"{self.kind} {getattr(self.callback, '__name__', 'callable')}"


@dataclass
class SeedContext:
    """What a function seed gets to work with."""
    admin: Any
    session: Any = None
    config: Any = None
    manager: Any = None

    @property
    def pg(self):
        return self.admin

    @property
    def db(self):
        return self.session


# ── Factories ────────────────────────────────────────────────────────────────

def schema(path=None, apply=None):
    """
    Deploy a schema module directory (the working directory when neither
    argument is given), or call apply(admin_client) for an external tool.
    """
    if path is not None and apply is not None:
        raise ValueError("seed.schema() takes path= or apply=, not both")
    if path is None and apply is None:
        path = os.getcwd()
    return SchemaModuleSeed(path=os.fspath(path) if path is not None else None, apply=apply)


def csv(tables):
    return CsvSeed(tables={t: os.fspath(p) for t, p in tables.items()})


def json(tables):
    return JsonSeed(tables={t: list(rows) for t, rows in tables.items()})


def sqlfile(paths):
    if isinstance(paths, (str, os.PathLike)):
        paths = [paths]
    return SqlFileSeed(paths=tuple(os.fspath(p) for p in paths))


def fn(callback):
    if not callable(callback):
        raise TypeError(f"seed.fn() needs a callable, got {type(callback).__name__}")
    return FunctionSeed(callback=callback)


# ── Dispatcher ───────────────────────────────────────────────────────────────

def _run_schema(step, ctx):
    if step.apply is not None:
        step.apply(ctx.admin)
        return
    module = load_module(step.path)
    with ctx.admin.cursor() as cur:
        deploy_module(cur, module)


def _run_csv(step, ctx):
    with ctx.admin.cursor() as cur:
        loaders.load_csv(cur, step.tables)


def _run_json(step, ctx):
    with ctx.admin.cursor() as cur:
        loaders.load_json(cur, step.tables)


def _run_sql_file(step, ctx):
    # one transaction per file, in order
    for path in step.paths:
        with ctx.admin.cursor() as cur:
            loaders.run_sql_file(cur, path)


def _run_function(step, ctx):
    step.callback(ctx)


_HANDLERS = {
    SCHEMA: _run_schema,
    CSV: _run_csv,
    JSON: _run_json,
    SQL_FILE: _run_sql_file,
    FUNCTION: _run_function,
}


def run_seeds(ctx, steps):
    """Run *steps* in order against ctx.admin. Raises SeedError on the first failure."""
    steps = list(steps or [])
    for index, step in enumerate(steps):
        handler = _HANDLERS.get(getattr(step, "kind", None))
        if handler is None:
            raise SeedError(_Unknown(step), index, TypeError(f"not a seed step: {step!r}"))
        log.info("Seed %d/%d: %s", index + 1, len(steps), step.describe())
        try:
            handler(step, ctx)
        except SeedError:
            raise
        except Exception as exc:
            raise SeedError(step, index, exc) from exc


@dataclass(frozen=True)
class _Unknown:
    value: Any

    def describe(self):
        return type(self.value).__name__
