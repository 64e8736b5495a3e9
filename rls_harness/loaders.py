"""
Bulk loaders used by the seed pipeline and by PgTestClient.load_*().

All loaders take an open cursor on the admin connection and leave
transaction control to the caller.
"""

import csv
import dataclasses
import json
import logging
import os
import uuid
from datetime import date, datetime, time
from decimal import Decimal

from psycopg2 import sql
from psycopg2.extras import Json, execute_values

from rls_harness.schema import column_identifiers, table_identifier

log = logging.getLogger(__name__)


class JSONEncoder(json.JSONEncoder):
    """Handles datetime, date, time, Decimal, UUID and dataclass values."""

    def default(self, obj):
        if isinstance(obj, (datetime, date, time)):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return dataclasses.asdict(obj)
        return super().default(obj)


def _dumps(obj):
    return json.dumps(obj, cls=JSONEncoder)


# ── CSV ──────────────────────────────────────────────────────────────────────

def read_csv_header(path):
    """Column names from the first line of a CSV file."""
    with open(path, newline="", encoding="utf-8") as f:
        try:
            header = next(csv.reader(f))
        except StopIteration:
            raise ValueError(f"CSV file is empty: {path}") from None
    columns = [c.strip() for c in header]
    if not columns or any(not c for c in columns):
        raise ValueError(f"CSV header has blank column names: {path}")
    return columns


def copy_csv(cur, table, path):
    """COPY one CSV file into *table*. Returns the number of rows loaded."""
    path = os.fspath(path)
    columns = read_csv_header(path)
    statement = sql.SQL(
        "COPY {} ({}) FROM STDIN WITH (FORMAT csv, HEADER true)"
    ).format(table_identifier(table), column_identifiers(columns))
    with open(path, newline="", encoding="utf-8") as f:
        cur.copy_expert(statement.as_string(cur), f)
    log.debug("Loaded %d row(s) into %s from %s", cur.rowcount, table, path)
    return cur.rowcount


def load_csv(cur, mapping):
    """{'schema.table': path, ...} -> {'schema.table': rows_loaded}, in mapping order."""
    return {table: copy_csv(cur, table, path) for table, path in mapping.items()}


# ── JSON ─────────────────────────────────────────────────────────────────────

def union_columns(rows):
    """Union of the rows' keys, in first-seen order."""
    columns = []
    seen = set()
    for row in rows:
        if not isinstance(row, dict):
            raise TypeError(f"JSON seed rows must be objects, got {type(row).__name__}")
        for key in row:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def _adapt(value):
    # dicts and lists go to json/jsonb columns, same as dict/list claim values
    if isinstance(value, (dict, list)):
        return Json(value, dumps=_dumps)
    return value


def insert_rows(cur, table, rows):
    """INSERT one row per dict. Missing keys become NULL. Returns the row count."""
    rows = list(rows)
    if not rows:
        return 0
    columns = union_columns(rows)
    if not columns:
        # rows of {} -> all defaults
        statement = sql.SQL("INSERT INTO {} DEFAULT VALUES").format(
            table_identifier(table)
        )
        for _ in rows:
            cur.execute(statement)
        return len(rows)

    statement = sql.SQL("INSERT INTO {} ({}) VALUES %s").format(
        table_identifier(table), column_identifiers(columns)
    )
    values = [tuple(_adapt(row.get(c)) for c in columns) for row in rows]
    execute_values(cur, statement.as_string(cur), values, page_size=500)
    log.debug("Inserted %d row(s) into %s", len(values), table)
    return len(values)


def load_json(cur, mapping):
    """{'schema.table': [row, ...], ...} -> {'schema.table': rows_inserted}."""
    return {table: insert_rows(cur, table, rows) for table, rows in mapping.items()}


# ── SQL files ────────────────────────────────────────────────────────────────

def read_sql(path):
    with open(os.fspath(path), encoding="utf-8") as f:
        return f.read()


def run_sql_file(cur, path):
    """Execute a file's statements verbatim, as a single simple-query batch."""
    text = read_sql(path)
    if text.strip():
        cur.execute(text)
    log.debug("Executed %s", path)


def load_sql(cur, paths):
    if isinstance(paths, (str, os.PathLike)):
        paths = [paths]
    for path in paths:
        run_sql_file(cur, path)
