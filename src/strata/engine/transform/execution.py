"""Materialization strategies: view, table, incremental.

Each strategy takes a cursor and a compiled model and returns
``(duration_ms, row_count)``. The set is closed; ``STRATEGIES`` is the only
dispatch point.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import duckdb

from strata.engine.database import relation_columns
from strata.engine.errors import ExecutionError

from .models import CompiledModel, Relation

logger = logging.getLogger("strata.transform")

Strategy = Callable[[duckdb.DuckDBPyConnection, CompiledModel, bool], tuple[int, int]]


def _existing_type(conn: duckdb.DuckDBPyConnection, relation: Relation) -> str | None:
    """Return 'BASE TABLE', 'VIEW', or None if the relation does not exist."""
    sql = (
        "SELECT table_type FROM information_schema.tables "
        "WHERE table_schema = ? AND table_name = ?"
    )
    params = [relation.schema, relation.name]
    if relation.catalog:
        sql += " AND table_catalog = ?"
        params.append(relation.catalog)
    row = conn.execute(sql, params).fetchone()
    return row[0] if row else None


def _drop_if_other_kind(conn: duckdb.DuckDBPyConnection, relation: Relation, wanted: str) -> None:
    """DuckDB refuses CREATE OR REPLACE across object kinds; drop a stale one first."""
    existing = _existing_type(conn, relation)
    if existing is None or existing == wanted:
        return
    kind = "VIEW" if existing == "VIEW" else "TABLE"
    logger.info("Replacing %s %s with a %s", kind.lower(), relation, "view" if wanted == "VIEW" else "table")
    conn.execute(f"DROP {kind} {relation}")


def _row_count(conn: duckdb.DuckDBPyConnection, relation: Relation) -> int:
    result = conn.execute(f"SELECT count(*) FROM {relation}").fetchone()
    return result[0] if result else 0


def materialize_view(
    conn: duckdb.DuckDBPyConnection,
    compiled: CompiledModel,
    full_refresh: bool = False,
) -> tuple[int, int]:
    start = time.perf_counter()
    _drop_if_other_kind(conn, compiled.relation, "VIEW")
    conn.execute(f"CREATE OR REPLACE VIEW {compiled.relation} AS\n{compiled.sql}")
    return int((time.perf_counter() - start) * 1000), 0


def materialize_table(
    conn: duckdb.DuckDBPyConnection,
    compiled: CompiledModel,
    full_refresh: bool = False,
) -> tuple[int, int]:
    start = time.perf_counter()
    _drop_if_other_kind(conn, compiled.relation, "BASE TABLE")
    conn.execute(f"CREATE OR REPLACE TABLE {compiled.relation} AS\n{compiled.sql}")
    duration_ms = int((time.perf_counter() - start) * 1000)
    return duration_ms, _row_count(conn, compiled.relation)


def materialize_incremental(
    conn: duckdb.DuckDBPyConnection,
    compiled: CompiledModel,
    full_refresh: bool = False,
) -> tuple[int, int]:
    """Upsert new/changed rows into the existing table by unique_key.

    Strategies:
        merge (default): update rows whose key exists, insert the rest.
        delete+insert: delete rows whose key is in the batch, insert the batch.

    If the target table doesn't exist yet (or full_refresh is set), performs a
    full load exactly like the table strategy. On later runs the query is
    narrowed by incremental_filter, staged in a temp table, and merged in one
    transaction. New columns in the staged batch are added to the target.
    """
    model = compiled.model
    relation = compiled.relation
    if full_refresh or _existing_type(conn, relation) != "BASE TABLE":
        return materialize_table(conn, compiled, full_refresh)

    start = time.perf_counter()
    query = compiled.sql
    if compiled.incremental_filter_sql:
        query = (
            f"SELECT * FROM (\n{query}\n) AS _incremental\n"
            f"WHERE {compiled.incremental_filter_sql}"
        )

    keys = model.key_columns
    staging_name = f"_strata_staging_{model.name}"

    conn.execute("BEGIN TRANSACTION")
    try:
        conn.execute(f"CREATE OR REPLACE TEMP TABLE {staging_name} AS\n{query}")

        # Schema evolution: add columns present in the batch but not the target
        target_cols = {c for c, _ in relation_columns(conn, relation.schema, relation.name, relation.catalog)}
        staging_cols = [(r[0], r[1]) for r in conn.execute(f"DESCRIBE {staging_name}").fetchall()]
        for col_name, col_type in staging_cols:
            if col_name not in target_cols:
                logger.info("Adding column %s %s to %s", col_name, col_type, relation)
                conn.execute(f'ALTER TABLE {relation} ADD COLUMN "{col_name}" {col_type}')

        staging_col_names = [c for c, _ in staging_cols]
        missing_keys = [k for k in keys if k not in staging_col_names]
        if missing_keys:
            raise ExecutionError(
                model.name, f"unique_key column(s) not in query output: {', '.join(missing_keys)}"
            )
        insert_cols = ", ".join(f'"{c}"' for c in staging_col_names)
        staging_select = ", ".join(f'staging."{c}"' for c in staging_col_names)

        # NULL keys compare equal
        join_cond = " AND ".join(f'target."{k}" IS NOT DISTINCT FROM staging."{k}"' for k in keys)
        if model.incremental_strategy == "merge":
            non_key_cols = [c for c in staging_col_names if c not in keys]
            if non_key_cols:
                set_clause = ", ".join(f'"{c}" = staging."{c}"' for c in non_key_cols)
                conn.execute(
                    f"UPDATE {relation} AS target SET {set_clause} "
                    f"FROM {staging_name} AS staging WHERE {join_cond}"
                )
            conn.execute(
                f"INSERT INTO {relation} ({insert_cols}) "
                f"SELECT {staging_select} FROM {staging_name} AS staging "
                f"WHERE NOT EXISTS (SELECT 1 FROM {relation} AS target WHERE {join_cond})"
            )
        else:
            conn.execute(
                f"DELETE FROM {relation} AS target "
                f"WHERE EXISTS (SELECT 1 FROM {staging_name} AS staging WHERE {join_cond})"
            )
            conn.execute(
                f"INSERT INTO {relation} ({insert_cols}) "
                f"SELECT {staging_select} FROM {staging_name} AS staging"
            )
        conn.execute(f"DROP TABLE IF EXISTS {staging_name}")
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    duration_ms = int((time.perf_counter() - start) * 1000)
    return duration_ms, _row_count(conn, relation)


STRATEGIES: dict[str, Strategy] = {
    "view": materialize_view,
    "table": materialize_table,
    "incremental": materialize_incremental,
}


def materialize(
    conn: duckdb.DuckDBPyConnection,
    compiled: CompiledModel,
    full_refresh: bool = False,
) -> tuple[int, int]:
    """Build one compiled model with its strategy. Returns (duration_ms, row_count).

    Raises:
        ExecutionError: if the store rejects any statement.
    """
    strategy = STRATEGIES[compiled.model.materialized]
    try:
        return strategy(conn, compiled, full_refresh)
    except duckdb.Error as e:
        raise ExecutionError(compiled.name, str(e)) from e
