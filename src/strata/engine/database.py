"""DuckDB connection management."""

from __future__ import annotations

from pathlib import Path

import duckdb

MEMORY = ":memory:"


def connect(db_path: str | Path, read_only: bool = False) -> duckdb.DuckDBPyConnection:
    """Open a DuckDB connection to the given path (``:memory:`` is allowed).

    An in-memory database cannot be opened read-only, so ``read_only`` is
    ignored for ``:memory:``.
    """
    db_path = str(db_path)
    if db_path == MEMORY:
        read_only = False
    return duckdb.connect(db_path, read_only=read_only)


def database_exists(db_path: str | Path) -> bool:
    return str(db_path) == MEMORY or Path(db_path).exists()


def ensure_schemas(conn: duckdb.DuckDBPyConnection, schemas: list[str]) -> None:
    """Create schemas if they don't exist."""
    for schema in schemas:
        conn.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")


def relation_exists(
    conn: duckdb.DuckDBPyConnection,
    schema: str,
    name: str,
    catalog: str | None = None,
) -> bool:
    """Check the catalog for a table or view."""
    sql = "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = ? AND table_name = ?"
    params: list[str] = [schema, name]
    if catalog:
        sql += " AND table_catalog = ?"
        params.append(catalog)
    row = conn.execute(sql, params).fetchone()
    return bool(row and row[0] > 0)


def relation_columns(
    conn: duckdb.DuckDBPyConnection,
    schema: str,
    name: str,
    catalog: str | None = None,
) -> list[tuple[str, str]]:
    """Return (column_name, data_type) pairs in ordinal order."""
    sql = (
        "SELECT column_name, data_type FROM information_schema.columns "
        "WHERE table_schema = ? AND table_name = ?"
    )
    params: list[str] = [schema, name]
    if catalog:
        sql += " AND table_catalog = ?"
        params.append(catalog)
    sql += " ORDER BY ordinal_position"
    return [(r[0], r[1]) for r in conn.execute(sql, params).fetchall()]
