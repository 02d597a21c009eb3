"""Shared fixtures: a scratch project directory with a DuckDB warehouse."""

from __future__ import annotations

import textwrap
from pathlib import Path

import duckdb
import pytest

from strata.config import load_project


def write_model(project: Path, layer: str, name: str, body: str) -> Path:
    path = project / "models" / layer / f"{name}.sql"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(body).lstrip())
    return path


def write_macro(project: Path, name: str, body: str) -> Path:
    path = project / "macros" / f"{name}.sql"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(body).lstrip())
    return path


PROJECT_YML = """\
name: shop
database:
  path: warehouse.duckdb
target:
  schema: analytics
  threads: 2
"""

SOURCES_YML = """\
sources:
  - name: shop
    schema: raw
    loaded_at_column: _loaded_at
    tables:
      - name: orders
        freshness:
          warn_after: 12h
          error_after: 24h
      - name: payments
        freshness:
          warn_after: 24h
          error_after: 72h
"""


@pytest.fixture
def project(tmp_path):
    """A project directory with project.yml and sources.yml but no models."""
    (tmp_path / "project.yml").write_text(PROJECT_YML)
    (tmp_path / "sources.yml").write_text(SOURCES_YML)
    (tmp_path / "models").mkdir()
    return tmp_path


def load_raw(conn) -> None:
    """Create raw.orders and raw.payments, all rows loaded at 2024-01-01 00:00."""
    conn.execute("CREATE SCHEMA raw")
    conn.execute("""
        CREATE TABLE raw.orders (
            order_id INTEGER, customer_id INTEGER, status VARCHAR, _loaded_at TIMESTAMP
        )
    """)
    conn.execute("""
        INSERT INTO raw.orders VALUES
            (1, 10, 'placed', TIMESTAMP '2024-01-01 00:00:00'),
            (2, 10, 'shipped', TIMESTAMP '2024-01-01 00:00:00'),
            (3, 20, 'placed', TIMESTAMP '2024-01-01 00:00:00')
    """)
    conn.execute("""
        CREATE TABLE raw.payments (
            payment_id INTEGER, order_id INTEGER, amount INTEGER, _loaded_at TIMESTAMP
        )
    """)
    conn.execute("""
        INSERT INTO raw.payments VALUES
            (100, 1, 50, TIMESTAMP '2024-01-01 00:00:00'),
            (101, 2, 25, TIMESTAMP '2024-01-01 00:00:00'),
            (102, 3, 40, TIMESTAMP '2024-01-01 00:00:00')
    """)


@pytest.fixture
def db(project):
    """Connection to the project's warehouse with the raw tables loaded."""
    conn = duckdb.connect(str(project / "warehouse.duckdb"))
    load_raw(conn)
    yield conn
    conn.close()


@pytest.fixture
def config(project):
    return load_project(project)
