"""Tests for the strata CLI."""

import duckdb
import pytest
from typer.testing import CliRunner

from conftest import load_raw, write_model
from strata.cli import LOAD_ERROR_EXIT, app

runner = CliRunner()


@pytest.fixture
def warehouse(project):
    """Project with raw tables loaded and the connection closed, so the CLI can open it."""
    with duckdb.connect(str(project / "warehouse.duckdb")) as conn:
        load_raw(conn)
    write_model(project, "staging", "stg_orders", """
        -- assert: unique(order_id)
        SELECT order_id, customer_id, status FROM {{ source('shop', 'orders') }}
    """)
    write_model(project, "marts", "customer_orders", """
        -- config: materialized=table
        -- assert: row_count > 0
        SELECT customer_id, COUNT(*) AS n FROM {{ ref('stg_orders') }} GROUP BY 1
    """)
    return project


def test_no_project(tmp_path):
    result = runner.invoke(app, ["run", "-p", str(tmp_path)])
    assert result.exit_code == 1
    assert "No project.yml found" in result.output


def test_run_succeeds(warehouse):
    result = runner.invoke(app, ["run", "-p", str(warehouse)])
    assert result.exit_code == 0, result.output
    assert "customer_orders" in result.output
    assert "succeeded" in result.output
    assert (warehouse / "target" / "run_results.json").exists()


def test_run_failure_exits_nonzero(warehouse):
    write_model(warehouse, "staging", "stg_orders", "SELECT missing FROM {{ source('shop', 'orders') }}")
    result = runner.invoke(app, ["run", "-p", str(warehouse)])
    assert result.exit_code == 1
    assert "skip" in result.output


def test_load_error_exit_code(warehouse):
    write_model(warehouse, "staging", "stg_orders", "SELECT * FROM {{ ref('customer_orders') }}")
    result = runner.invoke(app, ["run", "-p", str(warehouse)])
    assert result.exit_code == LOAD_ERROR_EXIT
    assert "Cycle detected" in result.output


def test_unknown_environment_is_load_error(warehouse):
    result = runner.invoke(app, ["run", "-p", str(warehouse), "--env", "nope"])
    assert result.exit_code == LOAD_ERROR_EXIT


def test_test_command(warehouse):
    assert runner.invoke(app, ["run", "-p", str(warehouse)]).exit_code == 0
    result = runner.invoke(app, ["test", "-p", str(warehouse), "--skip-freshness"])
    assert result.exit_code == 0, result.output
    assert "2 passed" in result.output


def test_test_command_fails_on_stale_source(warehouse):
    runner.invoke(app, ["run", "-p", str(warehouse)])
    result = runner.invoke(app, ["test", "-p", str(warehouse)])
    assert result.exit_code == 1
    assert "stale source(s)" in result.output


def test_freshness_command(warehouse):
    result = runner.invoke(app, ["freshness", "-p", str(warehouse)])
    assert result.exit_code == 1
    assert "Source Freshness" in result.output


def test_build_command(warehouse):
    (warehouse / "sources.yml").write_text(
        "sources:\n  - name: shop\n    schema: raw\n    tables:\n      - name: orders\n"
    )
    result = runner.invoke(app, ["build", "-p", str(warehouse)])
    assert result.exit_code == 0, result.output


def test_compile_and_graph(warehouse):
    result = runner.invoke(app, ["compile", "-p", str(warehouse)])
    assert result.exit_code == 0, result.output
    compiled = warehouse / "target" / "compiled" / "marts" / "customer_orders.sql"
    assert "analytics_staging.stg_orders" in compiled.read_text()

    result = runner.invoke(app, ["compile", "stg_orders", "-p", str(warehouse)])
    assert "raw.orders" in result.output

    result = runner.invoke(app, ["graph", "-p", str(warehouse)])
    assert result.exit_code == 0
    assert "Model Graph (2 models)" in result.output

    result = runner.invoke(app, ["graph", "-p", str(warehouse), "--downstream", "stg_orders"])
    assert "customer_orders" in result.output


def test_compile_error_exits_nonzero(warehouse):
    write_model(warehouse, "marts", "bad", "SELECT {{ nope() }}")
    result = runner.invoke(app, ["compile", "-p", str(warehouse)])
    assert result.exit_code == 1
    assert "unknown macro 'nope'" in result.output


def test_init_scaffolds_loadable_project(tmp_path):
    target = tmp_path / "demo"
    result = runner.invoke(app, ["init", "demo", "--dir", str(target)])
    assert result.exit_code == 0, result.output
    assert (target / "project.yml").exists()
    assert (target / "models" / "marts" / "customer_revenue.sql").exists()

    result = runner.invoke(app, ["compile", "-p", str(target)])
    assert result.exit_code == 0, result.output
    compiled = (target / "target" / "compiled" / "staging" / "stg_payments.sql").read_text()
    assert "ROUND(amount_cents / 100.0, 2)" in compiled
    assert "FROM raw.payments" in compiled

    again = runner.invoke(app, ["init", "demo", "--dir", str(target)])
    assert again.exit_code == 1


def test_test_command_on_memory_database(tmp_path):
    (tmp_path / "project.yml").write_text("database:\n  path: ':memory:'\n")
    write_model(tmp_path, "staging", "one", "SELECT 1 AS x")
    result = runner.invoke(app, ["test", "-p", str(tmp_path)])
    assert result.exit_code == 0, result.output
    assert "No warehouse database found" not in result.output
    assert "0 passed, 0 failed" in result.output
