"""Tests for building the model graph: strategies, failure isolation, parallelism, cancellation."""

import json
import threading

import pytest

from conftest import write_model
from strata.engine.database import relation_exists
from strata.engine.errors import ExecutionError, LoadError
from strata.engine.transform import (
    Materializer,
    load_project_graph,
    materialize,
    run_project,
)
from strata.engine.transform.compiler import compile_model


@pytest.fixture
def shop(project):
    write_model(project, "staging", "stg_orders", """
        SELECT order_id, customer_id, status FROM {{ source('shop', 'orders') }}
    """)
    write_model(project, "staging", "stg_payments", """
        SELECT payment_id, order_id, amount FROM {{ source('shop', 'payments') }}
    """)
    write_model(project, "intermediate", "order_totals", """
        -- config: materialized=table
        SELECT o.order_id, o.customer_id, SUM(p.amount) AS total
        FROM {{ ref('stg_orders') }} o
        JOIN {{ ref('stg_payments') }} p USING (order_id)
        GROUP BY 1, 2
    """)
    write_model(project, "marts", "customer_revenue", """
        -- config: materialized=table
        SELECT customer_id, SUM(total) AS revenue
        FROM {{ ref('order_totals') }}
        GROUP BY 1
    """)
    return project


class TestRun:
    def test_builds_every_model(self, shop, config, db):
        result = run_project(config, conn=db)
        assert result.status == "succeeded"
        assert result.exit_code == 0
        assert result.by_status("succeeded") == [
            "stg_orders", "stg_payments", "order_totals", "customer_revenue",
        ]
        assert relation_exists(db, "analytics_staging", "stg_orders")
        assert relation_exists(db, "analytics_intermediate", "order_totals")
        rows = db.execute(
            "SELECT customer_id, revenue FROM analytics_marts.customer_revenue ORDER BY 1"
        ).fetchall()
        assert rows == [(10, 75), (20, 40)]
        assert result.models["order_totals"].row_count == 3

    def test_view_and_table_kinds(self, shop, config, db):
        run_project(config, conn=db)
        kinds = dict(db.execute(
            "SELECT table_name, table_type FROM information_schema.tables "
            "WHERE table_schema LIKE 'analytics_%'"
        ).fetchall())
        assert kinds["stg_orders"] == "VIEW"
        assert kinds["customer_revenue"] == "BASE TABLE"

    def test_rerun_is_idempotent(self, shop, config, db):
        run_project(config, conn=db)
        first = db.execute("SELECT * FROM analytics_marts.customer_revenue ORDER BY 1").fetchall()
        result = run_project(config, conn=db)
        second = db.execute("SELECT * FROM analytics_marts.customer_revenue ORDER BY 1").fetchall()
        assert result.status == "succeeded"
        assert first == second

    def test_materialization_change_replaces_object(self, shop, config, db):
        run_project(config, conn=db)
        write_model(shop, "staging", "stg_orders", """
            -- config: materialized=table
            SELECT order_id, customer_id, status FROM {{ source('shop', 'orders') }}
        """)
        result = run_project(config, conn=db)
        assert result.status == "succeeded"
        kind = db.execute(
            "SELECT table_type FROM information_schema.tables "
            "WHERE table_schema = 'analytics_staging' AND table_name = 'stg_orders'"
        ).fetchone()[0]
        assert kind == "BASE TABLE"

    def test_run_results_artifact(self, shop, config, db):
        run_project(config, conn=db)
        payload = json.loads((shop / "target" / "run_results.json").read_text())
        assert payload["status"] == "succeeded"
        assert {m["name"] for m in payload["models"]} == {
            "stg_orders", "stg_payments", "order_totals", "customer_revenue",
        }

    def test_load_error_executes_nothing(self, shop, config, db):
        write_model(shop, "marts", "broken", "SELECT * FROM {{ ref('missing') }}")
        with pytest.raises(LoadError, match="undeclared model 'missing'"):
            run_project(config, conn=db)
        assert not relation_exists(db, "analytics_staging", "stg_orders")

    def test_targets(self, shop, config, db):
        result = run_project(config, conn=db, targets=["order_totals"], upstream=True)
        assert sorted(result.models) == ["order_totals", "stg_orders", "stg_payments"]
        assert not relation_exists(db, "analytics_marts", "customer_revenue")


class TestFailures:
    def test_failure_skips_descendants_only(self, shop, config, db):
        write_model(shop, "staging", "stg_orders", """
            SELECT no_such_column FROM {{ source('shop', 'orders') }}
        """)
        write_model(shop, "marts", "payment_count", """
            -- config: materialized=table
            SELECT COUNT(*) AS n FROM {{ ref('stg_payments') }}
        """)
        result = run_project(config, conn=db)

        assert result.status == "failed"
        assert result.exit_code == 1
        assert result.models["stg_orders"].status == "failed"
        assert "no_such_column" in result.models["stg_orders"].error
        for name in ("order_totals", "customer_revenue"):
            assert result.models[name].status == "skipped"
            assert result.models[name].error == "upstream model 'stg_orders' failed"
        assert result.by_status("succeeded") == ["stg_payments", "payment_count"]
        assert not relation_exists(db, "analytics_intermediate", "order_totals")
        assert not relation_exists(db, "analytics_marts", "customer_revenue")

    def test_compile_error_fails_model_and_skips_children(self, shop, config, db):
        write_model(shop, "intermediate", "order_totals", """
            -- config: materialized=table
            SELECT {{ undefined_macro() }} FROM {{ ref('stg_orders') }}
        """)
        result = run_project(config, conn=db)
        assert result.models["order_totals"].status == "failed"
        assert result.models["order_totals"].error.startswith("compile error:")
        assert result.models["customer_revenue"].status == "skipped"
        assert result.models["stg_orders"].status == "succeeded"

    def test_abort_on_compile_error(self, shop, config, db):
        write_model(shop, "marts", "bad", "SELECT {{ nope }}")
        result = run_project(config, conn=db, abort_on_compile_error=True)
        assert result.status == "failed"
        assert result.by_status("succeeded") == []
        assert result.models["bad"].status == "failed"
        assert result.models["stg_orders"].error == "run aborted on compile errors"
        assert not relation_exists(db, "analytics_staging", "stg_orders")

    def test_materialize_raises_execution_error(self, shop, config, db):
        write_model(shop, "staging", "stg_orders", "SELECT nope FROM raw.orders")
        graph, ctx = load_project_graph(config)
        compiled = compile_model(graph.models["stg_orders"], ctx)
        db.execute("CREATE SCHEMA IF NOT EXISTS analytics_staging")
        with pytest.raises(ExecutionError) as exc:
            materialize(db, compiled)
        assert exc.value.model == "stg_orders"


class TestScheduling:
    def test_single_worker_follows_graph_order(self, shop, config, db):
        graph, ctx = load_project_graph(config)
        dispatched = []

        def on_event(name, result):
            if result.status == "running":
                dispatched.append(name)

        Materializer(db, graph, ctx, threads=1, on_event=on_event).run()
        assert dispatched == graph.order()

    def test_parallel_workers(self, project, config, db):
        for i in range(6):
            write_model(project, "staging", f"part_{i}", f"""
                -- config: materialized=table
                SELECT {i} AS part, * FROM {{{{ source('shop', 'orders') }}}}
            """)
        write_model(project, "marts", "combined", "-- config: materialized=table\n" + "\nUNION ALL\n".join(
            f"SELECT * FROM {{{{ ref('part_{i}') }}}}" for i in range(6)
        ))
        result = run_project(config, conn=db, threads=4)
        assert result.status == "succeeded"
        assert db.execute("SELECT COUNT(*) FROM analytics_marts.combined").fetchone()[0] == 18

    def test_parents_finish_before_children(self, shop, config, db):
        finished = []

        def on_event(name, result):
            if result.status == "succeeded":
                finished.append(name)

        run_project(config, conn=db, threads=4, on_event=on_event)
        assert finished.index("stg_orders") < finished.index("order_totals")
        assert finished.index("stg_payments") < finished.index("order_totals")
        assert finished.index("order_totals") < finished.index("customer_revenue")

    def test_cancellation_stops_dispatch(self, project, config, db):
        for name in ("a", "b", "c"):
            write_model(project, "staging", name, "-- config: materialized=table\nSELECT 1 AS x")
        event = threading.Event()

        def on_event(name, result):
            if result.status == "succeeded":
                event.set()

        result = run_project(config, conn=db, threads=1, cancel_event=event, on_event=on_event)
        assert result.status == "cancelled"
        assert result.exit_code == 1
        assert result.by_status("succeeded") == ["a"]
        assert result.by_status("pending") == ["b", "c"]
        assert not relation_exists(db, "analytics_staging", "b")
