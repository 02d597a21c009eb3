"""Tests for lint checks and impact analysis."""

from conftest import write_model
from strata.config import load_project
from strata.engine.transform import compile_all, impact_analysis, load_project_graph, validate_models


def _lint(project):
    graph, ctx = load_project_graph(load_project(project))
    compiled, errors = compile_all(graph, ctx)
    return validate_models(graph, ctx, compiled, errors)


def test_clean_project_has_no_findings(project):
    write_model(project, "staging", "stg_orders", "SELECT * FROM {{ source('shop', 'orders') }}")
    write_model(project, "marts", "revenue", """
        WITH o AS (SELECT * FROM {{ ref('stg_orders') }})
        SELECT customer_id, COUNT(*) AS n FROM o GROUP BY 1
    """)
    assert _lint(project) == []


def test_direct_table_read_is_flagged(project):
    write_model(project, "staging", "stg_orders", "SELECT * FROM raw.orders")
    findings = _lint(project)
    assert [(f.model, f.severity) for f in findings] == [("stg_orders", "warning")]
    assert "reads 'raw.orders' directly" in findings[0].message


def test_later_layer_dependency_is_flagged(project):
    write_model(project, "marts", "revenue", "SELECT 1 AS x")
    write_model(project, "staging", "stg_x", "SELECT * FROM {{ ref('revenue') }}")
    findings = _lint(project)
    assert len(findings) == 1
    assert findings[0].message == "staging model depends on marts model 'revenue'"


def test_compile_error_is_an_error_finding(project):
    write_model(project, "staging", "bad", "SELECT {{ missing_macro() }}")
    findings = _lint(project)
    assert [(f.model, f.severity) for f in findings] == [("bad", "error")]


def test_impact_analysis(project):
    write_model(project, "staging", "a", "SELECT 1 AS x")
    write_model(project, "intermediate", "b", "SELECT * FROM {{ ref('a') }}")
    write_model(project, "marts", "c", "SELECT * FROM {{ ref('b') }}")
    write_model(project, "marts", "d", "SELECT * FROM {{ ref('a') }}")
    graph, _ = load_project_graph(load_project(project))
    impact = impact_analysis(graph, "a")
    assert impact["downstream_models"] == ["b", "c", "d"]
    assert impact["impact_chain"] == {"a": ["b", "d"], "b": ["c"]}
    assert impact_analysis(graph, "c")["downstream_models"] == []
