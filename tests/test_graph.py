"""Tests for model discovery and the dependency graph."""

from pathlib import Path

import pytest

from conftest import write_model
from strata.engine.errors import LoadError
from strata.engine.sources import Source, SourceRegistry
from strata.engine.sql_analysis import (
    extract_refs,
    parse_assertions,
    parse_config,
    strip_config_comments,
)
from strata.engine.transform import SQLModel, build_graph, discover_models, parse_model


def _model(name: str, refs: list[str] | None = None, layer: str = "staging", **kwargs) -> SQLModel:
    return SQLModel(
        path=Path(f"{name}.sql"), name=name, layer=layer, sql="",
        query="SELECT 1", refs=refs or [], **kwargs,
    )


SOURCES = SourceRegistry([Source("shop", "orders", "raw"), Source("shop", "payments", "raw")])


class TestHeaderParsing:
    def test_parse_config(self):
        sql = "-- config: materialized=incremental, unique_key=order_id+line\nSELECT 1"
        assert parse_config(sql) == {"materialized": "incremental", "unique_key": "order_id+line"}

    def test_extract_refs(self):
        sql = (
            "SELECT * FROM {{ ref('a') }} JOIN {{ref(\"b\")}} USING (id)\n"
            "JOIN {{ source('shop', 'orders') }} USING (id)\n"
            "JOIN {{ ref('a') }} USING (id)"
        )
        refs, sources = extract_refs(sql)
        assert refs == ["a", "b"]
        assert sources == [("shop", "orders")]

    def test_parse_assertions_severity(self):
        sql = "-- assert: unique(id)\n-- assert(warn): amount > 0\nSELECT 1"
        assert parse_assertions(sql) == [("error", "unique(id)"), ("warn", "amount > 0")]

    def test_strip_config_comments(self):
        sql = "-- config: materialized=view\n-- description: x\n\nSELECT 1\n-- trailing note\n\n"
        assert strip_config_comments(sql) == "SELECT 1\n-- trailing note"


class TestDiscovery:
    def test_layer_from_folder(self, project):
        write_model(project, "staging", "stg_orders", """
            -- description: Cleaned orders
            -- col: order_id: Primary key
            SELECT * FROM {{ source('shop', 'orders') }}
        """)
        models = discover_models(project / "models")
        assert len(models) == 1
        m = models[0]
        assert m.name == "stg_orders"
        assert m.layer == "staging"
        assert m.materialized == "view"
        assert m.source_refs == [("shop", "orders")]
        assert m.description == "Cleaned orders"
        assert m.column_docs == {"order_id": "Primary key"}

    def test_layer_override_and_alias(self, project):
        path = write_model(project, "misc", "revenue", """
            -- config: materialized=table, layer=mart
            SELECT 1 AS x
        """)
        m = parse_model(path, project / "models")
        assert m.layer == "marts"
        assert m.materialized == "table"

    def test_unknown_layer(self, project):
        write_model(project, "gold", "revenue", "SELECT 1")
        with pytest.raises(LoadError, match="unknown layer 'gold'"):
            discover_models(project / "models")

    def test_unknown_materialization(self, project):
        write_model(project, "staging", "x", "-- config: materialized=snapshot\nSELECT 1")
        with pytest.raises(LoadError, match="unknown materialization"):
            discover_models(project / "models")

    def test_incremental_requires_unique_key(self, project):
        write_model(project, "staging", "x", "-- config: materialized=incremental\nSELECT 1")
        with pytest.raises(LoadError, match="must declare a unique_key"):
            discover_models(project / "models")

    def test_composite_unique_key(self, project):
        path = write_model(project, "staging", "x", """
            -- config: materialized=incremental, unique_key=order_id+line_no, incremental_strategy=delete+insert
            SELECT 1 AS order_id, 1 AS line_no
        """)
        m = parse_model(path, project / "models")
        assert m.key_columns == ["order_id", "line_no"]
        assert m.incremental_strategy == "delete+insert"

    def test_invalid_model_name(self, project):
        write_model(project, "staging", "bad-name", "SELECT 1")
        with pytest.raises(LoadError, match="Invalid model name"):
            discover_models(project / "models")

    def test_malformed_assertion(self, project):
        write_model(project, "staging", "x", "-- assert: unique()\nSELECT 1 AS id")
        with pytest.raises(LoadError, match="invalid assertion"):
            discover_models(project / "models")

    def test_refs_in_incremental_filter(self, project):
        path = write_model(project, "marts", "x", """
            -- config: materialized=incremental, unique_key=id
            -- incremental_filter: id > (SELECT MAX(id) FROM {{ ref('watermark') }})
            SELECT id FROM {{ ref('events') }}
        """)
        m = parse_model(path, project / "models")
        assert m.refs == ["events", "watermark"]
        assert "incremental_filter" not in m.query


class TestGraph:
    def test_order_is_topological(self):
        graph = build_graph([
            _model("c", ["b"]),
            _model("b", ["a"]),
            _model("a"),
        ])
        assert graph.order() == ["a", "b", "c"]

    def test_ties_broken_by_name(self):
        models = [_model("z"), _model("m"), _model("a"), _model("join", ["z", "a"])]
        first = build_graph(models).order()
        second = build_graph(list(reversed(models))).order()
        assert first == second == ["a", "join", "m", "z"]

    def test_depends_on_adds_edge(self):
        graph = build_graph([_model("a"), _model("b", depends_on=["a"])])
        assert graph.parents("b") == ["a"]
        assert graph.children("a") == ["b"]

    def test_cycle_names_members(self):
        models = [_model("a", ["c"]), _model("b", ["a"]), _model("c", ["b"]), _model("d")]
        with pytest.raises(LoadError, match="Cycle detected") as exc:
            build_graph(models)
        assert exc.value.cycle == ["a", "b", "c"]
        assert str(exc.value).endswith("a -> b -> c -> a")

    def test_cycle_excludes_downstream_of_cycle(self):
        models = [_model("a", ["b"]), _model("b", ["a"]), _model("c", ["a"])]
        with pytest.raises(LoadError) as exc:
            build_graph(models)
        assert sorted(exc.value.cycle) == ["a", "b"]

    def test_self_reference_is_a_cycle(self):
        with pytest.raises(LoadError) as exc:
            build_graph([_model("a", ["a"])])
        assert exc.value.cycle == ["a"]

    def test_undeclared_ref(self):
        with pytest.raises(LoadError, match="Model 'b' references undeclared model 'missing'"):
            build_graph([_model("a"), _model("b", ["missing"])])

    def test_undeclared_source(self):
        m = _model("a", source_refs=[("shop", "refunds")])
        with pytest.raises(LoadError, match="undeclared source 'shop.refunds'"):
            build_graph([m], SOURCES)

    def test_declared_source(self):
        m = _model("a", source_refs=[("shop", "orders")])
        graph = build_graph([m], SOURCES)
        assert graph.order() == ["a"]

    def test_duplicate_name(self):
        with pytest.raises(LoadError, match="Duplicate model name 'a'"):
            build_graph([_model("a"), _model("a", layer="marts")])

    def test_tiers(self):
        graph = build_graph([
            _model("a"), _model("b"), _model("c", ["a", "b"]), _model("d", ["a"]), _model("e", ["c"]),
        ])
        assert graph.tiers() == [["a", "b"], ["c", "d"], ["e"]]

    def test_descendants_and_ancestors(self):
        graph = build_graph([_model("a"), _model("b", ["a"]), _model("c", ["b"]), _model("x")])
        assert graph.descendants("a") == ["b", "c"]
        assert graph.ancestors("c") == ["a", "b"]
        assert graph.descendants("x") == []

    def test_select(self):
        graph = build_graph([_model("a"), _model("b", ["a"]), _model("c", ["b"]), _model("x")])
        assert graph.select(["b"]).order() == ["b"]
        assert graph.select(["b"], upstream=True).order() == ["a", "b"]
        assert graph.select(["b"], downstream=True).order() == ["b", "c"]
        with pytest.raises(LoadError, match="Unknown model"):
            graph.select(["nope"])
