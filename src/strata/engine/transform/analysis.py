"""Static analysis of compiled models: lint checks and downstream impact."""

from __future__ import annotations

import logging

import sqlglot

from strata.engine.errors import CompileError
from strata.engine.sql_analysis import extract_table_refs

from .compiler import ResolutionContext
from .graph import ModelGraph
from .models import LAYERS, CompiledModel, ValidationError

logger = logging.getLogger("strata.transform")


def validate_models(
    graph: ModelGraph,
    ctx: ResolutionContext,
    compiled: dict[str, CompiledModel],
    compile_errors: dict[str, CompileError] | None = None,
) -> list[ValidationError]:
    """Lint compiled models without executing them.

    Checks:
    - Compile errors (error)
    - SQL parses with sqlglot (warning; DuckDB accepts more than sqlglot does)
    - Every table read is reached through ref() or source() (warning)
    - A model does not depend on a model in a later layer (warning)
    """
    errors: list[ValidationError] = []
    layer_rank = {layer: i for i, layer in enumerate(LAYERS)}

    for name in graph.order():
        model = graph.models[name]

        if compile_errors and name in compile_errors:
            errors.append(ValidationError(name, "error", compile_errors[name].message))
            continue

        for ref in model.refs:
            parent = graph.models.get(ref)
            if parent and layer_rank[parent.layer] > layer_rank[model.layer]:
                errors.append(ValidationError(
                    name, "warning",
                    f"{model.layer} model depends on {parent.layer} model '{ref}'",
                ))

        cm = compiled.get(name)
        if cm is None:
            continue
        try:
            tables = extract_table_refs(cm.sql)
        except sqlglot.errors.SqlglotError as e:
            errors.append(ValidationError(name, "warning", f"SQL parse error: {e}"))
            continue

        declared = {str(ctx.relation(r)).lower() for r in model.refs if r in ctx.relations}
        declared.update(
            ctx.sources.get(s, t).relation.lower() for s, t in model.source_refs
        )
        declared.add(str(cm.relation).lower())
        for table in tables:
            if table not in declared:
                errors.append(ValidationError(
                    name, "warning",
                    f"reads '{table}' directly; use ref() or source() so the graph knows about it",
                ))

    return errors


def impact_analysis(graph: ModelGraph, target: str) -> dict:
    """Downstream models of ``target`` and the direct-dependent chain between them."""
    downstream = graph.descendants(target)
    impact_chain: dict[str, list[str]] = {}
    for name in [target, *downstream]:
        children = graph.children(name)
        if children:
            impact_chain[name] = children
    return {
        "target": target,
        "downstream_models": downstream,
        "impact_chain": impact_chain,
    }
