"""Model discovery: turn models/**/*.sql files into SQLModel declarations."""

from __future__ import annotations

from pathlib import Path

from strata.engine.errors import LoadError
from strata.engine.sql_analysis import (
    extract_refs,
    parse_assertions,
    parse_column_docs,
    parse_config,
    parse_depends,
    parse_description,
    parse_incremental_filter,
    strip_config_comments,
)
from strata.engine.utils import validate_identifier

from .models import INCREMENTAL_STRATEGIES, LAYERS, MATERIALIZATIONS, SQLModel
from .quality import parse_assertion

_LAYER_ALIASES = {"mart": "marts", "stg": "staging", "int": "intermediate"}


def _normalize_layer(value: str) -> str:
    return _LAYER_ALIASES.get(value, value)


def parse_model(sql_file: Path, models_dir: Path) -> SQLModel:
    """Parse a single model file.

    Convention: the top-level folder is the layer.
    models/staging/stg_orders.sql -> layer=staging, name=stg_orders
    """
    sql = sql_file.read_text()
    config = parse_config(sql)
    name = sql_file.stem
    try:
        validate_identifier(name, f"model name for {sql_file.name}")
    except ValueError as e:
        raise LoadError(str(e)) from e

    rel = sql_file.relative_to(models_dir)
    folder_layer = rel.parts[0] if len(rel.parts) > 1 else ""
    layer = _normalize_layer(config.get("layer", folder_layer))
    if layer not in LAYERS:
        raise LoadError(
            f"Model '{name}' has unknown layer {layer or '(none)'!r}; "
            f"place it under one of {', '.join(LAYERS)} or set -- config: layer=..."
        )

    materialized = config.get("materialized", "view")
    if materialized not in MATERIALIZATIONS:
        raise LoadError(f"Model '{name}' has unknown materialization {materialized!r}")

    unique_key = config.get("unique_key")
    if unique_key:
        # Composite keys use '+' in config comments since ',' separates entries
        unique_key = ",".join(k.strip() for k in unique_key.split("+"))
        for key in unique_key.split(","):
            try:
                validate_identifier(key, f"unique_key for {name}")
            except ValueError as e:
                raise LoadError(str(e)) from e

    incremental_strategy = config.get("incremental_strategy", "merge")
    if materialized == "incremental":
        if not unique_key:
            raise LoadError(f"Incremental model '{name}' must declare a unique_key")
        if incremental_strategy not in INCREMENTAL_STRATEGIES:
            raise LoadError(
                f"Model '{name}' has unknown incremental_strategy {incremental_strategy!r}"
            )

    query = strip_config_comments(sql)
    incremental_filter = parse_incremental_filter(sql)
    refs, source_refs = extract_refs(f"{query}\n{incremental_filter or ''}")

    assertions = []
    for severity, expr in parse_assertions(sql):
        try:
            assertions.append(parse_assertion(expr, severity))
        except ValueError as e:
            raise LoadError(f"Model '{name}': invalid assertion {expr!r}: {e}") from e

    return SQLModel(
        path=sql_file,
        name=name,
        layer=layer,
        sql=sql,
        query=query,
        materialized=materialized,
        refs=refs,
        source_refs=source_refs,
        depends_on=parse_depends(sql),
        description=parse_description(sql),
        column_docs=parse_column_docs(sql),
        assertions=assertions,
        unique_key=unique_key,
        incremental_strategy=incremental_strategy,
        incremental_filter=incremental_filter,
    )


def discover_models(models_dir: Path) -> list[SQLModel]:
    """Discover all SQL models in the models directory, sorted by path."""
    if not models_dir.exists():
        return []
    return [parse_model(f, models_dir) for f in sorted(models_dir.rglob("*.sql"))]
