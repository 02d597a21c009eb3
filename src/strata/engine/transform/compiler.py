"""Compiler: resolve reference markers and macros into executable SQL.

Compilation is a pure function of the model, the resolution context, and the
macro table. Nothing here touches the database.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from strata.config import TargetConfig
from strata.engine.errors import CompileError, LoadError
from strata.engine.sources import SourceRegistry
from strata.engine.sql_analysis import (
    MARKER_PATTERN,
    parse_macro_header,
    parse_marker,
    strip_config_comments,
)
from strata.engine.utils import split_top_level, validate_identifier

from .graph import ModelGraph
from .models import CompiledModel, Relation, SQLModel

logger = logging.getLogger("strata.transform")

MAX_MACRO_DEPTH = 16
_KWARG_RE = re.compile(r"^(\w+)\s*=(?!=)\s*(.+)$", re.DOTALL)
_SQL_STRING_RE = re.compile(r"'(?:[^']|'')*'")


@dataclass(frozen=True)
class Macro:
    """A reusable SQL fragment with named parameters."""

    name: str
    params: tuple[tuple[str, str | None], ...]  # (name, default)
    body: str
    path: Path | None = None

    def bind(self, raw_args: str) -> dict[str, str]:
        """Bind call arguments to parameters. Raises ValueError on arity mismatch."""
        names = [p for p, _ in self.params]
        bound: dict[str, str] = {}
        args = split_top_level(raw_args) if raw_args.strip() else []
        positional = True
        for i, arg in enumerate(args):
            kw = _KWARG_RE.match(arg)
            if kw and kw.group(1) in names:
                positional = False
                bound[kw.group(1)] = kw.group(2).strip()
            elif not positional:
                raise ValueError("positional argument follows keyword argument")
            elif i >= len(names):
                raise ValueError(f"takes {len(names)} argument(s) but {len(args)} were given")
            else:
                bound[names[i]] = arg
        for name, default in self.params:
            if name not in bound:
                if default is None:
                    raise ValueError(f"missing argument '{name}'")
                bound[name] = default
        return bound


def parse_macro(text: str, path: Path | None = None) -> Macro:
    header = parse_macro_header(text)
    if header is None:
        raise LoadError(f"Macro file {path} is missing a '-- macro: name(params)' header")
    name, raw_params = header
    params: list[tuple[str, str | None]] = []
    for raw in split_top_level(raw_params) if raw_params.strip() else []:
        pname, _, default = raw.partition("=")
        pname = pname.strip()
        try:
            validate_identifier(pname, f"parameter of macro {name}")
        except ValueError as e:
            raise LoadError(str(e)) from e
        params.append((pname, default.strip() if default else None))
    return Macro(name=name, params=tuple(params), body=strip_config_comments(text), path=path)


def discover_macros(macros_dir: Path) -> dict[str, Macro]:
    """Load every ``macros/*.sql`` file. Duplicate names are a LoadError."""
    macros: dict[str, Macro] = {}
    if not macros_dir.exists():
        return macros
    for path in sorted(macros_dir.rglob("*.sql")):
        macro = parse_macro(path.read_text(), path)
        if macro.name in macros:
            raise LoadError(f"Duplicate macro '{macro.name}' ({macros[macro.name].path} and {path})")
        macros[macro.name] = macro
    return macros


def relation_for(model: SQLModel, target: TargetConfig) -> Relation:
    """Environment-qualified address: ``[catalog.]<schema>_<layer>.<name>``."""
    return Relation(
        schema=f"{target.schema}_{model.layer}",
        name=model.name,
        catalog=target.catalog,
    )


@dataclass(frozen=True)
class ResolutionContext:
    """Everything a model needs to resolve its markers, passed down explicitly."""

    relations: dict[str, Relation]
    sources: SourceRegistry = field(default_factory=SourceRegistry)
    macros: dict[str, Macro] = field(default_factory=dict)

    @classmethod
    def for_graph(
        cls,
        graph: ModelGraph,
        target: TargetConfig,
        macros: dict[str, Macro] | None = None,
    ) -> ResolutionContext:
        try:
            validate_identifier(target.schema, "target schema")
            if target.catalog:
                validate_identifier(target.catalog, "target catalog")
        except ValueError as e:
            raise LoadError(str(e)) from e
        return cls(
            relations={name: relation_for(m, target) for name, m in graph.models.items()},
            sources=graph.sources,
            macros=macros or {},
        )

    def relation(self, model_name: str) -> Relation:
        return self.relations[model_name]


def render(
    text: str,
    ctx: ResolutionContext,
    model_name: str,
    this: Relation | None = None,
    params: dict[str, str] | None = None,
    depth: int = 0,
) -> str:
    """Replace every ``{{ ... }}`` marker in ``text``.

    Stray braces inside quoted SQL strings are allowed once the markers are
    gone, e.g. ``WHERE tag <> '{{'``. A literal that pairs ``{{`` with a later
    ``}}`` is still read as a marker.

    Raises:
        CompileError: naming ``model_name`` for any unresolvable marker.
    """
    leftover = _SQL_STRING_RE.sub("", MARKER_PATTERN.sub("", text))
    if "{{" in leftover or "}}" in leftover:
        raise CompileError(model_name, "unbalanced '{{' / '}}' in reference expression")

    def _replace(match: re.Match[str]) -> str:
        marker = parse_marker(match.group(1))
        if marker.kind in ("ref", "source") and depth > 0:
            raise CompileError(model_name, f"macros may not contain {marker.kind}(): {{{{ {marker.text} }}}}")
        if marker.kind == "ref":
            ref = marker.args[0]
            if ref not in ctx.relations:
                raise CompileError(model_name, f"unresolved reference ref('{ref}')")
            return str(ctx.relations[ref])
        if marker.kind == "source":
            try:
                return ctx.sources.get(marker.args[0], marker.args[1]).relation
            except LoadError as e:
                raise CompileError(model_name, str(e)) from e
        if marker.kind == "this":
            if this is None:
                raise CompileError(model_name, "{{ this }} is not available here")
            return str(this)
        if marker.kind == "name":
            if params is not None and marker.text in params:
                return params[marker.text]
            raise CompileError(model_name, f"unknown name '{marker.text}' in {{{{ }}}} marker")
        if marker.kind == "call":
            macro_name, raw_args = marker.args
            macro = ctx.macros.get(macro_name)
            if macro is None:
                raise CompileError(model_name, f"unknown macro '{macro_name}'")
            if depth >= MAX_MACRO_DEPTH:
                raise CompileError(model_name, f"macro expansion too deep at '{macro_name}'")
            try:
                bound = macro.bind(raw_args)
            except ValueError as e:
                raise CompileError(model_name, f"macro '{macro_name}' {e}") from e
            if params:
                # A bare parameter name passed through to a nested macro
                bound = {k: params.get(v, v) for k, v in bound.items()}
            return render(macro.body, ctx, model_name, this, bound, depth + 1)
        raise CompileError(model_name, f"malformed reference expression {{{{ {marker.text} }}}}")

    return MARKER_PATTERN.sub(_replace, text)


def compile_model(model: SQLModel, ctx: ResolutionContext) -> CompiledModel:
    """Resolve one model into its executable statement."""
    this = ctx.relations.get(model.name)
    if this is None:
        raise CompileError(model.name, "model has no resolved relation")
    sql = render(model.query, ctx, model.name, this)
    if not sql.strip():
        raise CompileError(model.name, "model body is empty")
    filter_sql = None
    if model.materialized == "incremental" and model.incremental_filter:
        filter_sql = render(model.incremental_filter, ctx, model.name, this)
    return CompiledModel(model=model, relation=this, sql=sql, incremental_filter_sql=filter_sql)


def compile_all(
    graph: ModelGraph,
    ctx: ResolutionContext,
) -> tuple[dict[str, CompiledModel], dict[str, CompileError]]:
    """Compile every model up front. Failures are collected, not raised."""
    compiled: dict[str, CompiledModel] = {}
    errors: dict[str, CompileError] = {}
    for name in graph.order():
        try:
            compiled[name] = compile_model(graph.models[name], ctx)
        except CompileError as e:
            logger.warning("Compile failed for %s: %s", name, e.message)
            errors[name] = e
    return compiled, errors
