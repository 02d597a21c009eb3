"""SQL analysis: header comments, reference markers, and sqlglot table extraction.

Model files carry their metadata in ``-- key: value`` header comments and their
dependencies in ``{{ ref('x') }}`` / ``{{ source('s', 't') }}`` markers. Both are
parsed with regex; the compiled SQL itself is only ever inspected through the
sqlglot AST.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import sqlglot
from sqlglot import exp

# Schemas that are never real upstream dependencies
SKIP_SCHEMAS = frozenset({"information_schema", "pg_catalog", "sys"})

# --- Header comment patterns (line comments, so regex rather than the AST) ---

CONFIG_PATTERN = re.compile(r"^--\s*config:\s*(.+)$", re.MULTILINE)
DEPENDS_PATTERN = re.compile(r"^--\s*depends_on:\s*(.+)$", re.MULTILINE)
DESCRIPTION_PATTERN = re.compile(r"^--\s*description:\s*(.+)$", re.MULTILINE)
COL_PATTERN = re.compile(r"^--\s*col:\s*(\w+):\s*(.+)$", re.MULTILINE)
ASSERT_PATTERN = re.compile(r"^--\s*assert(?:\((\w+)\))?:\s*(.+)$", re.MULTILINE)
INCREMENTAL_FILTER_PATTERN = re.compile(r"^--\s*incremental_filter:\s*(.+)$", re.MULTILINE)
MACRO_PATTERN = re.compile(r"^--\s*macro:\s*(\w+)\s*\((.*)\)\s*$", re.MULTILINE)

_META_RE = re.compile(
    r"^--\s*(config|depends_on|description|col|assert(\(\w+\))?|incremental_filter|macro):"
)

# --- Reference markers ---

MARKER_PATTERN = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_REF_RE = re.compile(r"ref\(\s*(['\"])(\w+)\1\s*\)")
_SOURCE_RE = re.compile(r"source\(\s*(['\"])(\w+)\1\s*,\s*(['\"])(\w+)\3\s*\)")
_CALL_RE = re.compile(r"(\w+)\((.*)\)", re.DOTALL)
_NAME_RE = re.compile(r"\w+")


@dataclass(frozen=True)
class Marker:
    """A parsed ``{{ ... }}`` expression.

    kind is one of "ref", "source", "this", "call" (macro invocation),
    "name" (bare identifier, a macro parameter) or "invalid".
    """

    kind: str
    text: str
    args: tuple[str, ...] = ()


def parse_marker(text: str) -> Marker:
    """Classify the inside of a ``{{ ... }}`` marker."""
    body = text.strip()
    m = _REF_RE.fullmatch(body)
    if m:
        return Marker("ref", body, (m.group(2),))
    m = _SOURCE_RE.fullmatch(body)
    if m:
        return Marker("source", body, (m.group(2), m.group(4)))
    if body == "this":
        return Marker("this", body)
    if body in ("ref", "source") or body.startswith(("ref(", "source(")):
        return Marker("invalid", body)
    m = _CALL_RE.fullmatch(body)
    if m:
        return Marker("call", body, (m.group(1), m.group(2)))
    if _NAME_RE.fullmatch(body):
        return Marker("name", body, (body,))
    return Marker("invalid", body)


def iter_markers(sql: str) -> list[Marker]:
    return [parse_marker(m.group(1)) for m in MARKER_PATTERN.finditer(sql)]


def extract_refs(sql: str) -> tuple[list[str], list[tuple[str, str]]]:
    """Return (model refs, source refs) declared by markers, in first-seen order."""
    refs: list[str] = []
    sources: list[tuple[str, str]] = []
    for marker in iter_markers(sql):
        if marker.kind == "ref" and marker.args[0] not in refs:
            refs.append(marker.args[0])
        elif marker.kind == "source":
            pair = (marker.args[0], marker.args[1])
            if pair not in sources:
                sources.append(pair)
    return refs, sources


# --- Header comments ---


def parse_config(sql: str) -> dict[str, str]:
    """Parse ``-- config: key=value, key=value`` from SQL header."""
    match = CONFIG_PATTERN.search(sql)
    if not match:
        return {}
    config: dict[str, str] = {}
    for pair in match.group(1).split(","):
        pair = pair.strip()
        if "=" in pair:
            key, value = pair.split("=", 1)
            config[key.strip()] = value.strip()
    return config


def parse_depends(sql: str) -> list[str]:
    """Parse ``-- depends_on: model_a, model_b`` from SQL header."""
    match = DEPENDS_PATTERN.search(sql)
    if not match:
        return []
    return [dep.strip() for dep in match.group(1).split(",") if dep.strip()]


def parse_assertions(sql: str) -> list[tuple[str, str]]:
    """Parse ``-- assert: expr`` / ``-- assert(warn): expr`` lines into (severity, expr)."""
    return [
        ((m.group(1) or "error").lower(), m.group(2).strip())
        for m in ASSERT_PATTERN.finditer(sql)
    ]


def parse_description(sql: str) -> str:
    """Parse ``-- description: text`` from SQL header."""
    match = DESCRIPTION_PATTERN.search(sql)
    return match.group(1).strip() if match else ""


def parse_column_docs(sql: str) -> dict[str, str]:
    """Parse ``-- col: name: description`` lines from SQL header."""
    return {m.group(1): m.group(2).strip() for m in COL_PATTERN.finditer(sql)}


def parse_incremental_filter(sql: str) -> str | None:
    match = INCREMENTAL_FILTER_PATTERN.search(sql)
    return match.group(1).strip() if match else None


def parse_macro_header(sql: str) -> tuple[str, str] | None:
    """Parse ``-- macro: name(params)``. Returns (name, raw params) or None."""
    match = MACRO_PATTERN.search(sql)
    if not match:
        return None
    return match.group(1), match.group(2)


def strip_config_comments(sql: str) -> str:
    """Remove header metadata comment lines, return the query."""
    query_lines = [line for line in sql.split("\n") if not _META_RE.match(line.strip())]
    while query_lines and not query_lines[0].strip():
        query_lines.pop(0)
    while query_lines and not query_lines[-1].strip():
        query_lines.pop()
    return "\n".join(query_lines)


# --- AST-based table reference extraction ---


def extract_table_refs(sql: str) -> list[str]:
    """Extract schema-qualified table references from compiled SQL using sqlglot AST.

    CTE names are skipped. Three-part names are returned as ``catalog.schema.table``.

    Raises:
        sqlglot.errors.ParseError: when the SQL cannot be parsed.
    """
    parsed = sqlglot.parse_one(sql, read="duckdb")

    cte_names: set[str] = set()
    for cte in parsed.find_all(exp.CTE):
        if cte.alias:
            cte_names.add(cte.alias.lower())

    refs: set[str] = set()
    for table in parsed.find_all(exp.Table):
        catalog = (table.catalog or "").lower()
        schema = (table.db or "").lower()
        name = (table.name or "").lower()

        if not name or name in cte_names:
            continue
        if not schema:
            # Unqualified names can't come from ref()/source(); report them bare
            refs.add(name)
            continue
        if schema in SKIP_SCHEMAS:
            continue
        refs.add(f"{catalog}.{schema}.{name}" if catalog else f"{schema}.{name}")

    return sorted(refs)
