"""Data quality assertions: parsing and evaluation against materialized models."""

from __future__ import annotations

import ast
import logging
import operator
import re
from typing import Any

import duckdb

from strata.engine.errors import StrataError

from .models import Assertion, AssertionResult, Relation, SQLModel

logger = logging.getLogger("strata.transform")

SEVERITIES = ("error", "warn")

_ROW_COUNT_RE = re.compile(r"^row_count\s*(>=|<=|==|!=|>|<|=)\s*(\d+)$")
_NOT_NULL_RE = re.compile(r"^(?:not_null|no_nulls)\(\s*(\w+)\s*\)$")
_UNIQUE_RE = re.compile(r"^unique\(\s*(\w+(?:\s*,\s*\w+)*)\s*\)$")
_ACCEPTED_RE = re.compile(r"^accepted_values\(\s*(\w+)\s*,\s*(\[.*\])\s*\)$", re.DOTALL)
_RELATIONSHIPS_RE = re.compile(
    r"^relationships\(\s*(\w+)\s*,\s*(?:\{\{\s*)?ref\(\s*['\"](\w+)['\"]\s*\)(?:\s*\}\})?"
    r"\s*(?:,\s*(\w+)\s*)?\)$"
)
_BUILTIN_CALL_RE = re.compile(r"^(unique|not_null|no_nulls|accepted_values|relationships)\s*\(")

_OPERATORS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "=": operator.eq,
    "==": operator.eq,
    "!=": operator.ne,
}


def parse_assertion(expr: str, severity: str = "error") -> Assertion:
    """Parse one assertion expression.

    Supported forms:
        unique(col[, col...])
        not_null(col)                        (alias: no_nulls)
        accepted_values(col, ['a', 'b'])
        relationships(col, ref('parent')[, parent_col])
        row_count > 0
        <any row-level boolean SQL expression>

    Raises:
        ValueError: for an unknown severity or a malformed built-in form.
    """
    expr = expr.strip()
    severity = severity.lower()
    if severity not in SEVERITIES:
        raise ValueError(f"unknown severity {severity!r}")
    if not expr:
        raise ValueError("empty assertion")

    m = _ROW_COUNT_RE.match(expr)
    if m:
        return Assertion(
            kind="row_count", expression=expr, severity=severity,
            operator=m.group(1), threshold=int(m.group(2)),
        )

    m = _NOT_NULL_RE.match(expr)
    if m:
        return Assertion(kind="not_null", expression=expr, severity=severity, columns=(m.group(1),))

    m = _UNIQUE_RE.match(expr)
    if m:
        cols = tuple(c.strip() for c in m.group(1).split(","))
        return Assertion(kind="unique", expression=expr, severity=severity, columns=cols)

    m = _ACCEPTED_RE.match(expr)
    if m:
        try:
            values = ast.literal_eval(m.group(2))
        except (ValueError, SyntaxError) as e:
            raise ValueError(f"accepted_values list is not a literal: {e}") from e
        if not isinstance(values, list) or not values:
            raise ValueError("accepted_values needs a non-empty list")
        if not all(isinstance(v, (str, int, float, bool)) for v in values):
            raise ValueError("accepted_values entries must be strings, numbers or booleans")
        return Assertion(
            kind="accepted_values", expression=expr, severity=severity,
            columns=(m.group(1),), values=tuple(values),
        )

    m = _RELATIONSHIPS_RE.match(expr)
    if m:
        col, parent, parent_col = m.group(1), m.group(2), m.group(3)
        return Assertion(
            kind="relationships", expression=expr, severity=severity,
            columns=(col,), parent=parent, parent_column=parent_col or col,
        )

    if _BUILTIN_CALL_RE.match(expr):
        raise ValueError("malformed arguments")

    return Assertion(kind="expression", expression=expr, severity=severity)


def _sql_literal(value: Any) -> str:
    """Typed SQL literal, so membership compares in the column's own type."""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


def violation_query(assertion: Assertion, table: str, parent_table: str | None = None) -> str:
    """Row-level query returning every row that violates ``assertion``."""
    kind = assertion.kind
    if kind == "not_null":
        return f'SELECT * FROM {table} WHERE "{assertion.columns[0]}" IS NULL'
    if kind == "unique":
        cols = ", ".join(f'"{c}"' for c in assertion.columns)
        join = " AND ".join(f't."{c}" = d."{c}"' for c in assertion.columns)
        return (
            f"SELECT t.* FROM {table} AS t "
            f"JOIN (SELECT {cols} FROM {table} GROUP BY {cols} HAVING COUNT(*) > 1) AS d "
            f"ON {join}"
        )
    if kind == "accepted_values":
        col = assertion.columns[0]
        values = ", ".join(_sql_literal(v) for v in assertion.values)
        return (
            f'SELECT * FROM {table} WHERE "{col}" IS NOT NULL '
            f'AND "{col}" NOT IN ({values})'
        )
    if kind == "relationships":
        col = assertion.columns[0]
        return (
            f"SELECT child.* FROM {table} AS child "
            f'WHERE child."{col}" IS NOT NULL AND NOT EXISTS ('
            f"SELECT 1 FROM {parent_table} AS parent "
            f'WHERE parent."{assertion.parent_column}" = child."{col}")'
        )
    if kind == "expression":
        return f"SELECT * FROM {table} WHERE NOT COALESCE(({assertion.expression}), FALSE)"
    raise ValueError(f"No violation query for assertion kind {kind!r}")


def _identity_columns(model: SQLModel, assertion: Assertion) -> str:
    cols: list[str] = []
    for c in [*model.key_columns, *assertion.columns]:
        if c not in cols:
            cols.append(c)
    return ", ".join(f'"{c}"' for c in cols) if cols else "*"


def evaluate_assertion(
    conn: duckdb.DuckDBPyConnection,
    model: SQLModel,
    assertion: Assertion,
    table: str,
    parent_table: str | None = None,
    sample_size: int = 5,
) -> AssertionResult:
    """Evaluate a single assertion against ``table``."""
    result = AssertionResult(
        model=model.name,
        expression=assertion.expression,
        kind=assertion.kind,
        severity=assertion.severity,
    )

    if assertion.kind == "row_count":
        count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        result.passed = bool(_OPERATORS[assertion.operator](count, assertion.threshold))
        result.violations = 0 if result.passed else 1
        result.detail = f"row_count={count}"
        return result

    query = violation_query(assertion, table, parent_table)
    violations = conn.execute(f"SELECT COUNT(*) FROM ({query}) AS violations").fetchone()[0]
    result.violations = violations
    result.passed = violations == 0
    result.detail = f"{violations} violating row(s)"

    if violations and sample_size:
        result.sample = _sample_violations(conn, query, _identity_columns(model, assertion), sample_size)
    return result


def _sample_violations(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    ident: str,
    sample_size: int,
) -> list[dict[str, Any]]:
    """Fetch identities of the first violating rows; falls back to whole rows."""
    for columns in dict.fromkeys([ident, "*"]):
        try:
            rel = conn.execute(
                f"SELECT {columns} FROM ({query}) AS violations ORDER BY ALL LIMIT {int(sample_size)}"
            )
        except duckdb.BinderException:
            # declared unique_key not present in the model output
            continue
        names = [d[0] for d in rel.description]
        return [dict(zip(names, row)) for row in rel.fetchall()]
    return []


def run_assertions(
    conn: duckdb.DuckDBPyConnection,
    model: SQLModel,
    relations: dict[str, Relation],
    sample_size: int = 5,
) -> list[AssertionResult]:
    """Run every assertion attached to ``model``.

    ``relations`` maps model names to their materialized relations. Each
    assertion runs on its own; an assertion that cannot be evaluated is
    reported as failed with ``error`` set and the rest still run.
    """
    results: list[AssertionResult] = []
    table = str(relations[model.name])
    for assertion in model.assertions:
        try:
            parent_table = str(relations[assertion.parent]) if assertion.parent else None
            result = evaluate_assertion(conn, model, assertion, table, parent_table, sample_size)
        except (duckdb.Error, StrataError, KeyError) as e:
            logger.warning("Assertion %r on %s could not be evaluated: %s", assertion.expression, model.name, e)
            result = AssertionResult(
                model=model.name,
                expression=assertion.expression,
                kind=assertion.kind,
                severity=assertion.severity,
                passed=False,
                error=str(e),
                detail=f"Assertion error: {e}",
            )
        if not result.passed:
            log = logger.warning if result.severity == "warn" else logger.error
            log("Assertion %s on %s: %s (%s)", result.status, model.name, result.expression, result.detail)
        results.append(result)
    return results
