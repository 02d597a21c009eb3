"""Data classes for the model graph, runs, and test results."""

from __future__ import annotations

import hashlib
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from strata.engine.errors import AssertionFailure, FreshnessViolation

LAYERS = ("staging", "intermediate", "marts")
MATERIALIZATIONS = ("view", "table", "incremental")
INCREMENTAL_STRATEGIES = ("merge", "delete+insert")


def _hash_content(content: str) -> str:
    """Hash SQL content for run reports. Normalizes whitespace."""
    normalized = re.sub(r"\s+", " ", content.strip())
    return hashlib.sha256(normalized.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class Relation:
    """Physical address of a materialized object in the target store."""

    schema: str
    name: str
    catalog: str | None = None

    def __str__(self) -> str:
        if self.catalog:
            return f"{self.catalog}.{self.schema}.{self.name}"
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True)
class Assertion:
    """A declarative data-quality predicate attached to a model."""

    kind: str  # "unique", "not_null", "accepted_values", "relationships", "row_count", "expression"
    expression: str  # the assertion as written
    severity: str = "error"  # "error" or "warn"
    columns: tuple[str, ...] = ()
    values: tuple[Any, ...] = ()  # accepted_values
    parent: str | None = None  # relationships: parent model name
    parent_column: str | None = None
    operator: str | None = None  # row_count comparison
    threshold: int | None = None


@dataclass
class SQLModel:
    """A single SQL transformation model."""

    path: Path
    name: str  # e.g. "stg_orders"
    layer: str  # "staging", "intermediate", "marts"
    sql: str  # raw file content
    query: str  # body without header comments, markers unresolved
    materialized: str = "view"  # "view", "table", or "incremental"
    refs: list[str] = field(default_factory=list)  # ref('x') targets
    source_refs: list[tuple[str, str]] = field(default_factory=list)  # source('s', 't') targets
    depends_on: list[str] = field(default_factory=list)  # explicit ordering-only deps
    description: str = ""
    column_docs: dict[str, str] = field(default_factory=dict)
    assertions: list[Assertion] = field(default_factory=list)
    unique_key: str | None = None  # comma-separated for composite keys
    incremental_strategy: str = "merge"
    incremental_filter: str | None = None  # predicate over output columns, may use {{ this }}
    content_hash: str = ""

    def __post_init__(self) -> None:
        self.content_hash = _hash_content(self.query)

    @property
    def key_columns(self) -> list[str]:
        if not self.unique_key:
            return []
        return [k.strip() for k in self.unique_key.split(",") if k.strip()]

    @property
    def parents(self) -> list[str]:
        """Model names this model must wait for."""
        out = list(self.refs)
        out.extend(d for d in self.depends_on if d not in out)
        return out


@dataclass
class CompiledModel:
    """A model with every marker resolved to a concrete relation."""

    model: SQLModel
    relation: Relation
    sql: str
    incremental_filter_sql: str | None = None

    @property
    def name(self) -> str:
        return self.model.name


@dataclass
class ModelResult:
    """Per-model outcome within a run."""

    name: str
    status: str = "pending"  # "pending", "running", "succeeded", "failed", "skipped"
    materialized: str = ""
    relation: str = ""
    duration_ms: int = 0
    row_count: int = 0
    error: str | None = None


@dataclass
class RunResult:
    """Structured report of one build pass over the graph."""

    started_at: datetime
    finished_at: datetime | None = None
    status: str = "running"  # "succeeded", "failed", "cancelled"
    models: dict[str, ModelResult] = field(default_factory=dict)
    environment: str | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.status == "succeeded" else 1

    def by_status(self, status: str) -> list[str]:
        return [name for name, r in self.models.items() if r.status == status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status,
            "environment": self.environment,
            "models": [asdict(r) for r in self.models.values()],
        }


@dataclass
class AssertionResult:
    """Result of a data quality assertion."""

    model: str
    expression: str
    kind: str = "expression"
    severity: str = "error"
    passed: bool = False
    violations: int = 0
    detail: str = ""
    sample: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None  # the assertion could not be evaluated

    @property
    def status(self) -> str:
        if self.passed:
            return "pass"
        return "warn" if self.severity == "warn" else "fail"


@dataclass
class FreshnessResult:
    """Freshness state of one source table."""

    source: str  # "shop.orders"
    relation: str
    state: str  # "fresh", "stale-warn", "stale-error", "error"
    max_loaded_at: datetime | None = None
    age_hours: float | None = None
    warn_after_hours: float | None = None
    error_after_hours: float | None = None
    error: str | None = None


@dataclass
class TestResult:
    """Structured report of one quality/freshness pass."""

    __test__ = False  # not a pytest class

    started_at: datetime
    finished_at: datetime | None = None
    assertions: list[AssertionResult] = field(default_factory=list)
    freshness: list[FreshnessResult] = field(default_factory=list)
    fail_on_stale_error: bool = True

    @property
    def failed_assertions(self) -> list[AssertionResult]:
        return [a for a in self.assertions if not a.passed and a.severity == "error"]

    @property
    def warned_assertions(self) -> list[AssertionResult]:
        return [a for a in self.assertions if not a.passed and a.severity == "warn"]

    @property
    def stale_sources(self) -> list[FreshnessResult]:
        return [f for f in self.freshness if f.state in ("stale-error", "error")]

    @property
    def status(self) -> str:
        if self.failed_assertions:
            return "failed"
        if self.fail_on_stale_error and self.stale_sources:
            return "failed"
        return "succeeded"

    @property
    def exit_code(self) -> int:
        return 0 if self.status == "succeeded" else 1

    def raise_for_status(self, include_freshness: bool = False) -> None:
        failed = self.failed_assertions
        if failed:
            raise AssertionFailure(failed)
        if include_freshness and self.stale_sources:
            raise FreshnessViolation(self.stale_sources)

    def to_dict(self) -> dict[str, Any]:
        def _freshness(f: FreshnessResult) -> dict[str, Any]:
            d = asdict(f)
            d["max_loaded_at"] = f.max_loaded_at.isoformat() if f.max_loaded_at else None
            return d

        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status,
            "assertions": [asdict(a) | {"status": a.status} for a in self.assertions],
            "freshness": [_freshness(f) for f in self.freshness],
        }


@dataclass
class ValidationError:
    """A single lint finding from static analysis of compiled models."""

    model: str
    severity: str  # "error" or "warning"
    message: str
