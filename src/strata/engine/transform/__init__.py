"""SQL transformation engine.

Discovers layered SQL models, builds their dependency graph, compiles
ref()/source()/macro markers, materializes models in dependency order on a
worker pool, and evaluates data quality assertions and source freshness.

This package re-exports the public symbols:
    from strata.engine.transform import run_project, test_project, build_graph, ...
"""

from __future__ import annotations

# Data models
from .models import (
    Assertion,
    AssertionResult,
    CompiledModel,
    FreshnessResult,
    ModelResult,
    Relation,
    RunResult,
    SQLModel,
    TestResult,
    ValidationError,
)

# Discovery and graph
from .discovery import discover_models, parse_model
from .graph import ModelGraph, build_graph

# Compilation
from .compiler import (
    Macro,
    ResolutionContext,
    compile_all,
    compile_model,
    discover_macros,
    relation_for,
)

# Materialization
from .execution import STRATEGIES, materialize

# Data quality and freshness
from .quality import evaluate_assertion, parse_assertion, run_assertions
from .freshness import check_freshness, check_source_freshness

# Analysis
from .analysis import impact_analysis, validate_models

# Orchestration
from .orchestration import (
    Materializer,
    load_project_graph,
    run_project,
    test_project,
)

__all__ = [
    # Models
    "Assertion",
    "AssertionResult",
    "CompiledModel",
    "FreshnessResult",
    "ModelResult",
    "Relation",
    "RunResult",
    "SQLModel",
    "TestResult",
    "ValidationError",
    # Discovery and graph
    "ModelGraph",
    "build_graph",
    "discover_models",
    "parse_model",
    # Compilation
    "Macro",
    "ResolutionContext",
    "compile_all",
    "compile_model",
    "discover_macros",
    "relation_for",
    # Materialization
    "STRATEGIES",
    "Materializer",
    "materialize",
    # Quality
    "check_freshness",
    "check_source_freshness",
    "evaluate_assertion",
    "parse_assertion",
    "run_assertions",
    # Analysis
    "impact_analysis",
    "validate_models",
    # Orchestration
    "load_project_graph",
    "run_project",
    "test_project",
]
