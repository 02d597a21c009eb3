"""Error taxonomy for the strata engine.

LoadError aborts before anything executes. CompileError and ExecutionError are
per-model and turn into skips downstream. AssertionFailure and
FreshnessViolation are raised only on request from a finished TestResult.
"""

from __future__ import annotations

from typing import Any


class StrataError(Exception):
    """Base class for all strata errors."""


class LoadError(StrataError):
    """Malformed, cyclic, or unresolvable project declarations."""

    def __init__(self, message: str, cycle: list[str] | None = None) -> None:
        super().__init__(message)
        self.cycle = cycle or []


class ModelError(StrataError):
    """An error tied to a single model."""

    def __init__(self, model: str, message: str) -> None:
        super().__init__(f"{model}: {message}")
        self.model = model
        self.message = message


class CompileError(ModelError):
    """A model's reference expressions or macros could not be resolved."""


class ExecutionError(ModelError):
    """The target store rejected a model's statement."""


class AssertionFailure(StrataError):
    """One or more error-severity assertions failed."""

    def __init__(self, results: list[Any]) -> None:
        names = ", ".join(f"{r.model}: {r.expression}" for r in results)
        super().__init__(f"{len(results)} assertion(s) failed: {names}")
        self.results = results


class FreshnessViolation(StrataError):
    """One or more sources are past their error threshold."""

    def __init__(self, results: list[Any]) -> None:
        names = ", ".join(r.source for r in results)
        super().__init__(f"{len(results)} stale source(s): {names}")
        self.results = results
