"""Pipeline orchestration: the materializer worker pool and the run/test entry points."""

from __future__ import annotations

import heapq
import json
import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import duckdb

from strata.config import ProjectConfig
from strata.engine.database import connect, ensure_schemas
from strata.engine.errors import ExecutionError
from strata.engine.sources import build_source_registry

from .compiler import ResolutionContext, compile_all, discover_macros
from .discovery import discover_models
from .execution import materialize
from .freshness import check_freshness
from .graph import ModelGraph, build_graph
from .models import CompiledModel, ModelResult, RunResult, TestResult
from .quality import run_assertions

logger = logging.getLogger("strata.transform")

EventCallback = Callable[[str, ModelResult], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Materializer:
    """Builds a model graph in dependency order on a bounded worker pool.

    Ready models (all parents succeeded) wait in a heap keyed by name, so a
    single worker reproduces the graph's topological order exactly. A failed
    model marks all of its descendants skipped; unrelated branches keep going.
    ``cancel()`` stops dispatching; models already running finish.
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        graph: ModelGraph,
        ctx: ResolutionContext,
        threads: int = 1,
        full_refresh: bool = False,
        cancel_event: threading.Event | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.conn = conn
        self.graph = graph
        self.ctx = ctx
        self.threads = max(1, threads)
        self.full_refresh = full_refresh
        self._cancel = cancel_event or threading.Event()
        self._on_event = on_event
        self._result: RunResult | None = None

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _emit(self, name: str) -> None:
        if self._on_event and self._result:
            self._on_event(name, self._result.models[name])

    def _fail(self, name: str, error: str) -> None:
        assert self._result is not None
        res = self._result.models[name]
        res.status = "failed"
        res.error = error
        self._emit(name)
        for child in self.graph.descendants(name):
            child_res = self._result.models[child]
            if child_res.status == "pending":
                child_res.status = "skipped"
                child_res.error = f"upstream model '{name}' failed"
                self._emit(child)

    def _build(self, compiled: CompiledModel) -> tuple[int, int, str | None]:
        """Worker body. Runs on its own cursor and never raises."""
        cursor = self.conn.cursor()
        try:
            duration_ms, row_count = materialize(cursor, compiled, self.full_refresh)
            return duration_ms, row_count, None
        except ExecutionError as e:
            return 0, 0, e.message
        except Exception as e:
            logger.exception("Unexpected error building %s", compiled.name)
            return 0, 0, str(e)
        finally:
            cursor.close()

    def _ensure_schemas(self, compiled: dict[str, CompiledModel]) -> None:
        # Up front and single-threaded: concurrent CREATE SCHEMA conflicts in DuckDB
        schemas = sorted({
            f"{c.relation.catalog}.{c.relation.schema}" if c.relation.catalog else c.relation.schema
            for c in compiled.values()
        })
        ensure_schemas(self.conn, schemas)

    def run(self, abort_on_compile_error: bool = False) -> RunResult:
        order = self.graph.order()
        result = RunResult(started_at=_now())
        self._result = result
        for name in order:
            model = self.graph.models[name]
            result.models[name] = ModelResult(
                name=name,
                materialized=model.materialized,
                relation=str(self.ctx.relation(name)),
            )

        compiled, errors = compile_all(self.graph, self.ctx)

        if errors and abort_on_compile_error:
            logger.error("Aborting run: %d model(s) failed to compile", len(errors))
            for name in order:
                if name in errors:
                    self._fail(name, f"compile error: {errors[name].message}")
            for name in order:
                if result.models[name].status == "pending":
                    result.models[name].status = "skipped"
                    result.models[name].error = "run aborted on compile errors"
                    self._emit(name)
            return self._finish(result)

        for name in order:
            if name in errors:
                self._fail(name, f"compile error: {errors[name].message}")

        if compiled:
            self._ensure_schemas(compiled)

        remaining = {name: len(self.graph.parents(name)) for name in order}
        ready = [name for name in order if remaining[name] == 0 and result.models[name].status == "pending"]
        heapq.heapify(ready)
        in_flight: dict[Future[tuple[int, int, str | None]], str] = {}

        with ThreadPoolExecutor(max_workers=self.threads, thread_name_prefix="strata-build") as pool:
            while True:
                while ready and len(in_flight) < self.threads and not self.cancelled:
                    name = heapq.heappop(ready)
                    if result.models[name].status != "pending":
                        continue
                    result.models[name].status = "running"
                    logger.debug("Dispatching %s", name)
                    self._emit(name)
                    in_flight[pool.submit(self._build, compiled[name])] = name

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=in_flight.__getitem__):
                    name = in_flight.pop(future)
                    duration_ms, row_count, error = future.result()
                    res = result.models[name]
                    res.duration_ms = duration_ms
                    if error is not None:
                        logger.error("Model %s failed: %s", name, error)
                        self._fail(name, error)
                        continue
                    res.status = "succeeded"
                    res.row_count = row_count
                    logger.info("Built %s (%s) in %dms", name, res.materialized, duration_ms)
                    self._emit(name)
                    for child in self.graph.children(name):
                        remaining[child] -= 1
                        if remaining[child] == 0 and result.models[child].status == "pending":
                            heapq.heappush(ready, child)

        return self._finish(result)

    def _finish(self, result: RunResult) -> RunResult:
        result.finished_at = _now()
        statuses = {r.status for r in result.models.values()}
        if self.cancelled and "pending" in statuses:
            result.status = "cancelled"
        elif "failed" in statuses:
            result.status = "failed"
        else:
            result.status = "succeeded"
        logger.info(
            "Run %s: %d succeeded, %d failed, %d skipped",
            result.status,
            len(result.by_status("succeeded")),
            len(result.by_status("failed")),
            len(result.by_status("skipped")),
        )
        return result


def load_project_graph(config: ProjectConfig) -> tuple[ModelGraph, ResolutionContext]:
    """Load sources, models and macros from declarations.

    Raises:
        LoadError: for any malformed, cyclic, or unresolvable declaration.
    """
    sources = build_source_registry(config.sources)
    models = discover_models(config.models_dir)
    graph = build_graph(models, sources)
    macros = discover_macros(config.macros_dir)
    ctx = ResolutionContext.for_graph(graph, config.target, macros)
    return graph, ctx


def write_results(path: Path, payload: dict[str, Any]) -> None:
    """Write a run/test report as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=str))


def run_project(
    config: ProjectConfig,
    conn: duckdb.DuckDBPyConnection | None = None,
    targets: list[str] | None = None,
    upstream: bool = False,
    downstream: bool = False,
    threads: int | None = None,
    full_refresh: bool = False,
    abort_on_compile_error: bool = False,
    cancel_event: threading.Event | None = None,
    on_event: EventCallback | None = None,
    write_artifacts: bool = True,
) -> RunResult:
    """Build the project's model graph.

    Args:
        config: Loaded project configuration.
        conn: DuckDB connection (opened from config.db_path when omitted).
        targets: Model names to build (None = all).
        upstream / downstream: Extend targets with ancestors / descendants.
        threads: Worker pool size (default: target.threads).
        full_refresh: Rebuild incremental models from scratch.
        abort_on_compile_error: Build nothing if any model fails to compile.
        cancel_event: Set to stop dispatching new models.
        on_event: Called on the main thread after each model status change.
        write_artifacts: Write target/run_results.json.

    Raises:
        LoadError: before any execution, if declarations are invalid.
    """
    graph, ctx = load_project_graph(config)
    if targets and targets != ["all"]:
        graph = graph.select(targets, upstream=upstream, downstream=downstream)

    own_conn = conn is None
    if own_conn:
        conn = connect(config.db_path)
    try:
        materializer = Materializer(
            conn,
            graph,
            ctx,
            threads=threads or config.target.threads,
            full_refresh=full_refresh,
            cancel_event=cancel_event,
            on_event=on_event,
        )
        result = materializer.run(abort_on_compile_error=abort_on_compile_error)
    finally:
        if own_conn:
            conn.close()

    result.environment = config.active_environment
    if write_artifacts:
        write_results(config.target_dir / "run_results.json", result.to_dict())
    return result


def test_project(
    config: ProjectConfig,
    conn: duckdb.DuckDBPyConnection | None = None,
    targets: list[str] | None = None,
    now: datetime | None = None,
    include_freshness: bool = True,
    write_artifacts: bool = True,
) -> TestResult:
    """Evaluate every assertion and every source freshness SLA. Read-only.

    Assertions run independently of one another and of the build; a failing
    assertion never stops the rest from being evaluated.
    """
    graph, ctx = load_project_graph(config)
    if targets and targets != ["all"]:
        graph = graph.select(targets)

    own_conn = conn is None
    if own_conn:
        conn = connect(config.db_path, read_only=True)
    result = TestResult(started_at=_now(), fail_on_stale_error=config.quality.fail_on_stale_error)
    try:
        for name in graph.order():
            model = graph.models[name]
            if model.assertions:
                result.assertions.extend(
                    run_assertions(conn, model, ctx.relations, config.quality.sample_size)
                )
        if include_freshness:
            result.freshness = check_freshness(conn, graph.sources, now)
    finally:
        if own_conn:
            conn.close()

    result.finished_at = _now()
    if write_artifacts:
        write_results(config.target_dir / "test_results.json", result.to_dict())
    return result


test_project.__test__ = False  # not a pytest test
