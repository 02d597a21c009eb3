"""Pipeline commands: run, build."""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Iterator, Optional

import typer

from strata.cli import _load_config, _load_failed, _resolve_project, app, console


def print_model_event(name: str, result) -> None:
    """Progress line for a model that reached a terminal state."""
    label = f"[bold]{name}[/bold] ({result.materialized})"
    if result.status == "succeeded":
        suffix = f" ({result.row_count:,} rows, {result.duration_ms}ms)" if result.row_count else f" ({result.duration_ms}ms)"
        console.print(f"  [green]done[/green]  {label}{suffix}")
    elif result.status == "failed":
        console.print(f"  [red]fail[/red]  {label}: {result.error}")
    elif result.status == "skipped":
        console.print(f"  [dim]skip[/dim]  {label} [dim]({result.error})[/dim]")


def print_run_summary(result) -> None:
    console.print()
    parts = [
        f"{len(result.by_status('succeeded'))} succeeded",
        f"{len(result.by_status('failed'))} failed",
        f"{len(result.by_status('skipped'))} skipped",
    ]
    pending = result.by_status("pending")
    if pending:
        parts.append(f"{len(pending)} not started")
    color = "green" if result.status == "succeeded" else "red"
    console.print(f"  [{color}]{result.status}[/{color}]: {', '.join(parts)}")


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """First Ctrl-C stops dispatching new models; running ones finish."""
    event = threading.Event()

    def _handler(signum, frame):
        if event.is_set():
            raise KeyboardInterrupt
        console.print("\n[yellow]Cancelling: waiting for running models to finish (Ctrl-C again to abort)[/yellow]")
        event.set()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not in the main thread; cancellation is unavailable
        yield event
        return
    try:
        yield event
    finally:
        signal.signal(signal.SIGINT, previous)


def _run(
    project_dir: Path,
    targets: list[str] | None,
    env: str | None,
    threads: int | None,
    full_refresh: bool,
    upstream: bool,
    downstream: bool,
    abort_on_compile_error: bool,
):
    from strata.engine.errors import LoadError
    from strata.engine.transform import run_project

    config = _load_config(project_dir, env)
    env_label = f" [dim](env={config.active_environment})[/dim]" if config.active_environment else ""
    console.print(f"[bold]Run{env_label}:[/bold]")

    with cancel_on_interrupt() as cancel_event:
        try:
            result = run_project(
                config,
                targets=targets,
                upstream=upstream,
                downstream=downstream,
                threads=threads,
                full_refresh=full_refresh,
                abort_on_compile_error=abort_on_compile_error,
                cancel_event=cancel_event,
                on_event=print_model_event,
            )
        except LoadError as e:
            _load_failed(e)

    if not result.models:
        console.print("[yellow]No models found.[/yellow]")
    print_run_summary(result)
    return config, result


@app.command()
def run(
    targets: Annotated[Optional[list[str]], typer.Argument(help="Specific models to build")] = None,
    threads: Annotated[Optional[int], typer.Option("--threads", "-t", help="Max parallel workers (default: target.threads)")] = None,
    full_refresh: Annotated[bool, typer.Option("--full-refresh", help="Rebuild incremental models from scratch")] = False,
    upstream: Annotated[bool, typer.Option("--upstream", "-u", help="Also build ancestors of the targets")] = False,
    downstream: Annotated[bool, typer.Option("--downstream", "-d", help="Also build descendants of the targets")] = False,
    abort_on_compile_error: Annotated[bool, typer.Option("--abort-on-compile-error", help="Build nothing if any model fails to compile")] = False,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use (e.g. dev, prod)")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Build models in dependency order.

    A failed model skips everything downstream of it; independent branches
    still build. Exits non-zero if any model failed.
    """
    project_dir = _resolve_project(project_dir)
    _, result = _run(project_dir, targets, env, threads, full_refresh, upstream, downstream, abort_on_compile_error)
    if result.exit_code:
        raise typer.Exit(result.exit_code)


@app.command()
def build(
    threads: Annotated[Optional[int], typer.Option("--threads", "-t", help="Max parallel workers (default: target.threads)")] = None,
    full_refresh: Annotated[bool, typer.Option("--full-refresh", help="Rebuild incremental models from scratch")] = False,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use (e.g. dev, prod)")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Run every model, then test assertions and source freshness."""
    from strata.cli.quality import print_test_result
    from strata.engine.errors import LoadError
    from strata.engine.transform import test_project

    project_dir = _resolve_project(project_dir)
    config, run_result = _run(project_dir, None, env, threads, full_refresh, False, False, False)

    console.print()
    console.print("[bold]Test:[/bold]")
    try:
        test_result = test_project(config)
    except LoadError as e:
        _load_failed(e)
    print_test_result(test_result)

    if run_result.exit_code or test_result.exit_code:
        raise typer.Exit(1)
