"""Data quality commands: test, freshness."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.table import Table

from strata.cli import _load_config, _load_failed, _resolve_project, app, console

_STATE_STYLE = {
    "fresh": "[green]fresh[/green]",
    "stale-warn": "[yellow]stale-warn[/yellow]",
    "stale-error": "[red]stale-error[/red]",
    "error": "[red]error[/red]",
}


def print_assertions(results) -> None:
    for ar in results:
        if ar.passed:
            console.print(f"  [green]pass[/green]  {ar.model}: {ar.expression}")
            continue
        icon = "[yellow]warn[/yellow]" if ar.severity == "warn" else "[red]FAIL[/red]"
        console.print(f"  {icon}  {ar.model}: {ar.expression} ({ar.detail})")
        for row in ar.sample:
            console.print(f"         [dim]{row}[/dim]")


def print_freshness(results) -> None:
    if not results:
        return
    table = Table(title="Source Freshness")
    table.add_column("Source", style="bold")
    table.add_column("Newest Record")
    table.add_column("Age (h)", justify="right")
    table.add_column("Warn / Error (h)", justify="right")
    table.add_column("State")
    for r in results:
        thresholds = f"{r.warn_after_hours if r.warn_after_hours is not None else '-'} / " \
                     f"{r.error_after_hours if r.error_after_hours is not None else '-'}"
        table.add_row(
            r.source,
            str(r.max_loaded_at)[:19] if r.max_loaded_at else (r.error or "never"),
            f"{r.age_hours:.1f}" if r.age_hours is not None else "?",
            thresholds,
            _STATE_STYLE.get(r.state, r.state),
        )
    console.print(table)


def print_test_result(result) -> None:
    print_assertions(result.assertions)
    print_freshness(result.freshness)
    passed = sum(1 for a in result.assertions if a.passed)
    console.print()
    console.print(
        f"  {passed} passed, {len(result.failed_assertions)} failed, "
        f"{len(result.warned_assertions)} warned, {len(result.stale_sources)} stale source(s)"
    )


@app.command()
def test(
    targets: Annotated[Optional[list[str]], typer.Argument(help="Specific models to test")] = None,
    skip_freshness: Annotated[bool, typer.Option("--skip-freshness", help="Only evaluate assertions")] = False,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Evaluate data quality assertions and source freshness (read-only).

    Every assertion is evaluated even when others fail. Exits non-zero on any
    error-severity failure, or on a stale-error source when
    quality.fail_on_stale_error is set.
    """
    from strata.engine.database import database_exists
    from strata.engine.errors import LoadError
    from strata.engine.transform import test_project

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)
    if not database_exists(config.db_path):
        console.print("[yellow]No warehouse database found. Run strata run first.[/yellow]")
        raise typer.Exit(1)

    try:
        result = test_project(config, targets=targets, include_freshness=not skip_freshness)
    except LoadError as e:
        _load_failed(e)
    print_test_result(result)
    if result.exit_code:
        raise typer.Exit(result.exit_code)


@app.command()
def freshness(
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Check source freshness against the SLAs declared in sources.yml."""
    from strata.engine.database import connect, database_exists
    from strata.engine.errors import LoadError
    from strata.engine.sources import build_source_registry
    from strata.engine.transform import check_freshness

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)
    try:
        sources = build_source_registry(config.sources)
    except LoadError as e:
        _load_failed(e)

    if not any(s.has_freshness for s in sources):
        console.print("[yellow]No sources declare freshness thresholds.[/yellow]")
        return
    if not database_exists(config.db_path):
        console.print("[yellow]No warehouse database found.[/yellow]")
        raise typer.Exit(1)

    conn = connect(config.db_path, read_only=True)
    try:
        results = check_freshness(conn, sources)
    finally:
        conn.close()

    print_freshness(results)
    if any(r.state in ("stale-error", "error") for r in results):
        raise typer.Exit(1)
