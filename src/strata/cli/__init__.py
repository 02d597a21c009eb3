"""CLI interface for strata.

Split into modules by command group. The Typer app and shared helpers live
here; each module registers its commands.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

app = typer.Typer(
    name="strata",
    help="Layered SQL model graph on DuckDB: build in dependency order, test, check source freshness.",
    no_args_is_help=True,
)
console = Console()

# Exit code for declaration errors (bad config, unknown refs, cycles)
LOAD_ERROR_EXIT = 2


def _resolve_project(project_dir: Path | None = None) -> Path:
    project_dir = project_dir or Path.cwd()
    if not (project_dir / "project.yml").exists():
        console.print(f"[red]No project.yml found in {project_dir}[/red]")
        console.print("Run [bold]strata init[/bold] to create a new project.")
        raise typer.Exit(1)
    return project_dir


def _load_config(project_dir: Path, env: str | None = None):
    """Load project config with optional environment override."""
    from strata.config import load_project
    from strata.engine.errors import LoadError

    try:
        return load_project(project_dir, env=env)
    except LoadError as e:
        _load_failed(e)


def _load_failed(error: Exception) -> None:
    console.print(f"[red]Load error:[/red] {error}")
    raise typer.Exit(LOAD_ERROR_EXIT)


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level for the strata logger"),
) -> None:
    from strata import setup_logging

    setup_logging(log_level)


# Import submodules so they register their commands on `app`.
from strata.cli import models  # noqa: E402, F401
from strata.cli import pipeline  # noqa: E402, F401
from strata.cli import project  # noqa: E402, F401
from strata.cli import quality  # noqa: E402, F401
