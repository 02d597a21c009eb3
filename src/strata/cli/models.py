"""Model inspection commands: compile, graph."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.table import Table

from strata.cli import _load_config, _load_failed, _resolve_project, app, console


@app.command(name="compile")
def compile_cmd(
    model: Annotated[Optional[str], typer.Argument(help="Print the compiled SQL of one model")] = None,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Compile every model to target/compiled/ and lint the result.

    Resolves ref()/source()/macro markers for the active environment, writes
    the SQL, and reports compile errors and lint warnings without touching
    the database.
    """
    from strata.engine.errors import LoadError
    from strata.engine.transform import compile_all, load_project_graph, validate_models

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)
    try:
        graph, ctx = load_project_graph(config)
    except LoadError as e:
        _load_failed(e)

    if model and model not in graph:
        console.print(f"[red]Unknown model '{model}'[/red]")
        raise typer.Exit(1)

    compiled, errors = compile_all(graph, ctx)
    out_dir = config.target_dir / "compiled"
    for name, cm in compiled.items():
        path = out_dir / cm.model.layer / f"{name}.sql"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(cm.sql + "\n")

    if model:
        if model in errors:
            console.print(f"[red]{errors[model]}[/red]")
            raise typer.Exit(1)
        console.print(compiled[model].sql, markup=False, highlight=False)
        return

    findings = validate_models(graph, ctx, compiled, errors)
    for f in findings:
        icon = "[red]error[/red]" if f.severity == "error" else "[yellow]warn[/yellow]"
        console.print(f"  {icon}  [bold]{f.model}[/bold]: {f.message}")

    console.print(
        f"\nCompiled {len(compiled)} of {len(graph)} model(s) to {out_dir}"
        + (f", [red]{len(errors)} error(s)[/red]" if errors else "")
    )
    if errors:
        raise typer.Exit(1)


@app.command()
def graph(
    downstream: Annotated[Optional[str], typer.Option("--downstream", help="Show models affected by changing this one")] = None,
    env: Annotated[Optional[str], typer.Option("--env", "-e", help="Environment to use")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Show the model graph in build order, grouped into parallel tiers."""
    from strata.engine.errors import LoadError
    from strata.engine.transform import impact_analysis, load_project_graph

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir, env)
    try:
        model_graph, ctx = load_project_graph(config)
    except LoadError as e:
        _load_failed(e)

    if downstream:
        if downstream not in model_graph:
            console.print(f"[red]Unknown model '{downstream}'[/red]")
            raise typer.Exit(1)
        impact = impact_analysis(model_graph, downstream)
        if not impact["downstream_models"]:
            console.print(f"Nothing depends on [bold]{downstream}[/bold].")
            return
        console.print(f"[bold]Changing {downstream} affects:[/bold]")
        for parent, children in impact["impact_chain"].items():
            console.print(f"  {parent} -> {', '.join(children)}")
        return

    table = Table(title=f"Model Graph ({len(model_graph)} models)")
    table.add_column("Tier", justify="right")
    table.add_column("Model", style="bold")
    table.add_column("Layer")
    table.add_column("Materialized")
    table.add_column("Relation")
    table.add_column("Depends On")
    for i, tier in enumerate(model_graph.tiers(), 1):
        for name in tier:
            m = model_graph.models[name]
            deps = model_graph.parents(name) + [f"{s}.{t}" for s, t in m.source_refs]
            table.add_row(str(i), name, m.layer, m.materialized, str(ctx.relation(name)), ", ".join(deps))
    console.print(table)
