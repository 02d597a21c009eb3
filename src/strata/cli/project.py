"""Project management commands: init."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer

from strata.cli import app, console


@app.command()
def init(
    name: Annotated[str, typer.Argument(help="Project name")] = "my-project",
    directory: Annotated[Optional[Path], typer.Option("--dir", "-d", help="Target directory")] = None,
) -> None:
    """Scaffold a new strata project with sample sources, macros and models."""
    from strata.templates import (
        GITIGNORE_TEMPLATE,
        PROJECT_YML_TEMPLATE,
        SAMPLE_CUSTOMER_REVENUE_SQL,
        SAMPLE_INT_ORDER_PAYMENTS_SQL,
        SAMPLE_MACRO_SQL,
        SAMPLE_STG_ORDERS_SQL,
        SAMPLE_STG_PAYMENTS_SQL,
        SOURCES_YML_TEMPLATE,
    )

    target = directory or Path.cwd() / name
    if (target / "project.yml").exists():
        console.print(f"[red]{target / 'project.yml'} already exists[/red]")
        raise typer.Exit(1)

    dirs = ["macros", "models/staging", "models/intermediate", "models/marts"]
    for d in dirs:
        (target / d).mkdir(parents=True, exist_ok=True)

    (target / "project.yml").write_text(PROJECT_YML_TEMPLATE.format(name=name))
    (target / "sources.yml").write_text(SOURCES_YML_TEMPLATE)
    (target / "macros" / "cents_to_dollars.sql").write_text(SAMPLE_MACRO_SQL)
    (target / "models" / "staging" / "stg_orders.sql").write_text(SAMPLE_STG_ORDERS_SQL)
    (target / "models" / "staging" / "stg_payments.sql").write_text(SAMPLE_STG_PAYMENTS_SQL)
    (target / "models" / "intermediate" / "int_order_payments.sql").write_text(SAMPLE_INT_ORDER_PAYMENTS_SQL)
    (target / "models" / "marts" / "customer_revenue.sql").write_text(SAMPLE_CUSTOMER_REVENUE_SQL)
    (target / ".gitignore").write_text(GITIGNORE_TEMPLATE)

    console.print(f"[green]Project '{name}' created at {target}[/green]")
    console.print()
    console.print("Structure:")
    for d in dirs:
        console.print(f"  {d}/")
    console.print()
    console.print("Quick start:")
    console.print(f"  cd {name}")
    console.print("  # load raw.orders and raw.payments into warehouse.duckdb, then:")
    console.print("  strata graph      # inspect the model graph")
    console.print("  strata build      # run models, then test assertions and freshness")
