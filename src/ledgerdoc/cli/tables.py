"""ledgerdoc tables — declared tables versus tables present in the ledger.

With --create, declared tables missing from the ledger are created.
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from ledgerdoc.cli.session import open_repositories
from ledgerdoc.db.types import FieldKind

console = Console()


def tables_cmd(
    create: Annotated[
        bool,
        typer.Option("--create", help="Create declared tables that are missing from the ledger."),
    ] = False,
) -> None:
    """List declared tables and whether they exist in the ledger."""
    with open_repositories() as repos:
        if not repos:
            console.print("[yellow]No tables declared.[/] Add them under 'tables:' in ledgerdoc.yaml.")
            raise typer.Exit(0)
        catalog = next(iter(repos.values())).catalog
        catalog.refresh()
        ledger_tables = catalog.tables

        created: list[str] = []
        if create:
            created = [name for name in repos if catalog.create(name)]

        t = Table(title="Tables")
        t.add_column("Table")
        t.add_column("Primary key")
        t.add_column("References")
        t.add_column("In ledger")
        for name, repo in repos.items():
            refs = ", ".join(
                f"{f.name} → {f.target.table}" for f in repo.schema if f.kind is FieldKind.REFERENCE
            )
            if name in created:
                status = "[green]created[/]"
            elif name in ledger_tables:
                status = "[green]✓[/]"
            else:
                status = "[yellow]missing[/]"
            t.add_row(name, repo.schema.primary_key or "[dim]-[/]", refs or "[dim]-[/]", status)
        console.print(t)

        undeclared = sorted(ledger_tables - set(repos))
        if undeclared:
            console.print(f"[dim]Ledger tables not declared: {', '.join(undeclared)}[/]")
