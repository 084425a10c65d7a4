"""ledgerdoc history — every committed revision of one document.

Usage:
  ledgerdoc history Person p1
  ledgerdoc history Person p1 --from 2024-01-01 --to 2024-06-30
  ledgerdoc history Person 8F0TPCmdNQ6JTRpiLj2TmW --document-id
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from ledgerdoc.cli.errors import err_not_found, err_validation
from ledgerdoc.cli.session import cell, open_repositories, parse_value, pick, to_json
from ledgerdoc.db.models import DocumentRecord

console = Console()


def history_cmd(
    table: Annotated[str, typer.Argument(help="Declared table name.")],
    key: Annotated[str, typer.Argument(help="Primary key value (or document id with --document-id).")],
    start: Annotated[str | None, typer.Option("--from", help="Window start (ISO date or timestamp).")] = None,
    end: Annotated[str | None, typer.Option("--to", help="Window end; requires --from.")] = None,
    document_id: Annotated[
        bool,
        typer.Option("--document-id", help="KEY is the ledger document id, not the primary key."),
    ] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Print revisions as JSON.")] = False,
) -> None:
    """Show the revision history of one document in TABLE."""
    with open_repositories() as repos:
        repo = pick(repos, table)
        if document_id:
            outcome = repo.get_history_by_document_id(key, start=start, end=end)
        else:
            outcome = repo.get_history_by_primary_key(parse_value(key), start=start, end=end)

    if outcome.errors:
        console.print(err_validation(outcome.errors))
        raise typer.Exit(1)
    records: list[DocumentRecord] = outcome.rows
    if not records:
        console.print(err_not_found(table, key))
        raise typer.Exit(0)

    records = sorted(records, key=lambda r: r.metadata.version)
    if as_json:
        typer.echo(to_json([_record_dict(r) for r in records]))
        return

    t = Table(title=f"{table} {key}")
    t.add_column("Version", justify="right")
    t.add_column("Committed")
    t.add_column("Transaction")
    t.add_column("Data")
    for r in records:
        data = cell(r.data) if r.data is not None else "[red]deleted[/]"
        t.add_row(str(r.metadata.version), cell(r.metadata.tx_time), cell(r.metadata.tx_id), data)
    console.print(t)
    console.print(f"[dim]Document id: {records[0].metadata.id}[/]")


def _record_dict(record: DocumentRecord) -> dict:
    return {
        "id": record.metadata.id,
        "version": record.metadata.version,
        "txId": record.metadata.tx_id,
        "txTime": record.metadata.tx_time,
        "data": record.data,
    }
