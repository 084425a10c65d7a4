"""ledgerdoc get / add / update / delete — document CRUD on a declared table.

Usage:
  ledgerdoc get Person --where 'age>=30' --order name:desc --limit 10
  ledgerdoc add Person --data '{"id": "p1", "name": "Ann"}'
  ledgerdoc update Person --set '{"age": 31}' --where id=p1
  ledgerdoc delete Vehicle --where vin=V1 --recursive --yes
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from ledgerdoc.cli.errors import err_query, err_refused, err_validation
from ledgerdoc.cli.session import (
    cell,
    open_repositories,
    parse_document,
    parse_order,
    parse_where,
    pick,
    to_json,
)
from ledgerdoc.db.compiler import QueryError
from ledgerdoc.db.models import Outcome, QueryArgs

console = Console()

WhereOpt = Annotated[
    list[str] | None,
    typer.Option("--where", "-w", help="Filter FIELD OP VALUE (OP: = != > >= < <=). Repeatable."),
]


def get_cmd(
    table: Annotated[str, typer.Argument(help="Declared table name.")],
    where: WhereOpt = None,
    fields: Annotated[
        list[str] | None,
        typer.Option("--field", "-f", help="Only show this field. Repeatable."),
    ] = None,
    order: Annotated[
        str | None,
        typer.Option("--order", "-o", help="Sort by FIELD[:asc|desc] (client-side)."),
    ] = None,
    limit: Annotated[int | None, typer.Option("--limit", help="Maximum rows to show.")] = None,
    offset: Annotated[int, typer.Option("--offset", help="Rows to skip.")] = 0,
    as_json: Annotated[bool, typer.Option("--json", help="Print rows as JSON.")] = False,
) -> None:
    """List documents of TABLE, optionally filtered, sorted and paginated."""
    with open_repositories() as repos:
        repo = pick(repos, table)
        args = QueryArgs(
            where=parse_where(where, repo.schema),
            fields=fields or None,
            order=parse_order(order),
            limit=limit,
            offset=offset,
        )
        try:
            page = repo.get_by(args)
        except QueryError as exc:
            console.print(err_query(str(exc)))
            raise typer.Exit(1) from None

    if as_json:
        typer.echo(to_json(list(page)))
        return
    if not page:
        console.print(f"[dim]No documents in {table} match.[/]")
        return
    _print_rows(table, page)
    if len(page) < page.total:
        console.print(f"[dim]{len(page)} of {page.total} documents (offset {offset}).[/]")


def add_cmd(
    table: Annotated[str, typer.Argument(help="Declared table name.")],
    data: Annotated[str | None, typer.Option("--data", "-d", help="Document as a JSON object.")] = None,
    file: Annotated[
        Path | None,
        typer.Option("--file", exists=True, dir_okay=False, help="Read the JSON document from a file."),
    ] = None,
) -> None:
    """Validate a document and insert it into TABLE."""
    if data is None and file is None:
        console.print(err_query("Pass the document with --data or --file."))
        raise typer.Exit(1)
    document = parse_document(data, file, "--file" if file is not None else "--data")

    with open_repositories() as repos:
        repo = pick(repos, table)
        outcome = repo.add(document)

    _report(outcome, f"Inserted into {table}")


def update_cmd(
    table: Annotated[str, typer.Argument(help="Declared table name.")],
    values: Annotated[str, typer.Option("--set", "-s", help="Fields to set, as a JSON object.")],
    where: WhereOpt = None,
) -> None:
    """Update documents of TABLE matching --where."""
    fields = parse_document(values, None, "--set")

    with open_repositories() as repos:
        repo = pick(repos, table)
        try:
            outcome = repo.update(fields, parse_where(where, repo.schema))
        except QueryError as exc:
            console.print(err_query(str(exc)))
            raise typer.Exit(1) from None

    _report(outcome, f"Updated {table}")


def delete_cmd(
    table: Annotated[str, typer.Argument(help="Declared table name.")],
    where: WhereOpt = None,
    recursive: Annotated[
        bool,
        typer.Option("--recursive", "-r", help="Also delete the documents referenced by the match."),
    ] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
) -> None:
    """Delete documents of TABLE matching --where."""
    with open_repositories() as repos:
        repo = pick(repos, table)
        conditions = parse_where(where, repo.schema)
        if conditions and not yes:
            scope = " and the documents they reference" if recursive else ""
            if not typer.confirm(f"Delete matching documents from {table}{scope}?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)
        try:
            outcome = repo.delete(conditions, recursive=recursive)
        except QueryError as exc:
            console.print(err_query(str(exc)))
            raise typer.Exit(1) from None

    _report(outcome, f"Deleted from {table}")


# ------------------------------------------------------------------
# Output
# ------------------------------------------------------------------


def _print_rows(title: str, rows: list[Any]) -> None:
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    t = Table(title=title, show_lines=False)
    for column in columns:
        t.add_column(column)
    for row in rows:
        t.add_row(*(cell(row.get(c)) for c in columns))
    console.print(t)


def _report(outcome: Outcome, done: str) -> None:
    if outcome.refused is not None:
        console.print(err_refused(outcome.refused))
        raise typer.Exit(1)
    if outcome.errors:
        console.print(err_validation(outcome.errors))
        raise typer.Exit(1)
    ids = outcome.document_ids
    console.print(f"[green]✓[/] {done}: {len(ids) or len(outcome.rows)} document(s)")
    for doc_id in ids:
        console.print(f"  {doc_id}")
