"""ledgerdoc CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.logging import RichHandler

from ledgerdoc.cli.documents import add_cmd, delete_cmd, get_cmd, update_cmd
from ledgerdoc.cli.history import history_cmd
from ledgerdoc.cli.init import init_cmd
from ledgerdoc.cli.tables import tables_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("ledgerdoc")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"ledgerdoc {_installed_version()}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    """Route library logging through rich; DEBUG with --verbose, WARNING otherwise."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=verbose, show_path=False)],
        force=True,
    )
    # botocore is chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)


app = typer.Typer(
    name="ledgerdoc",
    help=(
        "ledgerdoc — schema-driven documents on an Amazon QLDB ledger.\n\n"
        "  ledgerdoc get      Read documents (filter, sort, paginate).\n"
        "  ledgerdoc history  Audit every committed revision of a document."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log compiled statements and ledger calls."),
    ] = False,
) -> None:
    """ledgerdoc — schema-driven documents on an Amazon QLDB ledger."""
    configure_logging(verbose)


app.command("init")(init_cmd)
app.command("tables")(tables_cmd)
app.command("get")(get_cmd)
app.command("add")(add_cmd)
app.command("update")(update_cmd)
app.command("delete")(delete_cmd)
app.command("history")(history_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed ledgerdoc version."""
    typer.echo(f"ledgerdoc {_installed_version()}")


if __name__ == "__main__":
    app()
