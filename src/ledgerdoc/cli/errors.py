"""ledgerdoc rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from ledgerdoc.cli.errors import err_no_ledger_name
    console.print(err_no_ledger_name())
    raise typer.Exit(1)
"""

from __future__ import annotations

from rich.markup import escape

from ledgerdoc.db.models import Refusal, ValidationError


def err_config(message: str) -> str:
    """ledgerdoc.yaml or the global config could not be loaded."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {escape(message)}"
    )


def err_no_ledger_name() -> str:
    """No ledger configured anywhere."""
    return (
        "[red]Error:[/] No ledger name configured.\n"
        "  Set ledger.name in ledgerdoc.yaml, or:  export LEDGERDOC_LEDGER_NAME=<ledger>\n"
        "  Run:  ledgerdoc init  to create a template."
    )


def err_unknown_table(name: str, known: list[str]) -> str:
    """TABLE argument is not declared under tables:."""
    known_list = ", ".join(known) if known else "(none)"
    return (
        f"[red]Error:[/] Table '{escape(name)}' is not declared in ledgerdoc.yaml.\n"
        f"  Declared tables: {escape(known_list)}\n"
        "  Add it under 'tables:' with its fields."
    )


def err_invalid_json(what: str, detail: str) -> str:
    """--data / --set / --file is not a JSON object."""
    return (
        f"[red]Error:[/] {what} is not a valid JSON object: {escape(detail)}\n"
        "  Example:  --data '{\"id\": \"p1\", \"name\": \"Ann\"}'"
    )


def err_invalid_where(term: str) -> str:
    """--where term could not be parsed."""
    return (
        f"[red]Error:[/] Cannot parse --where '{escape(term)}'.\n"
        "  Use FIELD OP VALUE with OP one of = != > >= < <=, e.g.  --where 'age>=30'"
    )


def err_invalid_order(term: str) -> str:
    """--order term could not be parsed."""
    return (
        f"[red]Error:[/] Cannot parse --order '{escape(term)}'.\n"
        "  Use FIELD or FIELD:asc / FIELD:desc, e.g.  --order name:desc"
    )


def err_query(message: str) -> str:
    """The compiler rejected the request (unknown field, operator, ...)."""
    return f"[red]Error:[/] {escape(message)}"


def err_validation(errors: list[ValidationError]) -> str:
    """Document failed validation — list every error."""
    lines = ["[red]Error:[/] Document failed validation:"]
    for e in errors:
        detail = e.kind.value
        if e.expected is not None:
            detail += f" (expected {e.expected}"
            detail += f", got {e.received})" if e.received is not None else ")"
        elif e.value is not None:
            detail += f" ({e.value!r})"
        lines.append(f"  {escape(e.field or '<document>')}: {escape(detail)}")
    return "\n".join(lines)


def err_refused(refusal: Refusal) -> str:
    """Compiler refused an unconditioned update or delete."""
    return (
        f"[red]Error:[/] Refused: {escape(refusal.message or refusal.reason)}\n"
        "  Pass at least one --where FIELD=VALUE."
    )


def err_not_found(table: str, key: str) -> str:
    """No document with this key."""
    return (
        f"[yellow]Not found:[/] no document '{escape(key)}' in {escape(table)}.\n"
        f"  Run:  ledgerdoc get {escape(table)}  to list documents."
    )
