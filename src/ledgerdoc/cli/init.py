"""ledgerdoc init — project scaffold.

Creates:
  ledgerdoc.yaml             — ledger connection + example table declarations
  ~/.ledgerdoc/config.yaml   — global connection defaults (created once, mode 0o600)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from ledgerdoc.config import ensure_global_config

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")

_TEMPLATE = """\
# ledgerdoc project configuration.
# AWS credentials are read by boto3 (environment, ~/.aws), never from this file.

ledger:
  name: {ledger}
  region: {region}
  # endpoint_url: https://session.qldb.eu-west-1.amazonaws.com
  retry_limit: 4

mapper:
  max_depth: 3
  depth_policy: accept   # accept | reject

compiler:
  param_style: parameterized   # parameterized | literal

repository:
  auto_create_tables: true
  timestamps: false

tables:
  Person:
    fields:
      id: {{kind: string, primaryKey: true}}
      name: {{kind: string}}
      age: {{kind: integer, allowNull: true}}
  Vehicle:
    timestamps: true
    fields:
      vin: {{kind: string, primaryKey: true}}
      owner: {{kind: reference, table: Person}}
      specs:
        kind: object
        fields:
          make: {{kind: string}}
          year: {{kind: integer}}
"""


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    ledger: Annotated[str, typer.Option("--ledger", help="Ledger name.")] = "my-ledger",
    region: Annotated[str, typer.Option("--region", help="AWS region of the ledger.")] = "eu-west-1",
    force: Annotated[bool, typer.Option("--force", help="Overwrite an existing ledgerdoc.yaml.")] = False,
) -> None:
    """Write a ledgerdoc.yaml template and the global config."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)
    target = project_dir / "ledgerdoc.yaml"

    if target.exists() and not force:
        console.print(f"[yellow]⚠[/]  {target} already exists.")
        if not typer.confirm("Overwrite it?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

    target.write_text(_TEMPLATE.format(ledger=ledger, region=region), encoding="utf-8")
    console.print(f"  [green]✓[/] {target}")

    cfg_path = ensure_global_config()
    console.print(f"  [green]✓[/] {cfg_path} (global config)")

    console.print("\nNext steps:")
    console.print("  1. Edit tables: in ledgerdoc.yaml      (declare your documents)")
    console.print("  2. ledgerdoc tables --create          (create them in the ledger)")
    console.print("  3. ledgerdoc add <Table> --data '{...}'")
