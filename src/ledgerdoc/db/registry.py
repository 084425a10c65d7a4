"""Build one LedgerRepository per table declared in ledgerdoc.yaml.

Reference fields (``table: <Name>``) need the target repository to exist
before the referencing schema is built, so tables are constructed in
dependency order. A reference cycle cannot be expressed and raises
ConfigError.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ledgerdoc.config import ConfigError, LedgerdocConfig
from ledgerdoc.db.compiler import ParamStyle
from ledgerdoc.db.connection import LedgerClient, TableCatalog
from ledgerdoc.db.mapper import DepthPolicy
from ledgerdoc.db.repository import LedgerRepository
from ledgerdoc.db.schema import SchemaError, SchemaModel


def referenced_tables(fields: Mapping[str, Any]) -> set[str]:
    """Return every table named by a ``table:`` key in *fields*, nested fields included."""
    found: set[str] = set()
    for raw in fields.values():
        if not isinstance(raw, Mapping):
            continue
        if raw.get("table"):
            found.add(str(raw["table"]))
        if isinstance(raw.get("fields"), Mapping):
            found |= referenced_tables(raw["fields"])
    return found


def build_repositories(
    client: LedgerClient,
    cfg: LedgerdocConfig,
    *,
    catalog: TableCatalog | None = None,
) -> dict[str, LedgerRepository]:
    """Create repositories for ``cfg.tables``, sharing one catalog.

    Args:
        client: Ledger client every repository talks to.
        cfg: Loaded configuration (tables plus mapper/compiler/repository settings).
        catalog: Shared table cache; created from *client* when omitted.

    Returns:
        Mapping of table name to repository, in declaration order.

    Raises:
        ConfigError: On an undeclared reference target, a reference cycle, or
            an invalid field declaration.
    """
    catalog = catalog if catalog is not None else TableCatalog(client)
    built: dict[str, LedgerRepository] = {}
    visiting: list[str] = []

    def build(name: str) -> LedgerRepository:
        if name in built:
            return built[name]
        if name not in cfg.tables:
            raise ConfigError(f"Table '{name}' is referenced but not declared under 'tables'.")
        if name in visiting:
            cycle = " -> ".join(visiting[visiting.index(name):] + [name])
            raise ConfigError(f"Reference cycle between tables: {cycle}")

        visiting.append(name)
        table_cfg = cfg.tables[name]
        for dep in sorted(referenced_tables(table_cfg.fields)):
            build(dep)
        try:
            schema = SchemaModel.from_mapping(table_cfg.fields, built.__getitem__)
            repo = LedgerRepository(
                client,
                name,
                schema,
                catalog=catalog,
                timestamps=(
                    table_cfg.timestamps if table_cfg.timestamps is not None else cfg.repository.timestamps
                ),
                auto_create=cfg.repository.auto_create_tables,
                max_depth=cfg.mapper.max_depth,
                depth_policy=DepthPolicy(cfg.mapper.depth_policy),
                param_style=ParamStyle(cfg.compiler.param_style),
            )
        except SchemaError as exc:
            raise ConfigError(f"tables.{name}: {exc}") from None
        visiting.pop()
        built[name] = repo
        return repo

    for name in cfg.tables:
        build(name)
    return {name: built[name] for name in cfg.tables}
