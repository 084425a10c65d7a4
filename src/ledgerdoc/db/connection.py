"""QLDB connection layer: pyqldb driver wrapper and table catalog."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from amazon.ion import simpleion
from pyqldb.config.retry_config import RetryConfig
from pyqldb.driver.qldb_driver import QldbDriver

from ledgerdoc.db.codec import encode, to_native
from ledgerdoc.db.schema import check_identifier

if TYPE_CHECKING:
    from ledgerdoc.config import LedgerCfg

logger = logging.getLogger(__name__)


class LedgerClient:
    """One QLDB ledger, reached through a lazily created pyqldb driver.

    Every call runs in its own transaction via ``execute_lambda``; the
    driver's retry policy applies. Result rows are returned as plain Python
    trees (see codec.to_native).
    """

    def __init__(
        self,
        ledger_name: str,
        *,
        region_name: str | None = None,
        endpoint_url: str | None = None,
        retry_limit: int = 4,
        max_concurrent_transactions: int = 10,
    ) -> None:
        """Store connection settings. The driver is created on first use.

        Args:
            ledger_name: Name of the QLDB ledger.
            region_name: AWS region; falls back to the boto3 default chain.
            endpoint_url: Override for the QLDB session endpoint.
            retry_limit: Retries for OCC conflicts and transient errors.
            max_concurrent_transactions: Driver session pool size.
        """
        self.ledger_name = ledger_name
        self.region_name = region_name
        self.endpoint_url = endpoint_url
        self.retry_limit = retry_limit
        self.max_concurrent_transactions = max_concurrent_transactions
        self._driver: QldbDriver | None = None

    @classmethod
    def from_config(cls, cfg: LedgerCfg) -> LedgerClient:
        return cls(
            cfg.name,
            region_name=cfg.region,
            endpoint_url=cfg.endpoint_url,
            retry_limit=cfg.retry_limit,
            max_concurrent_transactions=cfg.max_concurrent_transactions,
        )

    @property
    def driver(self) -> QldbDriver:
        if self._driver is None:
            kwargs: dict[str, Any] = {
                "retry_config": RetryConfig(retry_limit=self.retry_limit),
                "max_concurrent_transactions": self.max_concurrent_transactions,
            }
            if self.region_name:
                kwargs["region_name"] = self.region_name
            if self.endpoint_url:
                kwargs["endpoint_url"] = self.endpoint_url
            logger.debug("connecting to ledger %s", self.ledger_name)
            self._driver = QldbDriver(self.ledger_name, **kwargs)
        return self._driver

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def execute_statement(self, query: str, params: Iterable[bytes] = ()) -> list[Any]:
        """Run one PartiQL statement in its own transaction.

        Args:
            query: Statement text, with ``?`` placeholders for *params*.
            params: Ion-binary encoded parameters, in placeholder order.

        Returns:
            Result rows as plain Python values.
        """
        values = [simpleion.loads(p) for p in params]
        rows = self.driver.execute_lambda(lambda executor: list(executor.execute_statement(query, *values)))
        return [to_native(r) for r in rows]

    def get_table_names(self) -> list[str]:
        return list(self.driver.list_tables())

    def create_table(self, name: str) -> None:
        check_identifier(name, "table name")
        logger.info("creating table %s", name)
        self.execute_statement(f"CREATE TABLE {name}")

    def create_index(self, table: str, field_name: str) -> None:
        check_identifier(table, "table name")
        check_identifier(field_name, "field name")
        logger.info("creating index %s(%s)", table, field_name)
        self.execute_statement(f"CREATE INDEX ON {table} ({field_name})")

    def get_indexed_fields(self, table: str) -> list[str]:
        """Return the fields indexed on *table*, read from information_schema.user_tables."""
        rows = self.execute_statement(
            "SELECT indexes FROM information_schema.user_tables WHERE name = ?", [encode(table)]
        )
        fields: list[str] = []
        for row in rows:
            for index in row.get("indexes") or []:
                # expr looks like "[vin]"
                expr = str(index.get("expr", ""))
                fields.append(expr.strip("[]"))
        return fields

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._driver is not None:
            self._driver.close()
            self._driver = None

    def __enter__(self) -> LedgerClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class TableCatalog:
    """Cached view of the ledger's tables and indexes.

    The cache is filled on first use and only re-read on refresh(); tables
    and indexes created through the catalog are added to it directly.
    """

    def __init__(self, client: LedgerClient) -> None:
        self._client = client
        self._tables: set[str] | None = None
        self._indexes: dict[str, set[str]] = {}

    def refresh(self) -> None:
        self._tables = set(self._client.get_table_names())
        self._indexes.clear()

    @property
    def tables(self) -> set[str]:
        if self._tables is None:
            self.refresh()
        return set(self._tables or ())

    def __contains__(self, table: object) -> bool:
        return table in self.tables

    def create(self, table: str) -> bool:
        """Create *table* unless it exists. Returns True when it was created."""
        tables = self.tables
        if table in tables:
            return False
        self._client.create_table(table)
        self._tables = tables | {table}
        return True

    def indexes(self, table: str) -> set[str]:
        if table not in self._indexes:
            self._indexes[table] = set(self._client.get_indexed_fields(table)) if table in self else set()
        return set(self._indexes[table])

    def ensure_index(self, table: str, field_name: str) -> bool:
        """Create an index on *table*.*field_name* unless one exists. Returns True when created."""
        if field_name in self.indexes(table):
            return False
        self._client.create_index(table, field_name)
        self._indexes.setdefault(table, set()).add(field_name)
        return True
