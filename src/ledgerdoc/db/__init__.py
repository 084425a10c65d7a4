"""ledgerdoc database layer."""

from ledgerdoc.db.compiler import Operator, ParamStyle, QueryError
from ledgerdoc.db.connection import LedgerClient, TableCatalog
from ledgerdoc.db.mapper import DepthPolicy, validate
from ledgerdoc.db.models import DocumentRecord, Outcome, Page, QueryArgs, ValidationError
from ledgerdoc.db.repository import LedgerRepository
from ledgerdoc.db.schema import SchemaError, SchemaField, SchemaModel
from ledgerdoc.db.types import FieldKind

__all__ = [
    "DepthPolicy",
    "DocumentRecord",
    "FieldKind",
    "LedgerClient",
    "LedgerRepository",
    "Operator",
    "Outcome",
    "Page",
    "ParamStyle",
    "QueryArgs",
    "QueryError",
    "SchemaError",
    "SchemaField",
    "SchemaModel",
    "TableCatalog",
    "ValidationError",
    "validate",
]
