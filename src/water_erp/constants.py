"""Enumerations and schema constants shared across the water delivery ERP.

The data access layer, the business services and the CLI all import their
identifiers from here so table names, statuses and notification kinds have a
single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Mapping, Sequence


# Schema version recorded in the workbook and expected in config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

CENT = Decimal("0.01")

# Oldest reconciliation warnings kept on a runtime context are dropped past this.
MAX_RECONCILIATION_WARNINGS = 100


class TableName(str, Enum):
    """Logical tables persisted by the record store, one worksheet each."""

    PRODUCTS = "products"
    CLIENTS = "clients"
    PURCHASES = "purchases"
    SALES = "sales"
    EXPENSES = "expenses"
    ORDERS = "orders"


class StockStatus(str, Enum):
    """Derived availability of a product relative to its minimum stock."""

    CRITICAL = "Critical"
    LOW = "Low"
    AVAILABLE = "Available"


class OrderStatus(str, Enum):
    """Delivery lifecycle of a scheduled order."""

    PENDING = "Pending"
    IN_TRANSIT = "InTransit"
    DELIVERED = "Delivered"


class NotificationKind(str, Enum):
    """Events handed to the notification hook after a successful mutation."""

    LOW_STOCK = "stock"
    CRITICAL_STOCK = "stock_critico"
    NEW_ORDER = "pedido"
    RECONCILIATION_WARNING = "reconciliation_warning"


# Store-managed columns that precede the entity fields on every table sheet.
OWNER_COLUMN = "OwnerID"
ID_COLUMN = "id"

SEQUENCES_SHEET = "_sequences"
SEQUENCES_COLUMNS: Sequence[str] = ("OwnerID", "TableName", "LastID")

META_SHEET = "_meta"
META_COLUMNS: Sequence[str] = ("Key", "Value")
SCHEMA_VERSION_KEY = "SchemaVersion"

TABLE_FIELDS: Mapping[TableName, Sequence[str]] = {
    TableName.PRODUCTS: (
        "name",
        "quantity",
        "unit_price",
        "minimum_stock",
        "description",
        "created_at",
    ),
    TableName.CLIENTS: (
        "name",
        "address",
        "phone",
        "description",
        "registered_on",
    ),
    TableName.PURCHASES: (
        "product_id",
        "product_name",
        "quantity",
        "unit_price",
        "total",
        "date",
        "description",
        "created_at",
    ),
    TableName.SALES: (
        "client_id",
        "client_name",
        "product_id",
        "product_name",
        "quantity",
        "unit_price",
        "total",
        "date",
        "time",
        "description",
        "created_at",
    ),
    TableName.EXPENSES: (
        "title",
        "amount",
        "description",
        "date",
        "created_at",
    ),
    TableName.ORDERS: (
        "client_id",
        "client_name",
        "client_address",
        "product_id",
        "product_name",
        "quantity",
        "unit_price",
        "total",
        "date",
        "time",
        "scheduled_date",
        "scheduled_time",
        "status",
        "created_at",
    ),
}


def table_columns(table: TableName) -> list[str]:
    """Return the full header row for ``table`` including store columns."""

    return [OWNER_COLUMN, ID_COLUMN, *TABLE_FIELDS[table]]


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CENT",
    "TableName",
    "StockStatus",
    "OrderStatus",
    "NotificationKind",
    "OWNER_COLUMN",
    "ID_COLUMN",
    "SEQUENCES_SHEET",
    "SEQUENCES_COLUMNS",
    "META_SHEET",
    "META_COLUMNS",
    "SCHEMA_VERSION_KEY",
    "TABLE_FIELDS",
    "table_columns",
]
