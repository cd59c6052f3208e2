"""Entity dataclasses and their conversion to and from store records.

Records handed to :class:`~water_erp.data_manager.RecordStore` only hold
workbook friendly scalars: money travels as :class:`~decimal.Decimal`, dates
and times as ISO strings. The ``deserialize_*`` helpers are tolerant of the
types ``openpyxl`` hands back after a round trip through disk (floats for
numbers, ``datetime`` objects for cells Excel reinterpreted).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from .constants import CENT, ID_COLUMN, OrderStatus


@dataclass(frozen=True)
class Product:
    """Mutable current state of a stocked item."""

    name: str
    quantity: int
    unit_price: Decimal
    minimum_stock: int
    description: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Client:
    """A delivery customer."""

    name: str
    address: str
    phone: str
    description: Optional[str] = None
    registered_on: Optional[date] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Purchase:
    """Stock-in ledger entry with a snapshot of the product name."""

    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    date: date
    description: Optional[str] = None
    total: Optional[Decimal] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Sale:
    """Stock-out ledger entry with client and product snapshots."""

    client_id: int
    client_name: str
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    date: date
    time: Optional[time] = None
    description: Optional[str] = None
    total: Optional[Decimal] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Expense:
    title: str
    amount: Decimal
    date: date
    description: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Order:
    """Scheduled delivery; a promise to sell that never touches stock."""

    client_id: int
    client_name: str
    client_address: str
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    date: date
    time: Optional[time] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[time] = None
    status: OrderStatus = OrderStatus.PENDING
    total: Optional[Decimal] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------


def to_money(value: Any) -> Decimal:
    """Coerce ``value`` to a two-decimal :class:`Decimal`."""

    if value is None or value == "":
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT)


def _to_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(Decimal(str(value)))


def _to_optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(Decimal(str(value)))


def _to_optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _to_time(value: Any) -> Optional[time]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.time()
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


def _iso(value: Optional[date | time]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _with_id(record: Dict[str, Any], record_id: Optional[int]) -> Dict[str, Any]:
    if record_id is not None:
        record[ID_COLUMN] = record_id
    return record


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_product(product: Product) -> Dict[str, Any]:
    return _with_id(
        {
            "name": product.name,
            "quantity": product.quantity,
            "unit_price": product.unit_price,
            "minimum_stock": product.minimum_stock,
            "description": product.description,
            "created_at": product.created_at,
        },
        product.id,
    )


def deserialize_product(record: Mapping[str, Any]) -> Product:
    return Product(
        id=_to_optional_int(record.get(ID_COLUMN)),
        name=str(record.get("name") or ""),
        quantity=_to_int(record.get("quantity")),
        unit_price=to_money(record.get("unit_price")),
        minimum_stock=_to_int(record.get("minimum_stock")),
        description=_to_optional_text(record.get("description")),
        created_at=_to_optional_text(record.get("created_at")),
    )


def serialize_client(client: Client) -> Dict[str, Any]:
    return _with_id(
        {
            "name": client.name,
            "address": client.address,
            "phone": client.phone,
            "description": client.description,
            "registered_on": _iso(client.registered_on),
        },
        client.id,
    )


def deserialize_client(record: Mapping[str, Any]) -> Client:
    return Client(
        id=_to_optional_int(record.get(ID_COLUMN)),
        name=str(record.get("name") or ""),
        address=str(record.get("address") or ""),
        phone=str(record.get("phone") or ""),
        description=_to_optional_text(record.get("description")),
        registered_on=_to_date(record.get("registered_on")),
    )


def serialize_purchase(purchase: Purchase) -> Dict[str, Any]:
    return _with_id(
        {
            "product_id": purchase.product_id,
            "product_name": purchase.product_name,
            "quantity": purchase.quantity,
            "unit_price": purchase.unit_price,
            "total": purchase.total,
            "date": _iso(purchase.date),
            "description": purchase.description,
            "created_at": purchase.created_at,
        },
        purchase.id,
    )


def deserialize_purchase(record: Mapping[str, Any]) -> Purchase:
    return Purchase(
        id=_to_optional_int(record.get(ID_COLUMN)),
        product_id=_to_int(record.get("product_id")),
        product_name=str(record.get("product_name") or ""),
        quantity=_to_int(record.get("quantity")),
        unit_price=to_money(record.get("unit_price")),
        total=to_money(record.get("total")),
        date=_to_date(record.get("date")),
        description=_to_optional_text(record.get("description")),
        created_at=_to_optional_text(record.get("created_at")),
    )


def serialize_sale(sale: Sale) -> Dict[str, Any]:
    return _with_id(
        {
            "client_id": sale.client_id,
            "client_name": sale.client_name,
            "product_id": sale.product_id,
            "product_name": sale.product_name,
            "quantity": sale.quantity,
            "unit_price": sale.unit_price,
            "total": sale.total,
            "date": _iso(sale.date),
            "time": _iso(sale.time),
            "description": sale.description,
            "created_at": sale.created_at,
        },
        sale.id,
    )


def deserialize_sale(record: Mapping[str, Any]) -> Sale:
    return Sale(
        id=_to_optional_int(record.get(ID_COLUMN)),
        client_id=_to_int(record.get("client_id")),
        client_name=str(record.get("client_name") or ""),
        product_id=_to_int(record.get("product_id")),
        product_name=str(record.get("product_name") or ""),
        quantity=_to_int(record.get("quantity")),
        unit_price=to_money(record.get("unit_price")),
        total=to_money(record.get("total")),
        date=_to_date(record.get("date")),
        time=_to_time(record.get("time")),
        description=_to_optional_text(record.get("description")),
        created_at=_to_optional_text(record.get("created_at")),
    )


def serialize_expense(expense: Expense) -> Dict[str, Any]:
    return _with_id(
        {
            "title": expense.title,
            "amount": expense.amount,
            "description": expense.description,
            "date": _iso(expense.date),
            "created_at": expense.created_at,
        },
        expense.id,
    )


def deserialize_expense(record: Mapping[str, Any]) -> Expense:
    return Expense(
        id=_to_optional_int(record.get(ID_COLUMN)),
        title=str(record.get("title") or ""),
        amount=to_money(record.get("amount")),
        description=_to_optional_text(record.get("description")),
        date=_to_date(record.get("date")),
        created_at=_to_optional_text(record.get("created_at")),
    )


def serialize_order(order: Order) -> Dict[str, Any]:
    return _with_id(
        {
            "client_id": order.client_id,
            "client_name": order.client_name,
            "client_address": order.client_address,
            "product_id": order.product_id,
            "product_name": order.product_name,
            "quantity": order.quantity,
            "unit_price": order.unit_price,
            "total": order.total,
            "date": _iso(order.date),
            "time": _iso(order.time),
            "scheduled_date": _iso(order.scheduled_date),
            "scheduled_time": _iso(order.scheduled_time),
            "status": OrderStatus(order.status).value,
            "created_at": order.created_at,
        },
        order.id,
    )


def deserialize_order(record: Mapping[str, Any]) -> Order:
    status_raw = record.get("status")
    return Order(
        id=_to_optional_int(record.get(ID_COLUMN)),
        client_id=_to_int(record.get("client_id")),
        client_name=str(record.get("client_name") or ""),
        client_address=str(record.get("client_address") or ""),
        product_id=_to_int(record.get("product_id")),
        product_name=str(record.get("product_name") or ""),
        quantity=_to_int(record.get("quantity")),
        unit_price=to_money(record.get("unit_price")),
        total=to_money(record.get("total")),
        date=_to_date(record.get("date")),
        time=_to_time(record.get("time")),
        scheduled_date=_to_date(record.get("scheduled_date")),
        scheduled_time=_to_time(record.get("scheduled_time")),
        status=OrderStatus(status_raw) if status_raw else OrderStatus.PENDING,
        created_at=_to_optional_text(record.get("created_at")),
    )
