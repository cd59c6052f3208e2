"""Read-only aggregates over the bound user's ledger and catalogue.

Nothing here writes to the store. Report functions read the current tables
through the service layer and derive totals on the fly, so they always
reflect the latest committed state.
"""

from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from . import log
from .constants import OrderStatus, StockStatus
from .core_logic import RuntimeContext, list_expenses, list_orders, list_products, list_purchases, list_sales
from .inventory import product_status
from .models import Order, Product


ZERO = Decimal("0.00")


def _in_range(when: Optional[date], start: Optional[date], end: Optional[date]) -> bool:
    if when is None:
        return start is None and end is None
    if start is not None and when < start:
        return False
    if end is not None and when > end:
        return False
    return True


def _sum(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for value in values:
        total += value
    return total


def calculate_financial_summary(
    context: RuntimeContext,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> Dict[str, Decimal]:
    """Total purchases, sales and expenses dated within ``[start, end]``.

    Either bound may be omitted. Profit is
    ``sales - purchases - expenses``.

    Args:
        context (RuntimeContext): Context with a bound user.
        start (date | None): First day included.
        end (date | None): Last day included.

    Returns:
        dict[str, Decimal]: ``purchases``, ``sales``, ``expenses`` and
            ``profit`` rounded to cents.

    Raises:
        ValueError: If ``start`` is after ``end``.
    """
    if start is not None and end is not None and start > end:
        log.error("Invalid report range: %s is after %s", start, end)
        raise ValueError("start must not be after end")

    purchases = _sum(p.total for p in list_purchases(context) if _in_range(p.date, start, end))
    sales = _sum(s.total for s in list_sales(context) if _in_range(s.date, start, end))
    expenses = _sum(e.amount for e in list_expenses(context) if _in_range(e.date, start, end))
    profit = sales - purchases - expenses
    log.debug(
        "Calculated financial summary: purchases=%s sales=%s expenses=%s profit=%s",
        purchases,
        sales,
        expenses,
        profit,
    )
    return {
        "purchases": purchases,
        "sales": sales,
        "expenses": expenses,
        "profit": profit,
    }


def list_inventory_alerts(context: RuntimeContext) -> Dict[str, List[Product]]:
    """Split products below Available into ``critical`` and ``low`` lists."""
    alerts: Dict[str, List[Product]] = {"critical": [], "low": []}
    for product in sorted(list_products(context), key=lambda item: item.quantity):
        status = product_status(product)
        if status is StockStatus.CRITICAL:
            alerts["critical"].append(product)
        elif status is StockStatus.LOW:
            alerts["low"].append(product)
    return alerts


def calculate_stock_valuation(context: RuntimeContext) -> Decimal:
    """Return the value of stock on hand at current unit prices."""
    return _sum(
        (Decimal(product.quantity) * product.unit_price).quantize(ZERO)
        for product in list_products(context)
    )


def rank_clients_by_orders(
    context: RuntimeContext,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[Dict[str, object]]:
    """Rank clients by the number of orders placed in ``[start, end]``.

    Ties are broken by order value, then by client id. Each entry carries
    ``client_id``, ``client_name``, ``orders`` and ``total``.
    """
    ranking: Dict[int, Dict[str, object]] = {}
    for order in list_orders(context):
        if not _in_range(order.date, start, end):
            continue
        entry = ranking.setdefault(
            order.client_id,
            {"client_id": order.client_id, "client_name": order.client_name, "orders": 0, "total": ZERO},
        )
        entry["orders"] = int(entry["orders"]) + 1
        entry["total"] = Decimal(entry["total"]) + order.total
    return sorted(
        ranking.values(),
        key=lambda entry: (-int(entry["orders"]), -Decimal(entry["total"]), int(entry["client_id"])),
    )


def list_upcoming_orders(context: RuntimeContext, on: Optional[date] = None) -> List[Order]:
    """Return undelivered orders sorted by schedule.

    With ``on`` given only orders scheduled for that day are kept. Orders
    without a scheduled date fall back to their order date.
    """

    def schedule(order: Order):
        return (order.scheduled_date or order.date, order.scheduled_time or time.min, order.id or 0)

    pending = [
        order
        for order in list_orders(context)
        if order.status is not OrderStatus.DELIVERED
        and (on is None or (order.scheduled_date or order.date) == on)
    ]
    return sorted(pending, key=schedule)
