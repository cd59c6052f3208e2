"""Stock classification and incremental reconciliation rules.

The purchase and sale services never recompute stock from the ledger.
Instead each lifecycle event moves the product's on-hand quantity by a signed
delta through :func:`apply_stock_delta`, which holds the product's record lock
for the whole read-modify-write and refuses to drive stock below zero.

Adjustments that cannot be applied (the product no longer exists, or the
decrement would go negative) do not raise. They come back as a
:class:`ReconciliationWarning` so the calling service can log it, publish it
and, in strict mode, escalate it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from . import log
from .constants import StockStatus, TableName
from .data_manager import RecordStore
from .exceptions import InsufficientStockError
from .models import Product, deserialize_product, serialize_product


PRODUCT_NOT_FOUND = "product_not_found"
WOULD_GO_NEGATIVE = "would_go_negative"


@dataclass(frozen=True)
class ReconciliationWarning:
    """A stock adjustment that was skipped instead of applied."""

    product_id: int
    delta: int
    reason: str
    source: str
    available: Optional[int] = None

    def describe(self) -> str:
        if self.reason == PRODUCT_NOT_FOUND:
            return f"{self.source}: product {self.product_id} not found, delta {self.delta:+d} skipped"
        return (
            f"{self.source}: product {self.product_id} has {self.available} units, "
            f"delta {self.delta:+d} would go negative and was skipped"
        )

    def as_payload(self) -> dict:
        return {
            "product_id": self.product_id,
            "delta": self.delta,
            "reason": self.reason,
            "source": self.source,
            "available": self.available,
        }


@dataclass(frozen=True)
class StockAdjustment:
    """Outcome of one :func:`apply_stock_delta` call."""

    product_id: int
    delta: int
    product: Optional[Product]
    warning: Optional[ReconciliationWarning] = None

    @property
    def applied(self) -> bool:
        return self.warning is None


def classify_stock(quantity: int, minimum_stock: int) -> StockStatus:
    """Classify ``quantity`` against ``minimum_stock``.

    Below the minimum is critical, below twice the minimum is low, anything
    else is available. A zero minimum therefore always reads as available.
    """

    if quantity < minimum_stock:
        return StockStatus.CRITICAL
    if quantity < 2 * minimum_stock:
        return StockStatus.LOW
    return StockStatus.AVAILABLE


def product_status(product: Product) -> StockStatus:
    return classify_stock(product.quantity, product.minimum_stock)


def require_available(product: Product, quantity: int, *, available: Optional[int] = None) -> None:
    """Raise :class:`InsufficientStockError` when ``quantity`` exceeds stock.

    Args:
        product (Product): Product the units are taken from.
        quantity (int): Units requested.
        available (int | None): Override for the units considered on hand,
            used when a sale edit first gives back its previous units.
    """

    on_hand = product.quantity if available is None else available
    if on_hand < quantity:
        log.warning(
            "Rejected request for %d units of product %s (available=%d)",
            quantity,
            product.id,
            on_hand,
        )
        raise InsufficientStockError(product.id, quantity, on_hand)


def apply_stock_delta(store: RecordStore, product_id: int, delta: int, *, source: str) -> StockAdjustment:
    """Move the on-hand quantity of ``product_id`` by ``delta`` units.

    The product is read and written under its record lock. A missing product
    or a result below zero leaves the product untouched and reports a
    :class:`ReconciliationWarning` instead.

    Args:
        store (RecordStore): Store bound to the product owner's namespace.
        product_id (int): Product whose stock moves.
        delta (int): Signed unit change; positive for stock-in.
        source (str): Short description of the ledger event, used in logs
            and warnings (for example ``"purchase 3 created"``).

    Returns:
        StockAdjustment: The product after the change (or as found when the
            change was skipped) plus any warning.
    """

    with store.record_lock(TableName.PRODUCTS, product_id):
        record = store.get_by_id(TableName.PRODUCTS, product_id)
        if record is None:
            warning = ReconciliationWarning(
                product_id=product_id,
                delta=delta,
                reason=PRODUCT_NOT_FOUND,
                source=source,
            )
            return StockAdjustment(product_id=product_id, delta=delta, product=None, warning=warning)

        product = deserialize_product(record)
        new_quantity = product.quantity + delta
        if new_quantity < 0:
            warning = ReconciliationWarning(
                product_id=product_id,
                delta=delta,
                reason=WOULD_GO_NEGATIVE,
                source=source,
                available=product.quantity,
            )
            return StockAdjustment(product_id=product_id, delta=delta, product=product, warning=warning)

        updated = replace(product, quantity=new_quantity)
        store.update(TableName.PRODUCTS, serialize_product(updated))

    log.info(
        "Adjusted stock of product %d by %+d to %d (%s)",
        product_id,
        delta,
        new_quantity,
        source,
    )
    return StockAdjustment(product_id=product_id, delta=delta, product=updated)
