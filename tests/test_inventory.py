"""Tests for stock classification and single-step stock adjustments."""

from __future__ import annotations

from decimal import Decimal

import pytest

from water_erp import inventory
from water_erp.constants import StockStatus, TableName
from water_erp.exceptions import InsufficientStockError
from water_erp.models import Product, serialize_product


def _add_product(store, quantity: int, minimum_stock: int = 5) -> int:
    product = Product(name="Bidón 20L", quantity=quantity, unit_price=Decimal("25.00"), minimum_stock=minimum_stock)
    return store.add(TableName.PRODUCTS, serialize_product(product))


@pytest.mark.parametrize(
    ("quantity", "minimum_stock", "expected"),
    [
        (4, 5, StockStatus.CRITICAL),
        (5, 5, StockStatus.LOW),
        (9, 5, StockStatus.LOW),
        (10, 5, StockStatus.AVAILABLE),
        (0, 0, StockStatus.AVAILABLE),
    ],
)
def test_classify_stock_thresholds(quantity, minimum_stock, expected):
    assert inventory.classify_stock(quantity, minimum_stock) is expected


def test_require_available_raises_with_details():
    product = Product(name="Botella 1L", quantity=3, unit_price=Decimal("3.50"), minimum_stock=1, id=7)

    with pytest.raises(InsufficientStockError) as excinfo:
        inventory.require_available(product, 4)

    assert (excinfo.value.product_id, excinfo.value.requested, excinfo.value.available) == (7, 4, 3)


def test_require_available_honours_override():
    product = Product(name="Botella 1L", quantity=3, unit_price=Decimal("3.50"), minimum_stock=1, id=7)

    inventory.require_available(product, 5, available=5)


def test_apply_stock_delta_increments(store):
    product_id = _add_product(store, quantity=10)

    adjustment = inventory.apply_stock_delta(store, product_id, 5, source="test")

    assert adjustment.applied
    assert adjustment.product.quantity == 15
    assert store.get_by_id(TableName.PRODUCTS, product_id)["quantity"] == 15


def test_apply_stock_delta_allows_reaching_zero(store):
    product_id = _add_product(store, quantity=4)

    adjustment = inventory.apply_stock_delta(store, product_id, -4, source="test")

    assert adjustment.applied
    assert store.get_by_id(TableName.PRODUCTS, product_id)["quantity"] == 0


def test_apply_stock_delta_refuses_negative_result(store):
    """A decrement that would go negative leaves the product untouched."""

    product_id = _add_product(store, quantity=3)

    adjustment = inventory.apply_stock_delta(store, product_id, -5, source="purchase 1 deleted")

    assert not adjustment.applied
    assert adjustment.warning.reason == inventory.WOULD_GO_NEGATIVE
    assert adjustment.warning.available == 3
    assert store.get_by_id(TableName.PRODUCTS, product_id)["quantity"] == 3
    assert "purchase 1 deleted" in adjustment.warning.describe()


def test_apply_stock_delta_missing_product(store):
    adjustment = inventory.apply_stock_delta(store, 42, 5, source="purchase 9 created")

    assert adjustment.product is None
    assert adjustment.warning.reason == inventory.PRODUCT_NOT_FOUND
    assert adjustment.warning.as_payload()["product_id"] == 42
