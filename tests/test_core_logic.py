"""Unit tests for the entity services and stock reconciliation."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, date, datetime, time
from decimal import Decimal
from unittest.mock import Mock

import pytest

from water_erp import core_logic
from water_erp.constants import NotificationKind, OrderStatus
from water_erp.exceptions import (
    InsufficientStockError,
    NoUserBoundError,
    NotFoundError,
    ReconciliationError,
)
from water_erp.models import Client, Expense, Order, Product, Purchase, Sale

DAY = date(2024, 1, 15)


def _product(context, quantity=10, minimum_stock=5, name="Bidón 20L", price="25.00") -> Product:
    return core_logic.create_product(
        context,
        Product(name=name, quantity=quantity, unit_price=Decimal(price), minimum_stock=minimum_stock),
    )


def _client(context, name="Ana Pérez") -> Client:
    return core_logic.create_client(context, Client(name=name, address="Av. Central 12", phone="555-0101"))


def _purchase(context, product_id, quantity, price="20.00") -> Purchase:
    return core_logic.create_purchase(
        context,
        Purchase(product_id=product_id, product_name="", quantity=quantity, unit_price=Decimal(price), date=DAY),
    )


def _sale(context, client_id, product_id, quantity, price="25.00") -> Sale:
    return core_logic.create_sale(
        context,
        Sale(
            client_id=client_id,
            client_name="",
            product_id=product_id,
            product_name="",
            quantity=quantity,
            unit_price=Decimal(price),
            date=DAY,
        ),
    )


def _stock(context, product_id) -> int:
    return core_logic.require_product(context, product_id).quantity


def _kinds(notifier: Mock):
    return [call.args[0] for call in notifier.call_args_list]


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError."""

    bad_context = replace(context, settings=replace(context.settings, schema_version="0.9"))
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_bind_user_switches_namespace(context):
    _product(context)

    core_logic.bind_user(context, "u2")

    assert core_logic.list_products(context) == []


def test_services_require_bound_user(context):
    core_logic.unbind_user(context)

    with pytest.raises(NoUserBoundError):
        core_logic.list_products(context)


# ---------------------------------------------------------------------------
# Validation and totals
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("quantity", [0, -1, True, 1.5, None])
def test_require_positive_quantity_rejects(quantity):
    with pytest.raises(ValueError):
        core_logic.require_positive_quantity(quantity)


@pytest.mark.parametrize("amount", [Decimal("-0.01"), 1.5, None])
def test_require_nonnegative_money_rejects(amount):
    with pytest.raises(ValueError):
        core_logic.require_nonnegative_money(amount)


def test_require_text_rejects_blank():
    with pytest.raises(ValueError):
        core_logic.require_text("   ", "name")


def test_compute_total_rounds_price_before_multiplying():
    assert core_logic.compute_total(3, Decimal("2.505")) == Decimal("7.50")


def test_stored_total_matches_stored_quantity_and_price(context):
    """A sub-cent price is rounded once, for the price and the total alike."""

    product = _product(context)

    purchase = _purchase(context, product.id, 2, price="0.125")

    assert purchase.unit_price == Decimal("0.12")
    assert purchase.total == Decimal("0.24")
    stored = core_logic.get_purchase(context, purchase.id)
    assert stored.total == stored.quantity * stored.unit_price


def test_create_product_assigns_id_and_timestamp(context, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2024, 1, 15, 9, 30, tzinfo=UTC))

    product = _product(context, price="25")

    assert product.id == 1
    assert product.unit_price == Decimal("25.00")
    assert product.created_at == moment.isoformat()
    assert core_logic.get_product(context, 1) == product


def test_create_product_validation_prevents_write(context):
    with pytest.raises(ValueError):
        core_logic.create_product(
            context,
            Product(name="", quantity=5, unit_price=Decimal("1.00"), minimum_stock=1),
        )
    with pytest.raises(ValueError):
        core_logic.create_product(
            context,
            Product(name="Bidón", quantity=-1, unit_price=Decimal("1.00"), minimum_stock=1),
        )

    assert core_logic.list_products(context) == []


def test_create_client_defaults_registration_date(context, set_fixed_datetime):
    set_fixed_datetime(datetime(2024, 3, 1, 12, 0, tzinfo=UTC))

    client = _client(context)

    assert client.id == 1
    assert client.registered_on == date(2024, 3, 1)


def test_update_unknown_product_raises(context):
    with pytest.raises(NotFoundError):
        core_logic.update_product(
            context,
            Product(name="Ghost", quantity=1, unit_price=Decimal("1.00"), minimum_stock=0, id=99),
        )


def test_update_product_corrects_stock_and_notifies(context, notifier):
    product = _product(context, quantity=10, minimum_stock=5)

    core_logic.update_product(context, replace(product, quantity=3))

    assert _stock(context, product.id) == 3
    assert _kinds(notifier) == [NotificationKind.CRITICAL_STOCK]


def test_expense_crud(context):
    expense = core_logic.create_expense(
        context,
        Expense(title="Gasolina", amount=Decimal("50"), date=DAY, description="Combustible"),
    )
    updated = core_logic.update_expense(context, replace(expense, amount=Decimal("55.5")))

    assert updated.amount == Decimal("55.50")
    assert core_logic.get_expense(context, expense.id).amount == Decimal("55.50")

    core_logic.delete_expense(context, expense.id)
    assert core_logic.list_expenses(context) == []


def test_update_client_replaces_fields(context):
    client = core_logic.create_client(
        context,
        Client(name="Ana Pérez", address="Av. Central 12", phone="555-0101", registered_on=date(2024, 2, 1)),
    )

    updated = core_logic.update_client(
        context, replace(client, address="Calle Luna 8", phone="555-0202", registered_on=None)
    )

    assert updated.registered_on == date(2024, 2, 1)
    assert core_logic.get_client(context, client.id) == updated
    assert core_logic.get_client(context, client.id).address == "Calle Luna 8"


def test_update_client_clears_description(context):
    """Setting an optional field to None removes the stored value."""

    client = core_logic.create_client(
        context,
        Client(name="Ana Pérez", address="Av. Central 12", phone="555-0101", description="Cliente frecuente"),
    )

    core_logic.update_client(context, replace(client, description=None))

    assert core_logic.get_client(context, client.id).description is None


def test_update_unknown_client_raises(context):
    with pytest.raises(NotFoundError):
        core_logic.update_client(context, Client(name="Ghost", address="Nowhere", phone="000", id=7))

    assert core_logic.list_clients(context) == []


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


def test_purchase_increments_stock(context):
    """Recording a purchase adds its units to the product."""

    product = _product(context, quantity=10)

    purchase = _purchase(context, product.id, 5, price="20.00")

    assert _stock(context, product.id) == 15
    assert purchase.total == Decimal("100.00")
    assert purchase.product_name == "Bidón 20L"


def test_purchase_for_missing_product_is_kept_with_warning(context, notifier):
    purchase = _purchase(context, 42, 5)

    assert core_logic.get_purchase(context, purchase.id) is not None
    assert len(context.reconciliation_warnings) == 1
    assert context.reconciliation_warnings[0].reason == "product_not_found"
    assert _kinds(notifier) == [NotificationKind.RECONCILIATION_WARNING]


def test_update_purchase_applies_quantity_difference(context):
    product = _product(context, quantity=10)
    purchase = _purchase(context, product.id, 5)

    updated = core_logic.update_purchase(context, replace(purchase, quantity=3))

    assert _stock(context, product.id) == 13
    assert updated.total == Decimal("60.00")


def test_purchase_total_from_caller_is_ignored(context):
    """The total is always derived from quantity and unit price."""

    product = _product(context)
    bogus = Purchase(
        product_id=product.id,
        product_name="",
        quantity=5,
        unit_price=Decimal("20.00"),
        date=DAY,
        total=Decimal("999.99"),
    )

    created = core_logic.create_purchase(context, bogus)
    updated = core_logic.update_purchase(context, replace(created, quantity=4, total=Decimal("999.99")))

    assert created.total == Decimal("100.00")
    assert updated.total == Decimal("80.00")
    assert core_logic.get_purchase(context, created.id).total == Decimal("80.00")


def test_update_purchase_moves_stock_between_products(context):
    first = _product(context, quantity=10, name="Bidón 20L")
    second = _product(context, quantity=2, name="Bidón 10L")
    purchase = _purchase(context, first.id, 5)

    updated = core_logic.update_purchase(context, replace(purchase, product_id=second.id, product_name=""))

    assert _stock(context, first.id) == 10
    assert _stock(context, second.id) == 7
    assert updated.product_name == "Bidón 10L"


def test_update_unknown_purchase_raises(context):
    product = _product(context)
    with pytest.raises(NotFoundError):
        core_logic.update_purchase(
            context,
            Purchase(product_id=product.id, product_name="", quantity=1, unit_price=Decimal("1"), date=DAY, id=9),
        )
    assert _stock(context, product.id) == 10


def test_delete_purchase_returns_units(context):
    product = _product(context, quantity=10)
    purchase = _purchase(context, product.id, 5)

    core_logic.delete_purchase(context, purchase.id)

    assert _stock(context, product.id) == 10
    assert core_logic.list_purchases(context) == []


def test_delete_unknown_purchase_is_noop(context):
    product = _product(context, quantity=10)

    core_logic.delete_purchase(context, 77)

    assert _stock(context, product.id) == 10
    assert context.reconciliation_warnings == []


def test_delete_purchase_after_sales_skips_negative_stock(context, notifier):
    """Removing units already sold leaves stock alone and reports a warning."""

    product = _product(context, quantity=10, minimum_stock=0)
    client = _client(context)
    purchase = _purchase(context, product.id, 5)
    _sale(context, client.id, product.id, 12)

    core_logic.delete_purchase(context, purchase.id)

    assert _stock(context, product.id) == 3
    assert core_logic.get_purchase(context, purchase.id) is None
    assert [warning.reason for warning in context.reconciliation_warnings] == ["would_go_negative"]
    assert NotificationKind.RECONCILIATION_WARNING in _kinds(notifier)


def test_update_purchase_decrement_skipped_increment_applied(context):
    """The two halves of a purchase update are applied independently."""

    first = _product(context, quantity=0, minimum_stock=0, name="Bidón 20L")
    second = _product(context, quantity=0, minimum_stock=0, name="Bidón 10L")
    client = _client(context)
    purchase = _purchase(context, first.id, 5)
    _sale(context, client.id, first.id, 5)

    core_logic.update_purchase(context, replace(purchase, product_id=second.id))

    assert _stock(context, first.id) == 0
    assert _stock(context, second.id) == 5
    assert len(context.reconciliation_warnings) == 1


def test_reconciliation_warnings_keep_only_most_recent(context, monkeypatch):
    monkeypatch.setattr(core_logic, "MAX_RECONCILIATION_WARNINGS", 3)

    for product_id in range(101, 106):
        _purchase(context, product_id, 1)

    assert [warning.product_id for warning in context.reconciliation_warnings] == [103, 104, 105]


def test_drain_reconciliation_warnings_empties_the_list(context):
    _purchase(context, 42, 5)

    drained = core_logic.drain_reconciliation_warnings(context)

    assert [warning.reason for warning in drained] == ["product_not_found"]
    assert context.reconciliation_warnings == []
    assert core_logic.drain_reconciliation_warnings(context) == []


def test_strict_mode_raises_after_write(context_factory):
    strict = context_factory(strict=True)
    product = _product(strict, quantity=10, minimum_stock=0)
    client = _client(strict)
    purchase = _purchase(strict, product.id, 5)
    _sale(strict, client.id, product.id, 12)

    with pytest.raises(ReconciliationError) as excinfo:
        core_logic.delete_purchase(strict, purchase.id)

    assert excinfo.value.warnings[0].reason == "would_go_negative"
    assert core_logic.get_purchase(strict, purchase.id) is None
    assert _stock(strict, product.id) == 3


def test_strict_mode_keeps_purchase_for_missing_product(context_factory):
    strict = context_factory(strict=True)

    with pytest.raises(ReconciliationError):
        _purchase(strict, 42, 5)

    assert len(core_logic.list_purchases(strict)) == 1


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def test_sale_decrements_stock_and_fills_snapshots(context):
    product = _product(context, quantity=10, minimum_stock=1)
    client = _client(context)

    sale = _sale(context, client.id, product.id, 4)

    assert _stock(context, product.id) == 6
    assert sale.total == Decimal("100.00")
    assert sale.client_name == "Ana Pérez"
    assert sale.product_name == "Bidón 20L"
    assert core_logic.list_sales_by_client(context, client.id) == [sale]


def test_sale_total_from_caller_is_ignored(context):
    product = _product(context, quantity=10, minimum_stock=0)
    client = _client(context)
    sale = Sale(
        client_id=client.id,
        client_name="",
        product_id=product.id,
        product_name="",
        quantity=2,
        unit_price=Decimal("25.00"),
        date=DAY,
        total=Decimal("999.99"),
    )

    created = core_logic.create_sale(context, sale)
    updated = core_logic.update_sale(context, replace(created, quantity=3, total=Decimal("1.00")))

    assert created.total == Decimal("50.00")
    assert updated.total == Decimal("75.00")
    assert core_logic.get_sale(context, created.id).total == Decimal("75.00")


def test_sale_exceeding_stock_is_rejected(context):
    """An oversell leaves no sale behind and stock unchanged."""

    product = _product(context, quantity=10)
    client = _client(context)
    _sale(context, client.id, product.id, 4)

    with pytest.raises(InsufficientStockError) as excinfo:
        _sale(context, client.id, product.id, 7)

    assert excinfo.value.available == 6
    assert _stock(context, product.id) == 6
    assert len(core_logic.list_sales(context)) == 1


def test_sale_for_missing_product_raises(context):
    client = _client(context)

    with pytest.raises(NotFoundError):
        _sale(context, client.id, 42, 1)

    assert core_logic.list_sales(context) == []


def test_sale_rejects_invalid_quantity_before_storage(context):
    product = _product(context)
    client = _client(context)

    with pytest.raises(ValueError):
        _sale(context, client.id, product.id, 0)

    assert _stock(context, product.id) == 10


@pytest.mark.parametrize(
    ("sold", "expected"),
    [(6, NotificationKind.CRITICAL_STOCK), (2, NotificationKind.LOW_STOCK)],
)
def test_sale_notifies_stock_level(context, notifier, sold, expected):
    product = _product(context, quantity=10, minimum_stock=5)
    client = _client(context)

    _sale(context, client.id, product.id, sold)

    kind, payload = notifier.call_args.args
    assert kind is expected
    assert payload["product_id"] == product.id
    assert payload["quantity"] == 10 - sold


def test_sale_leaving_available_stock_does_not_notify(context, notifier):
    product = _product(context, quantity=30, minimum_stock=5)
    client = _client(context)

    _sale(context, client.id, product.id, 1)

    notifier.assert_not_called()


def test_notifier_failure_does_not_undo_sale(context_factory, caplog):
    failing = Mock(side_effect=RuntimeError("push service down"))
    ctx = context_factory(notifier=failing)
    product = _product(ctx, quantity=10, minimum_stock=5)
    client = _client(ctx)

    sale = _sale(ctx, client.id, product.id, 8)

    assert core_logic.get_sale(ctx, sale.id) is not None
    assert _stock(ctx, product.id) == 2
    assert "Notification hook failed" in caplog.text


def test_update_sale_leaves_stock_by_default(context):
    product = _product(context, quantity=10, minimum_stock=0)
    client = _client(context)
    sale = _sale(context, client.id, product.id, 4)

    updated = core_logic.update_sale(context, replace(sale, quantity=6))

    assert updated.total == Decimal("150.00")
    assert _stock(context, product.id) == 6


def test_delete_sale_leaves_stock_by_default(context):
    product = _product(context, quantity=10, minimum_stock=0)
    client = _client(context)
    sale = _sale(context, client.id, product.id, 4)

    core_logic.delete_sale(context, sale.id)

    assert core_logic.list_sales(context) == []
    assert _stock(context, product.id) == 6


def test_update_sale_with_restore_reconciles(context_factory):
    ctx = context_factory(restore=True)
    product = _product(ctx, quantity=10, minimum_stock=0)
    client = _client(ctx)
    sale = _sale(ctx, client.id, product.id, 4)

    core_logic.update_sale(ctx, replace(sale, quantity=10))

    assert _stock(ctx, product.id) == 0


def test_update_sale_with_restore_guards_stock(context_factory):
    ctx = context_factory(restore=True)
    product = _product(ctx, quantity=10, minimum_stock=0)
    client = _client(ctx)
    sale = _sale(ctx, client.id, product.id, 4)

    with pytest.raises(InsufficientStockError):
        core_logic.update_sale(ctx, replace(sale, quantity=11))

    assert _stock(ctx, product.id) == 6
    assert core_logic.get_sale(ctx, sale.id).quantity == 4


def test_delete_sale_with_restore_returns_units(context_factory):
    ctx = context_factory(restore=True)
    product = _product(ctx, quantity=10, minimum_stock=0)
    client = _client(ctx)
    sale = _sale(ctx, client.id, product.id, 4)

    core_logic.delete_sale(ctx, sale.id)

    assert _stock(ctx, product.id) == 10


def test_update_unknown_sale_raises(context):
    with pytest.raises(NotFoundError):
        core_logic.update_sale(
            context,
            Sale(
                client_id=1,
                client_name="X",
                product_id=1,
                product_name="Y",
                quantity=1,
                unit_price=Decimal("1"),
                date=DAY,
                id=5,
            ),
        )


def test_concurrent_sales_never_oversell(context):
    """Parallel sales of the last units must not drive stock negative."""

    product = _product(context, quantity=10, minimum_stock=0)
    client = _client(context)
    outcomes = []
    outcome_lock = threading.Lock()

    def sell():
        try:
            _sale(context, client.id, product.id, 1)
            result = "sold"
        except InsufficientStockError:
            result = "rejected"
        with outcome_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=sell) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("sold") == 10
    assert outcomes.count("rejected") == 10
    assert _stock(context, product.id) == 0
    assert len(core_logic.list_sales(context)) == 10


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def _order(context, client_id, product_id, quantity=2, scheduled=None) -> Order:
    return core_logic.create_order(
        context,
        Order(
            client_id=client_id,
            client_name="",
            client_address="",
            product_id=product_id,
            product_name="",
            quantity=quantity,
            unit_price=Decimal("25.00"),
            date=DAY,
            scheduled_date=scheduled,
        ),
    )


def test_create_order_snapshots_client_and_notifies(context, notifier):
    product = _product(context, quantity=10, minimum_stock=0)
    client = _client(context)

    order = _order(context, client.id, product.id)

    assert order.status is OrderStatus.PENDING
    assert order.client_address == "Av. Central 12"
    assert order.total == Decimal("50.00")
    assert _stock(context, product.id) == 10
    kind, payload = notifier.call_args.args
    assert kind is NotificationKind.NEW_ORDER
    assert payload["order_id"] == order.id


def test_set_order_status_accepts_any_transition(context):
    product = _product(context)
    client = _client(context)
    order = _order(context, client.id, product.id)

    core_logic.set_order_status(context, order.id, OrderStatus.DELIVERED)
    reverted = core_logic.set_order_status(context, order.id, OrderStatus.PENDING)

    assert reverted.status is OrderStatus.PENDING
    assert core_logic.get_order(context, order.id).status is OrderStatus.PENDING


def test_set_order_status_unknown_order(context):
    with pytest.raises(NotFoundError):
        core_logic.set_order_status(context, 3, OrderStatus.IN_TRANSIT)


def test_order_total_from_caller_is_ignored(context):
    product = _product(context)
    client = _client(context)

    order = core_logic.create_order(
        context,
        Order(
            client_id=client.id,
            client_name="",
            client_address="",
            product_id=product.id,
            product_name="",
            quantity=3,
            unit_price=Decimal("25.00"),
            date=DAY,
            total=Decimal("999.99"),
        ),
    )

    assert order.total == Decimal("75.00")
    assert core_logic.get_order(context, order.id).total == Decimal("75.00")


def test_update_order_rewrites_and_clears_schedule(context):
    product = _product(context, quantity=10, minimum_stock=0)
    client = _client(context)
    order = core_logic.update_order(
        context,
        replace(_order(context, client.id, product.id, scheduled=date(2024, 1, 20)), scheduled_time=time(9, 0)),
    )

    updated = core_logic.update_order(
        context,
        replace(order, quantity=4, scheduled_date=None, scheduled_time=None, total=Decimal("1.00")),
    )

    stored = core_logic.get_order(context, order.id)
    assert updated.total == Decimal("100.00")
    assert stored.total == Decimal("100.00")
    assert stored.quantity == 4
    assert (stored.scheduled_date, stored.scheduled_time) == (None, None)
    assert stored.created_at == order.created_at
    assert _stock(context, product.id) == 10


def test_update_unknown_order_raises(context):
    product = _product(context)
    client = _client(context)
    ghost = replace(_order(context, client.id, product.id), id=9)

    with pytest.raises(NotFoundError):
        core_logic.update_order(context, ghost)

    assert [order.id for order in core_logic.list_orders(context)] == [1]


# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------


def test_seed_demo_data_only_fills_empty_tables(context):
    first = core_logic.seed_demo_data(context)
    second = core_logic.seed_demo_data(context)

    assert first == {"products": 5, "clients": 2, "expenses": 2}
    assert second == {"products": 0, "clients": 0, "expenses": 0}
    assert {product.name for product in core_logic.list_products(context)} >= {"Bidón 20L", "Botella 1L"}
