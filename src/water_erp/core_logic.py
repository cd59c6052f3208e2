"""Business logic layer for the water delivery ERP.

This module hosts the entity services (products, clients, purchases, sales,
expenses and delivery orders). Every service function takes a
:class:`RuntimeContext`, validates its input before touching storage, derives
totals and timestamps, and delegates persistence to the context's
:class:`~water_erp.data_manager.RecordStore`. Purchase and sale services
additionally keep product stock consistent through :mod:`water_erp.inventory`.
"""

from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from . import data_manager, inventory, log, use_log_file
from .constants import (
    CENT,
    EXPECTED_SCHEMA_VERSION,
    MAX_RECONCILIATION_WARNINGS,
    NotificationKind,
    OrderStatus,
    StockStatus,
    TableName,
)
from .exceptions import NotFoundError, ReconciliationError, StorageIOError
from .models import (
    Client,
    Expense,
    Order,
    Product,
    Purchase,
    Sale,
    deserialize_client,
    deserialize_expense,
    deserialize_order,
    deserialize_product,
    deserialize_purchase,
    deserialize_sale,
    serialize_client,
    serialize_expense,
    serialize_order,
    serialize_product,
    serialize_purchase,
    serialize_sale,
)


Notifier = Callable[[NotificationKind, Mapping[str, Any]], None]


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, workbook and store handle shared by the services.

    ``notifier`` is the optional notification hook. Warnings produced by stock
    reconciliation accumulate in ``reconciliation_warnings`` so a supervising
    layer can inspect them after a call. Only the most recent
    ``MAX_RECONCILIATION_WARNINGS`` are kept; :func:`drain_reconciliation_warnings`
    hands them over and empties the list.
    """

    settings: data_manager.ConfigSettings
    workbook: Any
    store: data_manager.RecordStore
    notifier: Optional[Notifier] = None
    reconciliation_warnings: List[inventory.ReconciliationWarning] = field(
        default_factory=list, repr=False, compare=False
    )


def _resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def now() -> datetime:
    """Current UTC time as used for ``created_at`` stamps."""
    return _resolve_timestamp()


def today() -> date:
    """Current UTC date; the default for ledger dates left unspecified."""
    return _resolve_timestamp().date()


def _stamp() -> str:
    return _resolve_timestamp().isoformat()


# ---------------------------------------------------------------------------
# Context lifecycle and namespace binding
# ---------------------------------------------------------------------------


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    user_id: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> RuntimeContext:
    """Load configuration and the migrated master workbook.

    The configuration is located and parsed, the workbook opened, and the
    schema migration applied once before any store is handed out. When
    autosave is enabled the store persists after every mutation and any
    migration changes are saved immediately.

    Args:
        config_path (Path | None): Optional override for ``config.ini``.
            When omitted the data layer searches upward from the working
            directory.
        user_id (str | None): User namespace to bind straight away.
        notifier (Notifier | None): Notification hook for mutation events.

    Returns:
        RuntimeContext: Context ready for the service functions.

    Raises:
        FileNotFoundError: If the configuration or workbook is missing.
        KeyError: When mandatory configuration options are missing.
        StorageIOError: If the workbook cannot be read or saved.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    if settings.log_file is not None:
        use_log_file(settings.log_file)
    workbook = data_manager.open_workbook(settings.data_file)
    applied = data_manager.migrate_workbook(workbook)

    destination = settings.data_file if settings.autosave else None
    store = data_manager.RecordStore(workbook, user_id=user_id, destination=destination)
    if applied:
        store.persist()

    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, store=store, notifier=notifier)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Reject configurations written for a different schema version.

    Raises:
        RuntimeError: If ``SchemaVersion`` in ``config.ini`` differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def bind_user(context: RuntimeContext, user_id: str) -> None:
    """Bind the authenticated user's namespace before any entity operation.

    Switching users on a shared context must go through this call; handles
    created with :meth:`RecordStore.for_user` are the alternative when two
    users are active at once.
    """
    context.store.bind_user(user_id)
    context.reconciliation_warnings.clear()


def unbind_user(context: RuntimeContext) -> None:
    """Clear the bound user, typically on logout."""
    context.store.unbind_user()
    context.reconciliation_warnings.clear()


def drain_reconciliation_warnings(context: RuntimeContext) -> List[inventory.ReconciliationWarning]:
    """Return the collected reconciliation warnings and clear them."""
    drained = list(context.reconciliation_warnings)
    del context.reconciliation_warnings[: len(drained)]
    return drained


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file.

    Raises:
        StorageIOError: If the workbook cannot be written.
    """
    try:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    except OSError as exc:
        log.error("Failed to persist workbook '%s': %s", context.settings.data_file, exc)
        raise StorageIOError(f"Unable to write workbook: {context.settings.data_file}") from exc
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved in-memory changes.

    The returned context keeps the settings, notifier and bound user of
    ``context`` but owns a fresh workbook and store.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    data_manager.migrate_workbook(workbook)
    destination = context.settings.data_file if context.settings.autosave else None
    store = data_manager.RecordStore(workbook, user_id=context.store.user_id, destination=destination)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, store=store, notifier=context.notifier)


# ---------------------------------------------------------------------------
# Validation and derived values
# ---------------------------------------------------------------------------


def require_text(value: Optional[str], field_name: str) -> None:
    """Validate that a required text field is present and not blank.

    Raises:
        ValueError: If ``value`` is ``None`` or only whitespace.
    """
    if value is None or not str(value).strip():
        log.error("Required field '%s' is missing", field_name)
        raise ValueError(f"{field_name} is required")


def require_positive_quantity(quantity: int) -> None:
    """Validate that a ledger quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is not an integer or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r is not an integer", quantity)
        raise ValueError("Quantity must be a whole number")
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_quantity(quantity: int, field_name: str = "Quantity") -> None:
    """Validate that a stock level or threshold is a non-negative integer."""
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("%s validation failed: %r is not an integer", field_name, quantity)
        raise ValueError(f"{field_name} must be a whole number")
    if quantity < 0:
        log.error("%s validation failed: %s", field_name, quantity)
        raise ValueError(f"{field_name} must be zero or positive")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is a non-negative decimal.

    Raises:
        ValueError: If ``amount`` is missing, not numeric, or below zero.
    """
    if amount is None or isinstance(amount, (bool, float)) or not isinstance(amount, (Decimal, int)):
        log.error("Monetary value validation failed: %r", amount)
        raise ValueError("Amount must be a Decimal")
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_date(value: Optional[date], field_name: str = "date") -> None:
    if not isinstance(value, date):
        log.error("Date validation failed for '%s': %r", field_name, value)
        raise ValueError(f"{field_name} must be a date")


def _require_reference(value: Any, field_name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        log.error("Reference validation failed for '%s': %r", field_name, value)
        raise ValueError(f"{field_name} must be a positive integer id")


def compute_total(quantity: int, unit_price: Decimal) -> Decimal:
    """Return ``quantity × unit_price`` with the price first rounded to cents.

    The price is rounded the same way it is stored, so a stored total always
    equals the stored quantity times the stored unit price.
    """
    return (Decimal(quantity) * _money(unit_price)).quantize(CENT)


def _money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT)


# ---------------------------------------------------------------------------
# Notification hook and reconciliation warnings
# ---------------------------------------------------------------------------


def _notify(context: RuntimeContext, kind: NotificationKind, payload: Mapping[str, Any]) -> None:
    """Invoke the notification hook; its failures never undo the mutation."""
    if context.notifier is None:
        return
    try:
        context.notifier(kind, payload)
    except Exception as exc:
        log.warning("Notification hook failed for '%s': %s", kind.value, exc, exc_info=True)


def _notify_stock_level(context: RuntimeContext, product: Optional[Product]) -> None:
    if product is None:
        return
    status = inventory.product_status(product)
    if status is StockStatus.AVAILABLE:
        return
    kind = NotificationKind.CRITICAL_STOCK if status is StockStatus.CRITICAL else NotificationKind.LOW_STOCK
    _notify(
        context,
        kind,
        {
            "product_id": product.id,
            "product_name": product.name,
            "quantity": product.quantity,
            "minimum_stock": product.minimum_stock,
            "status": status.value,
        },
    )


def _settle_adjustments(context: RuntimeContext, adjustments: Iterable[inventory.StockAdjustment]) -> None:
    """Publish skipped stock adjustments and escalate them in strict mode."""
    warnings = [adjustment.warning for adjustment in adjustments if adjustment.warning is not None]
    if not warnings:
        return
    for warning in warnings:
        log.warning("Stock reconciliation skipped: %s", warning.describe())
        context.reconciliation_warnings.append(warning)
        _notify(context, NotificationKind.RECONCILIATION_WARNING, warning.as_payload())
    del context.reconciliation_warnings[:-MAX_RECONCILIATION_WARNINGS]
    if context.settings.strict_reconciliation:
        raise ReconciliationError(warnings)


def _lookup(context: RuntimeContext, table: TableName, record_id: Optional[int]) -> Optional[Dict[str, Any]]:
    if record_id is None:
        return None
    return context.store.get_by_id(table, record_id)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def _validate_product(product: Product) -> None:
    require_text(product.name, "name")
    require_nonnegative_quantity(product.quantity, "Quantity")
    require_nonnegative_quantity(product.minimum_stock, "Minimum stock")
    require_nonnegative_money(product.unit_price)


def create_product(context: RuntimeContext, product: Product) -> Product:
    """Register a product with its opening stock.

    Returns:
        Product: The stored product including its generated id and
            ``created_at`` stamp.
    """
    _validate_product(product)
    stamped = replace(product, id=None, unit_price=_money(product.unit_price), created_at=_stamp())
    product_id = context.store.add(TableName.PRODUCTS, serialize_product(stamped))
    created = replace(stamped, id=product_id)
    log.info("Created product %d '%s' (quantity=%d)", product_id, created.name, created.quantity)
    return created


def list_products(context: RuntimeContext) -> List[Product]:
    return [deserialize_product(record) for record in context.store.get_all(TableName.PRODUCTS)]


def get_product(context: RuntimeContext, product_id: int) -> Optional[Product]:
    record = context.store.get_by_id(TableName.PRODUCTS, product_id)
    return deserialize_product(record) if record is not None else None


def require_product(context: RuntimeContext, product_id: int) -> Product:
    """Return the product or raise :class:`NotFoundError`."""
    product = get_product(context, product_id)
    if product is None:
        log.warning("Product lookup failed for id %s", product_id)
        raise NotFoundError(TableName.PRODUCTS.value, product_id)
    return product


def update_product(context: RuntimeContext, product: Product) -> Product:
    """Replace a product, including manual stock corrections.

    The write happens under the product's record lock so it cannot interleave
    with a purchase or sale adjusting the same stock.

    Raises:
        ValueError: If the product carries no id or fails validation.
        NotFoundError: If no product with that id exists.
    """
    if product.id is None:
        raise ValueError("Product id is required for updates")
    _validate_product(product)
    with context.store.record_lock(TableName.PRODUCTS, product.id):
        previous = require_product(context, product.id)
        updated = replace(
            product,
            unit_price=_money(product.unit_price),
            created_at=product.created_at or previous.created_at,
        )
        context.store.update(TableName.PRODUCTS, serialize_product(updated))
    log.info(
        "Updated product %d '%s' (quantity %d -> %d)",
        updated.id,
        updated.name,
        previous.quantity,
        updated.quantity,
    )
    _notify_stock_level(context, updated)
    return updated


def delete_product(context: RuntimeContext, product_id: int) -> None:
    """Delete a product; ledger rows referencing it keep their snapshots."""
    context.store.delete(TableName.PRODUCTS, product_id)
    log.info("Deleted product %s", product_id)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


def _validate_client(client: Client) -> None:
    require_text(client.name, "name")
    require_text(client.address, "address")
    require_text(client.phone, "phone")


def create_client(context: RuntimeContext, client: Client) -> Client:
    """Register a client; the registration date defaults to today (UTC)."""
    _validate_client(client)
    registered_on = client.registered_on or _resolve_timestamp().date()
    stamped = replace(client, id=None, registered_on=registered_on)
    client_id = context.store.add(TableName.CLIENTS, serialize_client(stamped))
    log.info("Created client %d '%s'", client_id, stamped.name)
    return replace(stamped, id=client_id)


def list_clients(context: RuntimeContext) -> List[Client]:
    return [deserialize_client(record) for record in context.store.get_all(TableName.CLIENTS)]


def get_client(context: RuntimeContext, client_id: int) -> Optional[Client]:
    record = context.store.get_by_id(TableName.CLIENTS, client_id)
    return deserialize_client(record) if record is not None else None


def update_client(context: RuntimeContext, client: Client) -> Client:
    if client.id is None:
        raise ValueError("Client id is required for updates")
    _validate_client(client)
    previous = get_client(context, client.id)
    if previous is None:
        raise NotFoundError(TableName.CLIENTS.value, client.id)
    updated = replace(client, registered_on=client.registered_on or previous.registered_on)
    context.store.update(TableName.CLIENTS, serialize_client(updated))
    log.info("Updated client %d '%s'", updated.id, updated.name)
    return updated


def delete_client(context: RuntimeContext, client_id: int) -> None:
    context.store.delete(TableName.CLIENTS, client_id)
    log.info("Deleted client %s", client_id)


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------


def _validate_expense(expense: Expense) -> None:
    require_text(expense.title, "title")
    require_nonnegative_money(expense.amount)
    require_date(expense.date)


def create_expense(context: RuntimeContext, expense: Expense) -> Expense:
    _validate_expense(expense)
    stamped = replace(expense, id=None, amount=_money(expense.amount), created_at=_stamp())
    expense_id = context.store.add(TableName.EXPENSES, serialize_expense(stamped))
    log.info("Created expense %d '%s' (amount=%s)", expense_id, stamped.title, stamped.amount)
    return replace(stamped, id=expense_id)


def list_expenses(context: RuntimeContext) -> List[Expense]:
    return [deserialize_expense(record) for record in context.store.get_all(TableName.EXPENSES)]


def get_expense(context: RuntimeContext, expense_id: int) -> Optional[Expense]:
    record = context.store.get_by_id(TableName.EXPENSES, expense_id)
    return deserialize_expense(record) if record is not None else None


def update_expense(context: RuntimeContext, expense: Expense) -> Expense:
    if expense.id is None:
        raise ValueError("Expense id is required for updates")
    _validate_expense(expense)
    previous = get_expense(context, expense.id)
    if previous is None:
        raise NotFoundError(TableName.EXPENSES.value, expense.id)
    updated = replace(
        expense,
        amount=_money(expense.amount),
        created_at=expense.created_at or previous.created_at,
    )
    context.store.update(TableName.EXPENSES, serialize_expense(updated))
    log.info("Updated expense %d '%s'", updated.id, updated.title)
    return updated


def delete_expense(context: RuntimeContext, expense_id: int) -> None:
    context.store.delete(TableName.EXPENSES, expense_id)
    log.info("Deleted expense %s", expense_id)


# ---------------------------------------------------------------------------
# Purchases (stock in)
# ---------------------------------------------------------------------------


def _validate_purchase(purchase: Purchase) -> None:
    _require_reference(purchase.product_id, "product_id")
    require_positive_quantity(purchase.quantity)
    require_nonnegative_money(purchase.unit_price)
    require_date(purchase.date)


def _product_name_snapshot(context: RuntimeContext, product_id: int, given: Optional[str]) -> str:
    if given and given.strip():
        return given
    record = _lookup(context, TableName.PRODUCTS, product_id)
    return str(record.get("name") or "") if record is not None else ""


def create_purchase(context: RuntimeContext, purchase: Purchase) -> Purchase:
    """Record a restock and add its units to the product.

    The purchase row is written first, then the product's stock grows by
    ``purchase.quantity``. A product that no longer exists leaves the
    purchase in place and produces a reconciliation warning.

    Args:
        context (RuntimeContext): Runtime context with a bound user.
        purchase (Purchase): Purchase to record. Any ``total`` or ``id`` on
            it is ignored.

    Returns:
        Purchase: Stored purchase with id, total and ``created_at``.

    Raises:
        ValueError: If the purchase fails validation.
        ReconciliationError: In strict mode, when the stock increment could
            not be applied. The purchase is still recorded.
    """
    _validate_purchase(purchase)
    stamped = replace(
        purchase,
        id=None,
        product_name=_product_name_snapshot(context, purchase.product_id, purchase.product_name),
        unit_price=_money(purchase.unit_price),
        total=compute_total(purchase.quantity, purchase.unit_price),
        created_at=_stamp(),
    )
    purchase_id = context.store.add(TableName.PURCHASES, serialize_purchase(stamped))
    created = replace(stamped, id=purchase_id)
    log.info(
        "Recorded purchase %d of %d units for product %d (total=%s)",
        purchase_id,
        created.quantity,
        created.product_id,
        created.total,
    )

    adjustment = inventory.apply_stock_delta(
        context.store,
        created.product_id,
        created.quantity,
        source=f"purchase {purchase_id} created",
    )
    _settle_adjustments(context, [adjustment])
    return created


def list_purchases(context: RuntimeContext) -> List[Purchase]:
    return [deserialize_purchase(record) for record in context.store.get_all(TableName.PURCHASES)]


def get_purchase(context: RuntimeContext, purchase_id: int) -> Optional[Purchase]:
    record = context.store.get_by_id(TableName.PURCHASES, purchase_id)
    return deserialize_purchase(record) if record is not None else None


def update_purchase(context: RuntimeContext, purchase: Purchase) -> Purchase:
    """Replace a purchase and move stock from its old to its new shape.

    The previous version is loaded to compute the effect. After the record is
    rewritten, the old product loses the old quantity and then the new
    product (possibly a different one) gains the new quantity. The two steps
    are independent: a decrement that would go negative is skipped with a
    warning while the increment still applies.

    Raises:
        ValueError: If the purchase has no id or fails validation.
        NotFoundError: If the purchase does not exist.
        ReconciliationError: In strict mode, when a step was skipped.
    """
    if purchase.id is None:
        raise ValueError("Purchase id is required for updates")
    _validate_purchase(purchase)

    with context.store.record_lock(TableName.PURCHASES, purchase.id):
        previous = get_purchase(context, purchase.id)
        if previous is None:
            log.warning("Purchase lookup failed for id %s", purchase.id)
            raise NotFoundError(TableName.PURCHASES.value, purchase.id)

        updated = replace(
            purchase,
            product_name=_product_name_snapshot(context, purchase.product_id, purchase.product_name),
            unit_price=_money(purchase.unit_price),
            total=compute_total(purchase.quantity, purchase.unit_price),
            created_at=previous.created_at,
        )
        context.store.update(TableName.PURCHASES, serialize_purchase(updated))
        log.info(
            "Updated purchase %d (product %d x%d -> product %d x%d)",
            updated.id,
            previous.product_id,
            previous.quantity,
            updated.product_id,
            updated.quantity,
        )

        adjustments = [
            inventory.apply_stock_delta(
                context.store,
                previous.product_id,
                -previous.quantity,
                source=f"purchase {updated.id} updated (reverse)",
            ),
            inventory.apply_stock_delta(
                context.store,
                updated.product_id,
                updated.quantity,
                source=f"purchase {updated.id} updated (apply)",
            ),
        ]
    _settle_adjustments(context, adjustments)
    return updated


def delete_purchase(context: RuntimeContext, purchase_id: int) -> None:
    """Take a purchase's units back out of stock, then delete it.

    Deleting an unknown purchase is a no-op. A decrement that would go
    negative is skipped with a warning and the purchase is still deleted.
    """
    with context.store.record_lock(TableName.PURCHASES, purchase_id):
        previous = get_purchase(context, purchase_id)
        if previous is None:
            log.debug("Delete of unknown purchase %s ignored", purchase_id)
            return
        adjustment = inventory.apply_stock_delta(
            context.store,
            previous.product_id,
            -previous.quantity,
            source=f"purchase {purchase_id} deleted",
        )
        context.store.delete(TableName.PURCHASES, purchase_id)
    log.info("Deleted purchase %s", purchase_id)
    _settle_adjustments(context, [adjustment])


# ---------------------------------------------------------------------------
# Sales (stock out)
# ---------------------------------------------------------------------------


def _validate_sale(sale: Sale) -> None:
    _require_reference(sale.client_id, "client_id")
    _require_reference(sale.product_id, "product_id")
    require_positive_quantity(sale.quantity)
    require_nonnegative_money(sale.unit_price)
    require_date(sale.date)


def _client_name_snapshot(context: RuntimeContext, client_id: int, given: Optional[str]) -> str:
    if given and given.strip():
        return given
    record = _lookup(context, TableName.CLIENTS, client_id)
    return str(record.get("name") or "") if record is not None else ""


def create_sale(context: RuntimeContext, sale: Sale) -> Sale:
    """Record a sale after checking the product has enough stock.

    The availability check, the sale write and the stock decrement all run
    under the product's record lock, so two concurrent sales can never both
    take the last units.

    Returns:
        Sale: Stored sale with id, total and ``created_at``.

    Raises:
        ValueError: If the sale fails validation.
        NotFoundError: If the product does not exist.
        InsufficientStockError: If the product holds fewer units than
            requested. Nothing is written in that case.
    """
    _validate_sale(sale)
    with context.store.record_lock(TableName.PRODUCTS, sale.product_id):
        product = require_product(context, sale.product_id)
        inventory.require_available(product, sale.quantity)

        stamped = replace(
            sale,
            id=None,
            client_name=_client_name_snapshot(context, sale.client_id, sale.client_name),
            product_name=sale.product_name or product.name,
            unit_price=_money(sale.unit_price),
            total=compute_total(sale.quantity, sale.unit_price),
            created_at=_stamp(),
        )
        sale_id = context.store.add(TableName.SALES, serialize_sale(stamped))
        created = replace(stamped, id=sale_id)
        log.info(
            "Recorded sale %d of %d units of product %d to client %d (total=%s)",
            sale_id,
            created.quantity,
            created.product_id,
            created.client_id,
            created.total,
        )
        adjustment = inventory.apply_stock_delta(
            context.store,
            created.product_id,
            -created.quantity,
            source=f"sale {sale_id} created",
        )
    _settle_adjustments(context, [adjustment])
    _notify_stock_level(context, adjustment.product)
    return created


def list_sales(context: RuntimeContext) -> List[Sale]:
    return [deserialize_sale(record) for record in context.store.get_all(TableName.SALES)]


def get_sale(context: RuntimeContext, sale_id: int) -> Optional[Sale]:
    record = context.store.get_by_id(TableName.SALES, sale_id)
    return deserialize_sale(record) if record is not None else None


def list_sales_by_client(context: RuntimeContext, client_id: int) -> List[Sale]:
    return [sale for sale in list_sales(context) if sale.client_id == client_id]


def update_sale(context: RuntimeContext, sale: Sale) -> Sale:
    """Replace a sale record.

    By default stock is left untouched, matching how sale edits have always
    behaved. With ``RestoreStockOnSaleChange`` enabled the previous units are
    given back and the new units taken, guarded like a new sale.

    Raises:
        ValueError: If the sale has no id or fails validation.
        NotFoundError: If the sale (or, when restoring, its new product)
            does not exist.
        InsufficientStockError: When restoring and the new quantity exceeds
            what the product would hold after giving back the old units.
    """
    if sale.id is None:
        raise ValueError("Sale id is required for updates")
    _validate_sale(sale)
    restore = context.settings.restore_stock_on_sale_change

    with context.store.record_lock(TableName.SALES, sale.id):
        previous = get_sale(context, sale.id)
        if previous is None:
            log.warning("Sale lookup failed for id %s", sale.id)
            raise NotFoundError(TableName.SALES.value, sale.id)

        if not restore:
            updated = _rewrite_sale(context, sale, previous, product_name=sale.product_name)
            log.info("Updated sale %d without stock changes", updated.id)
            return updated

        product_ids = sorted({previous.product_id, sale.product_id})
        with ExitStack() as stack:
            for product_id in product_ids:
                stack.enter_context(context.store.record_lock(TableName.PRODUCTS, product_id))
            product = require_product(context, sale.product_id)
            available = product.quantity
            if previous.product_id == sale.product_id:
                available += previous.quantity
            inventory.require_available(product, sale.quantity, available=available)

            updated = _rewrite_sale(context, sale, previous, product_name=sale.product_name or product.name)
            adjustments = [
                inventory.apply_stock_delta(
                    context.store,
                    previous.product_id,
                    previous.quantity,
                    source=f"sale {updated.id} updated (reverse)",
                ),
                inventory.apply_stock_delta(
                    context.store,
                    updated.product_id,
                    -updated.quantity,
                    source=f"sale {updated.id} updated (apply)",
                ),
            ]
    log.info("Updated sale %d and reconciled stock", updated.id)
    _settle_adjustments(context, adjustments)
    _notify_stock_level(context, adjustments[-1].product)
    return updated


def _rewrite_sale(context: RuntimeContext, sale: Sale, previous: Sale, *, product_name: str) -> Sale:
    updated = replace(
        sale,
        client_name=_client_name_snapshot(context, sale.client_id, sale.client_name),
        product_name=product_name,
        unit_price=_money(sale.unit_price),
        total=compute_total(sale.quantity, sale.unit_price),
        created_at=previous.created_at,
    )
    context.store.update(TableName.SALES, serialize_sale(updated))
    return updated


def delete_sale(context: RuntimeContext, sale_id: int) -> None:
    """Delete a sale; its units return to stock only when restoring is enabled."""
    with context.store.record_lock(TableName.SALES, sale_id):
        previous = get_sale(context, sale_id)
        if previous is None:
            log.debug("Delete of unknown sale %s ignored", sale_id)
            return
        adjustments: List[inventory.StockAdjustment] = []
        if context.settings.restore_stock_on_sale_change:
            adjustments.append(
                inventory.apply_stock_delta(
                    context.store,
                    previous.product_id,
                    previous.quantity,
                    source=f"sale {sale_id} deleted",
                )
            )
        context.store.delete(TableName.SALES, sale_id)
    log.info("Deleted sale %s", sale_id)
    _settle_adjustments(context, adjustments)


# ---------------------------------------------------------------------------
# Delivery orders
# ---------------------------------------------------------------------------


def _validate_order(order: Order) -> None:
    _require_reference(order.client_id, "client_id")
    _require_reference(order.product_id, "product_id")
    require_positive_quantity(order.quantity)
    require_nonnegative_money(order.unit_price)
    require_date(order.date)
    if order.scheduled_date is not None:
        require_date(order.scheduled_date, "scheduled_date")
    OrderStatus(order.status)


def _order_snapshots(context: RuntimeContext, order: Order) -> Order:
    client_name = order.client_name
    client_address = order.client_address
    if not (client_name and client_address):
        client = _lookup(context, TableName.CLIENTS, order.client_id)
        if client is not None:
            client_name = client_name or str(client.get("name") or "")
            client_address = client_address or str(client.get("address") or "")
    return replace(
        order,
        client_name=client_name or "",
        client_address=client_address or "",
        product_name=_product_name_snapshot(context, order.product_id, order.product_name),
    )


def create_order(context: RuntimeContext, order: Order) -> Order:
    """Schedule a delivery; stock is not reserved or decremented.

    The new order starts as :attr:`OrderStatus.PENDING` and a ``NEW_ORDER``
    event is published once it is stored.
    """
    _validate_order(order)
    stamped = replace(
        _order_snapshots(context, order),
        id=None,
        status=OrderStatus.PENDING,
        unit_price=_money(order.unit_price),
        total=compute_total(order.quantity, order.unit_price),
        created_at=_stamp(),
    )
    order_id = context.store.add(TableName.ORDERS, serialize_order(stamped))
    created = replace(stamped, id=order_id)
    log.info("Created order %d for client %d (total=%s)", order_id, created.client_id, created.total)
    _notify(
        context,
        NotificationKind.NEW_ORDER,
        {
            "order_id": order_id,
            "client_name": created.client_name,
            "product_name": created.product_name,
            "quantity": created.quantity,
            "total": created.total,
        },
    )
    return created


def list_orders(context: RuntimeContext) -> List[Order]:
    return [deserialize_order(record) for record in context.store.get_all(TableName.ORDERS)]


def get_order(context: RuntimeContext, order_id: int) -> Optional[Order]:
    record = context.store.get_by_id(TableName.ORDERS, order_id)
    return deserialize_order(record) if record is not None else None


def update_order(context: RuntimeContext, order: Order) -> Order:
    if order.id is None:
        raise ValueError("Order id is required for updates")
    _validate_order(order)
    with context.store.record_lock(TableName.ORDERS, order.id):
        previous = get_order(context, order.id)
        if previous is None:
            raise NotFoundError(TableName.ORDERS.value, order.id)
        updated = replace(
            _order_snapshots(context, order),
            unit_price=_money(order.unit_price),
            total=compute_total(order.quantity, order.unit_price),
            created_at=previous.created_at,
        )
        context.store.update(TableName.ORDERS, serialize_order(updated))
    log.info("Updated order %d", updated.id)
    return updated


def set_order_status(context: RuntimeContext, order_id: int, status: OrderStatus) -> Order:
    """Move an order to ``status``; any transition is accepted.

    Raises:
        NotFoundError: If the order does not exist.
        ValueError: If ``status`` is not an :class:`OrderStatus` value.
    """
    status = OrderStatus(status)
    with context.store.record_lock(TableName.ORDERS, order_id):
        previous = get_order(context, order_id)
        if previous is None:
            log.warning("Order lookup failed for id %s", order_id)
            raise NotFoundError(TableName.ORDERS.value, order_id)
        updated = replace(previous, status=status)
        context.store.update(TableName.ORDERS, serialize_order(updated))
    log.info("Order %d status %s -> %s", order_id, previous.status.value, status.value)
    return updated


def delete_order(context: RuntimeContext, order_id: int) -> None:
    context.store.delete(TableName.ORDERS, order_id)
    log.info("Deleted order %s", order_id)


# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------


DEMO_PRODUCTS = (
    ("Bidón 20L", 45, Decimal("25.00"), 10),
    ("Bidón 10L", 8, Decimal("15.00"), 10),
    ("Botella 1L", 120, Decimal("3.50"), 50),
    ("Botella 500ml", 5, Decimal("2.00"), 20),
    ("Bidón 5L", 25, Decimal("8.00"), 15),
)

DEMO_CLIENTS = (
    ("Juan Pérez", "Calle Principal #123, Colonia Centro", "555-0123"),
    ("María González", "Av. Reforma #456, Colonia Norte", "555-0456"),
)

DEMO_EXPENSES = (
    ("Gasolina", Decimal("50.00"), "Combustible para vehículo de reparto", date(2024, 1, 15)),
    ("Mantenimiento", Decimal("80.00"), "Reparación menor del vehículo", date(2024, 1, 12)),
)


def seed_demo_data(context: RuntimeContext) -> Dict[str, int]:
    """Fill empty product, client and expense tables with demo rows.

    Tables that already hold rows for the bound user are left alone.

    Returns:
        dict[str, int]: Number of rows created per table name.
    """
    created = {TableName.PRODUCTS.value: 0, TableName.CLIENTS.value: 0, TableName.EXPENSES.value: 0}
    if not context.store.get_all(TableName.PRODUCTS):
        for name, quantity, price, minimum in DEMO_PRODUCTS:
            create_product(
                context,
                Product(name=name, quantity=quantity, unit_price=price, minimum_stock=minimum),
            )
            created[TableName.PRODUCTS.value] += 1
    if not context.store.get_all(TableName.CLIENTS):
        for name, address, phone in DEMO_CLIENTS:
            create_client(context, Client(name=name, address=address, phone=phone))
            created[TableName.CLIENTS.value] += 1
    if not context.store.get_all(TableName.EXPENSES):
        for title, amount, description, when in DEMO_EXPENSES:
            create_expense(
                context,
                Expense(title=title, amount=amount, description=description, date=when),
            )
            created[TableName.EXPENSES.value] += 1
    log.info("Seeded demo data: %s", created)
    return created
