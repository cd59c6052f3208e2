"""Typed errors raised by the water delivery ERP layers."""

from __future__ import annotations

from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from .inventory import ReconciliationWarning


class WaterErpError(Exception):
    """Base class for every error raised by the package."""


class BusinessRuleViolation(WaterErpError):
    """Raised when a requested operation violates a domain constraint."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced record does not exist in the bound namespace."""

    def __init__(self, table: str, record_id: Optional[int]) -> None:
        self.table = table
        self.record_id = record_id
        super().__init__(f"Unknown {table} id: {record_id}")


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a sale asks for more units than the product has on hand."""

    def __init__(self, product_id: int, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )


class ReconciliationError(BusinessRuleViolation):
    """Raised in strict mode when a stock adjustment could not be applied.

    The ledger record that triggered the adjustment has already been written
    and is not rolled back.
    """

    def __init__(self, warnings: Sequence["ReconciliationWarning"]) -> None:
        self.warnings = list(warnings)
        reasons = "; ".join(warning.describe() for warning in self.warnings)
        super().__init__(f"Stock reconciliation incomplete: {reasons}")


class NoUserBoundError(WaterErpError, RuntimeError):
    """Raised when the record store is used before a user namespace is bound."""


class StorageIOError(WaterErpError, OSError):
    """Raised when the backing workbook cannot be read or written."""


__all__ = [
    "WaterErpError",
    "BusinessRuleViolation",
    "NotFoundError",
    "InsufficientStockError",
    "ReconciliationError",
    "NoUserBoundError",
    "StorageIOError",
]
