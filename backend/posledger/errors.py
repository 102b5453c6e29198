# Overview: Typed failures raised by the inventory ledger and settlement services.

from __future__ import annotations

from typing import Any


class StockError(Exception):
    """
    Base class for every failure the core reports to its callers.

    `code` is stable and machine-readable; `details` carries the numeric
    context (available/required, remaining, ...) needed to render a message.
    """
    code = "stock_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFoundError(StockError):
    code = "not_found"


class StoreNotFoundError(NotFoundError):
    code = "store_not_found"

    def __init__(self, store_id: int):
        super().__init__(f"Store {store_id} not found", {"store_id": store_id})


class ProductNotFoundError(NotFoundError):
    code = "product_not_found"

    def __init__(self, product_id: int | None, store_id: int | None = None, *, barcode: str | None = None):
        if barcode is not None:
            super().__init__(
                f"No product with barcode {barcode!r}",
                {"barcode": barcode, "store_id": store_id},
            )
            return
        super().__init__(
            f"Product {product_id} not found",
            {"product_id": product_id, "store_id": store_id},
        )


class SaleNotFoundError(NotFoundError):
    code = "sale_not_found"

    def __init__(self, sale_id: int | str, store_id: int | None = None):
        super().__init__(f"Sale {sale_id} not found", {"sale_id": sale_id, "store_id": store_id})


class SaleItemNotFoundError(NotFoundError):
    code = "sale_item_not_found"

    def __init__(self, sale_item_id: int, sale_id: int | None = None):
        super().__init__(
            f"Sale item {sale_item_id} not found on sale {sale_id}",
            {"sale_item_id": sale_item_id, "sale_id": sale_id},
        )


class ValidationError(StockError):
    """Bad input, rejected before any stock is read."""
    code = "validation_error"


class InvalidReturnTypeError(ValidationError):
    code = "invalid_return_type"

    def __init__(self, return_type: Any):
        super().__init__(
            f"Invalid return type: {return_type!r}. Must be 'customer_mistake' or 'defective'",
            {"return_type": return_type},
        )


class InsufficientStockError(StockError):
    code = "insufficient_stock"

    def __init__(self, product_id: int, stock_type: str, available: int, required: int):
        super().__init__(
            f"Insufficient {stock_type} stock for product {product_id}: "
            f"available {available}, required {required}",
            {
                "product_id": product_id,
                "stock_type": stock_type,
                "available": available,
                "required": required,
            },
        )
        self.product_id = product_id
        self.stock_type = stock_type
        self.available = available
        self.required = required


class OverReturnError(StockError):
    code = "over_return"

    def __init__(self, sale_item_id: int, requested: int, remaining: int):
        super().__init__(
            f"Cannot return {requested} units of sale item {sale_item_id}: "
            f"only {remaining} remain returnable",
            {"sale_item_id": sale_item_id, "requested": requested, "remaining": remaining},
        )
        self.sale_item_id = sale_item_id
        self.requested = requested
        self.remaining = remaining


class InvalidTransitionError(StockError):
    code = "invalid_transition"

    def __init__(self, sale_id: int, current: str, target: str):
        super().__init__(
            f"Sale {sale_id} cannot move from {current} to {target}",
            {"sale_id": sale_id, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class ConcurrencyConflictError(StockError):
    """A concurrent writer won and retrying did not resolve it."""
    code = "concurrency_conflict"


class PermissionDeniedError(StockError):
    code = "permission_denied"

    def __init__(self, role: str, operation: str):
        super().__init__(
            f"Role {role!r} is not allowed to perform {operation}",
            {"role": role, "operation": operation},
        )


class ImmutableLedgerError(StockError):
    code = "immutable_ledger"
