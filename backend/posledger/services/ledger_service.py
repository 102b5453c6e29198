# Overview: Stock ledger primitive and pure queries over the stock_movements ledger.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func, update

from ..errors import (
    ConcurrencyConflictError,
    InsufficientStockError,
    InvalidReturnTypeError,
    ProductNotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Product, StockMovement
from ..models.inventory import (
    MOVEMENT_RETURN,
    MOVEMENT_TYPES,
    RETURN_TYPES,
    STOCK_TYPES,
    STOCK_VENTA,
)
"""
Stock Ledger Invariants (authoritative)

- apply_movement is the only code path that writes Product.stock_deposito,
  Product.stock_venta or Product.legacy_stock.
- The balance check and the write are one conditional UPDATE
  ("add delta where balance >= -delta"), so two writers can never both pass
  against a stale balance.
- legacy_stock is recomputed from both pools in the same transaction, right
  after the conditional UPDATE.
- Exactly one StockMovement row is appended per call, with quantity_before /
  quantity_after taken from the balance the UPDATE produced.
- Nothing here commits; callers own the transaction (run_in_transaction).
- Returned quantities and replayed balances are derived from the ledger on
  every read. No counters are kept alongside it.
"""


@dataclass(frozen=True)
class AppliedMovement:
    new_balance: int
    movement: StockMovement

    @property
    def movement_id(self) -> int:
        return self.movement.id


def _balance_column(stock_type: str):
    return Product.stock_venta if stock_type == STOCK_VENTA else Product.stock_deposito


def _fresh_product(product_id: int) -> Product | None:
    return db.session.get(Product, product_id, populate_existing=True)


def _conditional_update(product_id: int, store_id: int, column, delta: int, expected_balance: int | None):
    stmt = update(Product).where(Product.id == product_id, Product.store_id == store_id)
    if delta < 0:
        stmt = stmt.where(column >= -delta)
    if expected_balance is not None:
        stmt = stmt.where(column == expected_balance)
    stmt = (
        stmt.values({column: column + delta, Product.version_id: Product.version_id + 1})
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount


def _recompute_legacy_stock(product_id: int) -> None:
    db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values({Product.legacy_stock: Product.stock_deposito + Product.stock_venta})
        .execution_options(synchronize_session=False)
    )


def apply_movement(
    *,
    product_id: int,
    store_id: int,
    stock_type: str,
    delta: int,
    movement_type: str,
    reason: str,
    performed_by: int,
    sale_id: int | None = None,
    sale_item_id: int | None = None,
    return_type: str | None = None,
    returned_quantity: int = 0,
    notes: str | None = None,
    expected_balance: int | None = None,
) -> AppliedMovement:
    """
    Apply a signed quantity change to one stock pool and append its ledger row.

    Raises InsufficientStockError when delta < 0 and the pool cannot cover it,
    after one retry against a freshly read balance. A second lost race raises
    ConcurrencyConflictError. When expected_balance is given the write only
    lands if the pool still holds exactly that value (used by "set" style
    operations whose delta was computed from a read).
    """
    if stock_type not in STOCK_TYPES:
        raise ValidationError(f"Invalid stock type: {stock_type!r}", {"stock_type": stock_type})
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type: {movement_type!r}", {"movement_type": movement_type})
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("delta must be an integer", {"delta": delta})
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required")
    if return_type is not None and return_type not in RETURN_TYPES:
        raise InvalidReturnTypeError(return_type)
    if returned_quantity < 0:
        raise ValidationError("returned_quantity cannot be negative", {"returned_quantity": returned_quantity})

    product = db.session.get(Product, product_id)
    if product is None or product.store_id != store_id:
        raise ProductNotFoundError(product_id, store_id)

    column = _balance_column(stock_type)

    for _attempt in range(2):
        if _conditional_update(product_id, store_id, column, delta, expected_balance) == 1:
            break
        product = _fresh_product(product_id)
        if product is None or product.store_id != store_id:
            raise ProductNotFoundError(product_id, store_id)
        current = product.balance(stock_type)
        if expected_balance is not None and current != expected_balance:
            raise ConcurrencyConflictError(
                f"{stock_type} stock for product {product_id} changed during the operation",
                {"product_id": product_id, "stock_type": stock_type,
                 "expected": expected_balance, "actual": current},
            )
        if delta < 0 and current < -delta:
            raise InsufficientStockError(product_id, stock_type, available=current, required=-delta)
    else:
        current_app.logger.warning(
            "Conditional stock update for product %s (%s, delta %s) lost twice",
            product_id, stock_type, delta,
        )
        raise ConcurrencyConflictError(
            f"Could not apply {delta:+d} to {stock_type} stock of product {product_id}",
            {"product_id": product_id, "stock_type": stock_type, "delta": delta},
        )

    _recompute_legacy_stock(product_id)

    product = _fresh_product(product_id)
    new_balance = product.balance(stock_type)

    movement = StockMovement(
        product_id=product_id,
        store_id=store_id,
        movement_type=movement_type,
        stock_type=stock_type,
        quantity_change=delta,
        quantity_before=new_balance - delta,
        quantity_after=new_balance,
        reason=str(reason).strip(),
        performed_by=performed_by,
        sale_id=sale_id,
        sale_item_id=sale_item_id,
        return_type=return_type,
        returned_quantity=returned_quantity,
        notes=notes,
    )
    db.session.add(movement)
    db.session.flush()  # ensures movement.id is assigned without committing
    return AppliedMovement(new_balance=new_balance, movement=movement)


# -- Derived quantities --

def returned_quantity_for_item(sale_item_id: int) -> int:
    """Units of a sale item already closed out by return rows (restocked or written off)."""
    total = (
        db.session.query(func.coalesce(func.sum(StockMovement.returned_quantity), 0))
        .filter(
            StockMovement.movement_type == MOVEMENT_RETURN,
            StockMovement.sale_item_id == sale_item_id,
        )
        .scalar()
    )
    return int(total or 0)


def returned_quantities_for_sale(sale_id: int) -> dict[int, int]:
    """sale_item_id -> returned units, for every item of the sale that has return rows."""
    rows = (
        db.session.query(
            StockMovement.sale_item_id,
            func.coalesce(func.sum(StockMovement.returned_quantity), 0),
        )
        .filter(
            StockMovement.movement_type == MOVEMENT_RETURN,
            StockMovement.sale_id == sale_id,
            StockMovement.sale_item_id.isnot(None),
        )
        .group_by(StockMovement.sale_item_id)
        .all()
    )
    return {item_id: int(qty) for item_id, qty in rows}


def list_stock_movements(
    store_id: int,
    *,
    product_id: int | None = None,
    movement_type: str | None = None,
    sale_id: int | None = None,
    limit: int | None = None,
) -> list[StockMovement]:
    """Ledger history for a store, newest first."""
    if limit is None:
        limit = current_app.config.get("STOCK_MOVEMENT_HISTORY_LIMIT", 50)
    if limit <= 0:
        raise ValidationError("limit must be positive", {"limit": limit})
    if movement_type is not None and movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type: {movement_type!r}", {"movement_type": movement_type})

    query = db.session.query(StockMovement).filter(StockMovement.store_id == store_id)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if movement_type is not None:
        query = query.filter(StockMovement.movement_type == movement_type)
    if sale_id is not None:
        query = query.filter(StockMovement.sale_id == sale_id)

    return (
        query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )


# -- Audit --

def _movements_in_order(product_id: int) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter(StockMovement.product_id == product_id)
        .order_by(StockMovement.created_at.asc(), StockMovement.id.asc())
        .all()
    )


def replay_balances(product_id: int) -> dict[str, int]:
    """Rebuild both pools by summing the product's ledger from zero."""
    balances = {stock_type: 0 for stock_type in STOCK_TYPES}
    for movement in _movements_in_order(product_id):
        balances[movement.stock_type] += movement.quantity_change
    return balances


def verify_product_ledger(product_id: int) -> dict:
    """
    Compare a product's stored balances with its ledger.

    Checks that the replayed sums match stock_deposito / stock_venta, that
    legacy_stock equals their sum, and that every row's quantity_before
    continues from the previous row's quantity_after in the same pool.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)

    running = {stock_type: 0 for stock_type in STOCK_TYPES}
    chain_breaks = []
    for movement in _movements_in_order(product_id):
        expected_before = running[movement.stock_type]
        if (
            movement.quantity_before != expected_before
            or movement.quantity_after != movement.quantity_before + movement.quantity_change
        ):
            chain_breaks.append({
                "movement_id": movement.id,
                "stock_type": movement.stock_type,
                "expected_before": expected_before,
                "quantity_before": movement.quantity_before,
                "quantity_after": movement.quantity_after,
            })
        running[movement.stock_type] += movement.quantity_change

    stored = {"deposito": product.stock_deposito, "venta": product.stock_venta}
    legacy_ok = product.legacy_stock == product.stock_deposito + product.stock_venta

    return {
        "product_id": product.id,
        "sku": product.sku,
        "stored": stored,
        "replayed": running,
        "legacy_stock": product.legacy_stock,
        "legacy_stock_ok": legacy_ok,
        "chain_breaks": chain_breaks,
        "ok": stored == running and legacy_ok and not chain_breaks,
    }


def verify_store_ledger(store_id: int) -> dict:
    product_ids = [
        pid for (pid,) in
        db.session.query(Product.id).filter(Product.store_id == store_id).order_by(Product.id).all()
    ]
    reports = [verify_product_ledger(pid) for pid in product_ids]
    return {
        "store_id": store_id,
        "products_checked": len(reports),
        "discrepancies": [r for r in reports if not r["ok"]],
        "ok": all(r["ok"] for r in reports),
    }
