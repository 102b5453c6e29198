# Overview: Stock transfer operations between warehouse (deposito) and sales floor (venta).

from __future__ import annotations

from dataclasses import dataclass, field

from ..errors import InsufficientStockError, ProductNotFoundError, ValidationError
from ..extensions import db
from ..models import Product, StockMovement
from ..models.inventory import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_RESTOCK,
    STOCK_DEPOSITO,
    STOCK_VENTA,
)
from ..permissions import Actor, StockOperation, require_capability
from ..validation import require_non_negative_int, require_positive_int, require_text
from .concurrency import lock_for_update, run_in_transaction
from .ledger_service import apply_movement
"""
Stock Transfer Rules (authoritative)

- Every operation is one transaction: either all of its ledger rows and
  balance changes land, or none do.
- Inputs (quantity, reason, adjustment type) are validated before any stock
  is read.
- restock and update_sales_floor_stock are zero-sum: they move units between
  pools and never change stock_deposito + stock_venta.
- fill_warehouse and adjust_* create or destroy units and are owner-only.
"""

ADJUST_INCREASE = "increase"
ADJUST_DECREASE = "decrease"
ADJUST_SET = "set"
ADJUSTMENT_TYPES = (ADJUST_INCREASE, ADJUST_DECREASE, ADJUST_SET)


@dataclass
class StockChange:
    product: Product
    movements: list[StockMovement] = field(default_factory=list)

    @property
    def movement_id(self) -> int | None:
        return self.movements[0].id if self.movements else None

    def to_dict(self) -> dict:
        return {
            "product": self.product.to_dict(),
            "movement_id": self.movement_id,
            "movements": [m.to_dict() for m in self.movements],
        }


def _load_product(store_id: int, product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id, store_id=store_id)
    if lock:
        query = lock_for_update(query)
    product = query.populate_existing().first()
    if product is None:
        raise ProductNotFoundError(product_id, store_id)
    return product


@require_capability(StockOperation.RESTOCK)
def restock(
    *,
    store_id: int,
    product_id: int,
    quantity: int,
    actor: Actor,
    reason: str | None = None,
    notes: str | None = None,
) -> StockChange:
    """Move `quantity` units from the warehouse to the sales floor."""
    require_positive_int(quantity, "quantity")
    reason = str(reason).strip() if reason and str(reason).strip() else "Restock from warehouse"

    def _op() -> StockChange:
        _load_product(store_id, product_id)
        common = dict(
            product_id=product_id,
            store_id=store_id,
            movement_type=MOVEMENT_RESTOCK,
            reason=reason,
            performed_by=actor.user_id,
            notes=notes,
        )
        out = apply_movement(stock_type=STOCK_DEPOSITO, delta=-quantity, **common)
        into = apply_movement(stock_type=STOCK_VENTA, delta=quantity, **common)
        return StockChange(product=_load_product(store_id, product_id), movements=[into.movement, out.movement])

    return run_in_transaction(_op)


@require_capability(StockOperation.FILL_WAREHOUSE)
def fill_warehouse(
    *,
    store_id: int,
    product_id: int,
    quantity: int,
    reason: str,
    actor: Actor,
    notes: str | None = None,
) -> StockChange:
    """Add incoming units to warehouse stock."""
    require_positive_int(quantity, "quantity")
    reason = require_text(reason, "reason", max_length=255)

    def _op() -> StockChange:
        _load_product(store_id, product_id)
        applied = apply_movement(
            product_id=product_id,
            store_id=store_id,
            stock_type=STOCK_DEPOSITO,
            delta=quantity,
            movement_type=MOVEMENT_ADJUSTMENT,
            reason=reason,
            performed_by=actor.user_id,
            notes=notes,
        )
        return StockChange(product=_load_product(store_id, product_id), movements=[applied.movement])

    return run_in_transaction(_op)


def _adjust(
    *,
    stock_type: str,
    store_id: int,
    product_id: int,
    adjustment_type: str,
    quantity: int,
    reason: str,
    actor: Actor,
    notes: str | None,
) -> StockChange:
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError(
            f"Invalid adjustment type: {adjustment_type!r}. Use increase, decrease or set",
            {"adjustment_type": adjustment_type},
        )
    require_non_negative_int(quantity, "quantity")
    reason = require_text(reason, "reason", max_length=255)

    def _op() -> StockChange:
        product = _load_product(store_id, product_id, lock=True)
        expected = None
        if adjustment_type == ADJUST_INCREASE:
            delta = quantity
        elif adjustment_type == ADJUST_DECREASE:
            delta = -quantity
        else:
            expected = product.balance(stock_type)
            delta = quantity - expected

        applied = apply_movement(
            product_id=product_id,
            store_id=store_id,
            stock_type=stock_type,
            delta=delta,
            movement_type=MOVEMENT_ADJUSTMENT,
            reason=reason,
            performed_by=actor.user_id,
            notes=notes,
            expected_balance=expected,
        )
        return StockChange(product=_load_product(store_id, product_id), movements=[applied.movement])

    return run_in_transaction(_op)


@require_capability(StockOperation.ADJUST_WAREHOUSE)
def adjust_warehouse(
    *,
    store_id: int,
    product_id: int,
    adjustment_type: str,
    quantity: int,
    reason: str,
    actor: Actor,
    notes: str | None = None,
) -> StockChange:
    return _adjust(
        stock_type=STOCK_DEPOSITO,
        store_id=store_id,
        product_id=product_id,
        adjustment_type=adjustment_type,
        quantity=quantity,
        reason=reason,
        actor=actor,
        notes=notes,
    )


@require_capability(StockOperation.ADJUST_SALES)
def adjust_sales(
    *,
    store_id: int,
    product_id: int,
    adjustment_type: str,
    quantity: int,
    reason: str,
    actor: Actor,
    notes: str | None = None,
) -> StockChange:
    return _adjust(
        stock_type=STOCK_VENTA,
        store_id=store_id,
        product_id=product_id,
        adjustment_type=adjustment_type,
        quantity=quantity,
        reason=reason,
        actor=actor,
        notes=notes,
    )


@require_capability(StockOperation.UPDATE_SALES_FLOOR)
def update_sales_floor_stock(
    *,
    store_id: int,
    product_id: int,
    target: int,
    actor: Actor,
    reason: str | None = None,
    notes: str | None = None,
) -> StockChange:
    """
    Set sales floor stock to `target`, moving the difference from/to the warehouse.

    A non-zero difference writes two rows: the venta row and an
    opposite-signed deposito row, so the total across both pools is unchanged.
    When target equals the current sales floor count only one row is written,
    a zero-change venta row that records the count; there is nothing to move.
    """
    require_non_negative_int(target, "target")
    reason = str(reason).strip() if reason and str(reason).strip() else "Sales floor count"

    def _op() -> StockChange:
        product = _load_product(store_id, product_id, lock=True)
        current_venta = product.balance(STOCK_VENTA)
        delta = target - current_venta

        if delta > 0 and product.stock_deposito < delta:
            raise InsufficientStockError(
                product_id, STOCK_DEPOSITO, available=product.stock_deposito, required=delta,
            )

        common = dict(
            product_id=product_id,
            store_id=store_id,
            movement_type=MOVEMENT_ADJUSTMENT,
            performed_by=actor.user_id,
        )
        counterpart_reason = "Auto-adjustment from sales floor change"
        counterpart_notes = f"Related: {notes or reason}"

        if delta > 0:
            warehouse = apply_movement(
                stock_type=STOCK_DEPOSITO, delta=-delta,
                reason=counterpart_reason, notes=counterpart_notes, **common,
            )
            floor = apply_movement(
                stock_type=STOCK_VENTA, delta=delta, reason=reason, notes=notes,
                expected_balance=current_venta, **common,
            )
            movements = [floor.movement, warehouse.movement]
        else:
            floor = apply_movement(
                stock_type=STOCK_VENTA, delta=delta, reason=reason, notes=notes,
                expected_balance=current_venta, **common,
            )
            movements = [floor.movement]
            if delta < 0:
                warehouse = apply_movement(
                    stock_type=STOCK_DEPOSITO, delta=-delta,
                    reason=counterpart_reason, notes=counterpart_notes, **common,
                )
                movements.append(warehouse.movement)

        return StockChange(product=_load_product(store_id, product_id), movements=movements)

    return run_in_transaction(_op)


@require_capability(StockOperation.VIEW_STOCK)
def get_low_stock_alerts(*, store_id: int, actor: Actor) -> list[dict]:
    """Active products at or below either pool's threshold."""
    products = (
        db.session.query(Product)
        .filter(
            Product.store_id == store_id,
            Product.is_active.is_(True),
            (Product.stock_venta <= Product.min_stock_venta)
            | (Product.stock_deposito <= Product.min_stock_deposito),
        )
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )

    alerts = []
    for product in products:
        low = []
        if product.stock_venta <= product.min_stock_venta:
            low.append(STOCK_VENTA)
        if product.stock_deposito <= product.min_stock_deposito:
            low.append(STOCK_DEPOSITO)
        alerts.append({
            "product_id": product.id,
            "sku": product.sku,
            "name": product.name,
            "stock_deposito": product.stock_deposito,
            "stock_venta": product.stock_venta,
            "min_stock_deposito": product.min_stock_deposito,
            "min_stock_venta": product.min_stock_venta,
            "low": low,
        })
    return alerts
