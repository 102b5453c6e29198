"""
Return Reconciliation

Returns are recorded only in the stock ledger. Each accepted return entry
writes exactly one `return` movement for its sale item, carrying the
return_type and the number of units it closes out (returned_quantity):

- customer_mistake: the units go back to the pool they were sold from
  (quantity_change = +returned_quantity).
- defective: the units are written off (quantity_change = 0) but still count
  as returned.

returned_so_far for an item is the sum of returned_quantity over its return
rows, so both kinds reduce the returnable remainder exactly once and ledger
replay stays exact.

Batch returns are processed entry by entry: each entry is its own
transaction, failures are reported per entry and never undo the others.
When the last returnable unit of a sale comes back, the sale moves to
refunded in the same transaction as that return.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import (
    ConcurrencyConflictError,
    InvalidReturnTypeError,
    InvalidTransitionError,
    OverReturnError,
    SaleItemNotFoundError,
    StockError,
    ValidationError,
)
from ..extensions import db
from ..models import Product, Sale, SaleItem, StockMovement
from ..models.inventory import (
    MOVEMENT_RETURN,
    RETURN_CUSTOMER_MISTAKE,
    RETURN_DEFECTIVE,
    RETURN_TYPES,
)
from ..models.sales import SALE_COMPLETED, SALE_REFUNDED
from ..permissions import Actor, StockOperation, require_capability
from ..time_utils import to_utc_z, utcnow
from ..validation import quantize_money, require_positive_int
from .concurrency import lock_for_update, run_in_transaction
from .ledger_service import apply_movement, returned_quantities_for_sale
from .sales_service import get_sale


def _item_rows(sale: Sale) -> list[dict]:
    returned = returned_quantities_for_sale(sale.id)
    rows = []
    for item in sale.items:
        returned_so_far = returned.get(item.id, 0)
        rows.append({
            "sale_item_id": item.id,
            "product_id": item.product_id,
            "product_name": item.product_name,
            "stock_type": item.stock_type,
            "quantity": item.quantity,
            "returned_so_far": returned_so_far,
            "returnable_remaining": max(item.quantity - returned_so_far, 0),
        })
    return rows


def get_returns_summary(*, store_id: int, sale_id: int) -> dict:
    """Per-item returned and returnable quantities for a sale. Read-only."""
    sale = get_sale(store_id, sale_id)
    items = _item_rows(sale)
    return {
        "sale_id": sale.id,
        "receipt_number": sale.receipt_number,
        "payment_status": sale.payment_status,
        "items": items,
        "fully_returned": all(row["returnable_remaining"] == 0 for row in items),
    }


def _normalize_entry(entry) -> dict:
    if not isinstance(entry, dict):
        raise ValidationError("Return entry must be an object")
    sale_item_id = entry.get("sale_item_id")
    if sale_item_id is None:
        raise ValidationError("sale_item_id is required")
    return_type = entry.get("return_type")
    if return_type not in RETURN_TYPES:
        raise InvalidReturnTypeError(return_type)
    return {
        "sale_item_id": sale_item_id,
        "product_id": entry.get("product_id"),
        "stock_type": entry.get("stock_type"),
        "quantity": require_positive_int(entry.get("quantity"), "quantity"),
        "return_type": return_type,
        "notes": entry.get("notes"),
    }


def _return_one(store_id: int, sale_id: int, entry: dict, actor: Actor) -> StockMovement:
    """Validate and record one return entry. Runs inside its own transaction."""
    sale = get_sale(store_id, sale_id, lock=True)
    if sale.payment_status != SALE_COMPLETED:
        raise InvalidTransitionError(sale.id, sale.payment_status, SALE_REFUNDED)

    item = lock_for_update(
        db.session.query(SaleItem).filter_by(id=entry["sale_item_id"], sale_id=sale.id)
    ).first()
    if item is None:
        raise SaleItemNotFoundError(entry["sale_item_id"], sale.id)
    if entry["product_id"] is not None and entry["product_id"] != item.product_id:
        raise ValidationError(
            f"Sale item {item.id} is for product {item.product_id}, not {entry['product_id']}",
            {"sale_item_id": item.id, "product_id": entry["product_id"]},
        )
    if entry["stock_type"] is not None and entry["stock_type"] != item.stock_type:
        raise ValidationError(
            f"Sale item {item.id} was sold from {item.stock_type}",
            {"sale_item_id": item.id, "stock_type": entry["stock_type"]},
        )

    # Bumps the sale's version so concurrent returns on this sale conflict
    sale.updated_at = utcnow()
    db.session.flush()

    returned = returned_quantities_for_sale(sale.id)
    remaining = item.quantity - returned.get(item.id, 0)
    if entry["quantity"] > remaining:
        raise OverReturnError(item.id, entry["quantity"], max(remaining, 0))

    restores_stock = entry["return_type"] == RETURN_CUSTOMER_MISTAKE
    applied = apply_movement(
        product_id=item.product_id,
        store_id=sale.store_id,
        stock_type=item.stock_type,
        delta=entry["quantity"] if restores_stock else 0,
        movement_type=MOVEMENT_RETURN,
        reason=f"Return: {entry['return_type']}",
        performed_by=actor.user_id,
        sale_id=sale.id,
        sale_item_id=item.id,
        return_type=entry["return_type"],
        returned_quantity=entry["quantity"],
        notes=entry["notes"],
    )

    returned[item.id] = returned.get(item.id, 0) + entry["quantity"]
    if all(i.quantity - returned.get(i.id, 0) <= 0 for i in sale.items):
        sale.payment_status = SALE_REFUNDED
        sale.refunded_at = utcnow()
        db.session.flush()

    return applied.movement


def _failed_entry(index: int, raw, exc: StockError) -> dict:
    return {
        "index": index,
        "sale_item_id": raw.get("sale_item_id") if isinstance(raw, dict) else None,
        "success": False,
        "error": exc.to_dict(),
    }


@require_capability(StockOperation.PROCESS_RETURN)
def return_items_batch(*, store_id: int, sale_id: int, entries: list[dict], actor: Actor) -> dict:
    """
    Return items of a completed sale.

    entries: [{"sale_item_id", "quantity", "return_type", optional "product_id",
    "stock_type", "notes"}]

    The sale must exist and be completed, otherwise the whole call fails.
    After that every entry succeeds or fails on its own; the result lists one
    row per entry in input order. A lock or version conflict that outlasts the
    retries is reported on its entry as concurrency_conflict.
    """
    if not entries:
        raise ValidationError("At least one return entry is required")

    sale = get_sale(store_id, sale_id)
    if sale.payment_status != SALE_COMPLETED:
        raise InvalidTransitionError(sale.id, sale.payment_status, SALE_REFUNDED)

    results = []
    for index, raw in enumerate(entries):
        try:
            entry = _normalize_entry(raw)
            movement = run_in_transaction(
                lambda entry=entry: _return_one(store_id, sale_id, entry, actor)
            )
        except (OperationalError, StaleDataError) as exc:
            current_app.logger.warning(
                "Return entry %d on sale %s gave up after retries: %s", index, sale_id, type(exc).__name__,
            )
            results.append(_failed_entry(index, raw, ConcurrencyConflictError(
                "Sale was being changed concurrently; retry the entry",
                {"sale_id": sale_id},
            )))
            continue
        except StockError as exc:
            current_app.logger.info(
                "Return entry %d on sale %s rejected: %s", index, sale_id, exc.message,
            )
            results.append(_failed_entry(index, raw, exc))
            continue

        results.append({
            "index": index,
            "sale_item_id": movement.sale_item_id,
            "success": True,
            "movement_id": movement.id,
            "return_type": movement.return_type,
            "quantity": movement.returned_quantity,
        })

    summary = get_returns_summary(store_id=store_id, sale_id=sale_id)
    return {
        "sale_id": sale_id,
        "results": results,
        "succeeded": sum(1 for r in results if r["success"]),
        "failed": sum(1 for r in results if not r["success"]),
        "payment_status": summary["payment_status"],
        "fully_returned": summary["fully_returned"],
        "items": summary["items"],
    }


# -- Reports --

def _return_totals_query(store_id: int, sale_id: int | None = None):
    query = (
        db.session.query(
            StockMovement.product_id,
            StockMovement.return_type,
            func.coalesce(func.sum(StockMovement.returned_quantity), 0),
            func.max(StockMovement.created_at),
        )
        .filter(
            StockMovement.store_id == store_id,
            StockMovement.movement_type == MOVEMENT_RETURN,
        )
    )
    if sale_id is not None:
        query = query.filter(StockMovement.sale_id == sale_id)
    return query.group_by(StockMovement.product_id, StockMovement.return_type)


@require_capability(StockOperation.VIEW_REPORTS)
def get_returned_products(*, store_id: int, actor: Actor, sale_id: int | None = None) -> list[dict]:
    """
    Per product: customer_mistake vs defective quantities and the loss from
    defective units (cost x defective quantity).
    """
    if sale_id is not None:
        get_sale(store_id, sale_id)

    per_product: dict[int, dict] = {}
    for product_id, return_type, quantity, last_at in _return_totals_query(store_id, sale_id).all():
        row = per_product.setdefault(product_id, {
            RETURN_CUSTOMER_MISTAKE: 0,
            RETURN_DEFECTIVE: 0,
            "last_at": {},
        })
        row[return_type] = row.get(return_type, 0) + int(quantity)
        row["last_at"][return_type] = last_at

    if not per_product:
        return []

    products = {
        p.id: p for p in db.session.query(Product).filter(Product.id.in_(per_product.keys())).all()
    }

    report = []
    for product_id in sorted(per_product):
        row = per_product[product_id]
        product = products[product_id]
        defective = row[RETURN_DEFECTIVE]
        customer_mistake = row[RETURN_CUSTOMER_MISTAKE]
        report.append({
            "product_id": product_id,
            "sku": product.sku,
            "name": product.name,
            "customer_mistake_quantity": customer_mistake,
            "defective_quantity": defective,
            "total_returned": customer_mistake + defective,
            "loss": str(quantize_money(Decimal(product.cost) * defective)),
            "last_returned_at": to_utc_z(max(filter(None, row["last_at"].values()), default=None)),
            "last_defective_at": to_utc_z(row["last_at"].get(RETURN_DEFECTIVE)),
        })
    return report


@require_capability(StockOperation.VIEW_REPORTS)
def get_defective_products(*, store_id: int, actor: Actor) -> list[dict]:
    """Products with defective returns, most written-off units first."""
    rows = [
        {
            "product_id": r["product_id"],
            "sku": r["sku"],
            "name": r["name"],
            "defective_quantity": r["defective_quantity"],
            "loss": r["loss"],
            "last_returned_at": r["last_defective_at"],
        }
        for r in get_returned_products(store_id=store_id, actor=actor)
        if r["defective_quantity"] > 0
    ]
    rows.sort(key=lambda r: (-r["defective_quantity"], r["product_id"]))
    return rows
