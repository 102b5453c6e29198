"""
Sale settlement: create sales, confirm or cancel pending ones, refund completed ones.

Stock is only touched when a sale becomes completed (deduction) or refunded
(restoration of whatever has not already come back through returns).
Pending sales hold no stock; availability is checked again on confirmation.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func

from ..errors import (
    InsufficientStockError,
    InvalidTransitionError,
    ProductNotFoundError,
    SaleNotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Product, Sale, SaleItem
from ..models.inventory import (
    MOVEMENT_RETURN,
    MOVEMENT_SALE,
    RETURN_CUSTOMER_MISTAKE,
    STOCK_TYPES,
    STOCK_VENTA,
)
from ..models.sales import (
    PAYMENT_METHODS,
    SALE_CANCELLED,
    SALE_COMPLETED,
    SALE_PENDING,
    SALE_REFUNDED,
    SALE_STATUSES,
)
from ..permissions import Actor, StockOperation, require_capability
from ..time_utils import parse_iso_datetime, utcnow
from ..validation import parse_money, quantize_money, require_positive_int
from .concurrency import lock_for_update, run_in_transaction
from .ledger_service import apply_movement, returned_quantities_for_sale
from .products_service import get_store
from .receipt_service import next_receipt_number


def serialize_sale(sale: Sale) -> dict:
    data = sale.to_dict()
    data["items"] = [item.to_dict() for item in sale.items]
    return data


def _normalize_lines(items) -> list[dict]:
    if not items:
        raise ValidationError("A sale needs at least one item")

    lines = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item {index} must be an object", {"index": index})
        product_id = raw.get("product_id")
        if product_id is None:
            raise ValidationError(f"Item {index} is missing product_id", {"index": index})

        stock_type = raw.get("stock_type") or STOCK_VENTA
        if stock_type not in STOCK_TYPES:
            raise ValidationError(
                f"Item {index} has invalid stock_type {stock_type!r}",
                {"index": index, "stock_type": stock_type},
            )

        lines.append({
            "product_id": product_id,
            "quantity": require_positive_int(raw.get("quantity"), "quantity"),
            "unit_price": (
                parse_money(raw["unit_price"], "unit_price")
                if raw.get("unit_price") is not None else None
            ),
            "discount": parse_money(raw.get("discount") or 0, "discount"),
            "stock_type": stock_type,
        })
    return lines


def _check_availability(store_id: int, demand: dict[tuple[int, str], int]) -> None:
    """demand maps (product_id, stock_type) -> units needed across all lines."""
    for (product_id, stock_type), required in demand.items():
        product = db.session.get(Product, product_id, populate_existing=True)
        if product is None or product.store_id != store_id:
            raise ProductNotFoundError(product_id, store_id)
        available = product.balance(stock_type)
        if available < required:
            raise InsufficientStockError(product_id, stock_type, available=available, required=required)


def _demand_for_items(items) -> dict[tuple[int, str], int]:
    demand: dict[tuple[int, str], int] = {}
    for item in items:
        key = (item.product_id, item.stock_type)
        demand[key] = demand.get(key, 0) + item.quantity
    return demand


def _deduct_stock(sale: Sale, performed_by: int) -> None:
    for item in sale.items:
        apply_movement(
            product_id=item.product_id,
            store_id=sale.store_id,
            stock_type=item.stock_type,
            delta=-item.quantity,
            movement_type=MOVEMENT_SALE,
            reason=f"Sale {sale.receipt_number}",
            performed_by=performed_by,
            sale_id=sale.id,
            sale_item_id=item.id,
        )


def get_sale(store_id: int, sale_id: int, *, lock: bool = False) -> Sale:
    query = db.session.query(Sale).filter_by(id=sale_id, store_id=store_id)
    if lock:
        query = lock_for_update(query)
    sale = query.populate_existing().first()
    if sale is None:
        raise SaleNotFoundError(sale_id, store_id)
    return sale


@require_capability(StockOperation.PROCESS_SALE)
def process_sale(
    *,
    store_id: int,
    items: list[dict],
    payment_method: str,
    actor: Actor,
    require_payment_confirmation: bool = False,
    discount=0,
    notes: str | None = None,
) -> Sale:
    """
    Create a sale.

    items: [{"product_id", "quantity", optional "unit_price", "discount", "stock_type"}]

    With require_payment_confirmation the sale is created pending and no stock
    moves; otherwise it is created completed and every line is deducted now.
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {payment_method!r}",
            {"payment_method": payment_method},
        )
    lines = _normalize_lines(items)
    sale_discount = parse_money(discount or 0, "discount")

    def _op() -> Sale:
        store = get_store(store_id)
        if not store.is_active:
            raise ValidationError(f"Store {store_id} is inactive", {"store_id": store_id})

        demand: dict[tuple[int, str], int] = {}
        priced = []
        subtotal = Decimal("0.00")
        for line in lines:
            product = db.session.query(Product).filter_by(id=line["product_id"], store_id=store_id).first()
            if product is None:
                raise ProductNotFoundError(line["product_id"], store_id)
            if not product.is_active:
                raise ValidationError(
                    f"Product {product.id} is inactive",
                    {"product_id": product.id},
                )

            key = (product.id, line["stock_type"])
            demand[key] = demand.get(key, 0) + line["quantity"]

            unit_price = line["unit_price"] if line["unit_price"] is not None else product.price
            line_subtotal = quantize_money(Decimal(unit_price) * line["quantity"])
            if line["discount"] > line_subtotal:
                raise ValidationError(
                    f"Discount on product {product.id} exceeds the line subtotal",
                    {"product_id": product.id, "discount": str(line["discount"]),
                     "subtotal": str(line_subtotal)},
                )
            line_total = line_subtotal - line["discount"]
            subtotal += line_total
            priced.append((product, line, unit_price, line_subtotal, line_total))

        _check_availability(store_id, demand)

        tax_rate = Decimal(store.tax_rate or 0)
        tax = quantize_money(subtotal * tax_rate / Decimal("100"))
        total = subtotal + tax - sale_discount
        if total < 0:
            raise ValidationError(
                "Sale discount exceeds subtotal plus tax",
                {"subtotal": str(subtotal), "tax": str(tax), "discount": str(sale_discount)},
            )

        status = SALE_PENDING if require_payment_confirmation else SALE_COMPLETED
        sale = Sale(
            store_id=store_id,
            user_id=actor.user_id,
            subtotal=subtotal,
            tax=tax,
            discount=sale_discount,
            total=total,
            payment_method=payment_method,
            payment_status=status,
            receipt_number=next_receipt_number(store_id=store_id),
            notes=notes,
            completed_at=utcnow() if status == SALE_COMPLETED else None,
        )
        db.session.add(sale)
        db.session.flush()

        for product, line, unit_price, line_subtotal, line_total in priced:
            db.session.add(SaleItem(
                sale_id=sale.id,
                product_id=product.id,
                product_name=product.name,
                product_sku=product.sku,
                quantity=line["quantity"],
                unit_price=quantize_money(Decimal(unit_price)),
                subtotal=line_subtotal,
                discount=line["discount"],
                total=line_total,
                stock_type=line["stock_type"],
            ))
        db.session.flush()
        db.session.refresh(sale)

        if status == SALE_COMPLETED:
            _deduct_stock(sale, actor.user_id)
        return sale

    return run_in_transaction(_op)


@require_capability(StockOperation.CONFIRM_SALE)
def confirm_pending_sale(*, store_id: int, sale_id: int, actor: Actor) -> Sale:
    """
    Complete a pending sale once the external payment is confirmed.

    Stock is re-checked for every line; if any line is now short the whole
    confirmation fails, nothing is deducted and the sale stays pending.
    """
    def _op() -> Sale:
        sale = get_sale(store_id, sale_id, lock=True)
        if sale.payment_status != SALE_PENDING:
            raise InvalidTransitionError(sale.id, sale.payment_status, SALE_COMPLETED)

        _check_availability(store_id, _demand_for_items(sale.items))
        _deduct_stock(sale, actor.user_id)

        sale.payment_status = SALE_COMPLETED
        sale.completed_at = utcnow()
        db.session.flush()
        return sale

    return run_in_transaction(_op)


@require_capability(StockOperation.CANCEL_SALE)
def cancel_pending_sale(*, store_id: int, sale_id: int, actor: Actor) -> Sale:
    """Cancel a sale whose payment never arrived. No stock was taken, none is returned."""
    def _op() -> Sale:
        sale = get_sale(store_id, sale_id, lock=True)
        if sale.payment_status != SALE_PENDING:
            raise InvalidTransitionError(sale.id, sale.payment_status, SALE_CANCELLED)

        sale.payment_status = SALE_CANCELLED
        sale.cancelled_at = utcnow()
        db.session.flush()
        return sale

    return run_in_transaction(_op)


@require_capability(StockOperation.REFUND_SALE)
def refund_sale(*, store_id: int, sale_id: int, actor: Actor, reason: str | None = None) -> Sale:
    """
    Refund a completed sale in full.

    Each item's unreturned remainder goes back to the pool it was sold from,
    recorded as a customer_mistake return. Items already fully returned write
    nothing.
    """
    reason = str(reason).strip() if reason and str(reason).strip() else "Full refund"

    def _op() -> Sale:
        sale = get_sale(store_id, sale_id, lock=True)
        if sale.payment_status != SALE_COMPLETED:
            raise InvalidTransitionError(sale.id, sale.payment_status, SALE_REFUNDED)

        returned = returned_quantities_for_sale(sale.id)
        for item in sale.items:
            remaining = item.quantity - returned.get(item.id, 0)
            if remaining <= 0:
                continue
            apply_movement(
                product_id=item.product_id,
                store_id=sale.store_id,
                stock_type=item.stock_type,
                delta=remaining,
                movement_type=MOVEMENT_RETURN,
                reason=f"{reason} ({RETURN_CUSTOMER_MISTAKE})",
                performed_by=actor.user_id,
                sale_id=sale.id,
                sale_item_id=item.id,
                return_type=RETURN_CUSTOMER_MISTAKE,
                returned_quantity=remaining,
            )

        sale.payment_status = SALE_REFUNDED
        sale.refunded_at = utcnow()
        db.session.flush()
        return sale

    return run_in_transaction(_op)


# -- Lookups --

def find_sale_by_receipt(store_id: int, receipt_number: str) -> Sale:
    sale = (
        db.session.query(Sale)
        .filter_by(store_id=store_id, receipt_number=receipt_number)
        .first()
    )
    if sale is None:
        raise SaleNotFoundError(receipt_number, store_id)
    return sale


def _parse_window(start: str | None, end: str | None):
    try:
        return parse_iso_datetime(start), parse_iso_datetime(end)
    except ValueError:
        raise ValidationError("start/end must be ISO-8601 datetimes", {"start": start, "end": end})


def list_sales(
    store_id: int,
    *,
    status: str | None = None,
    user_id: int | None = None,
    payment_method: str | None = None,
    start: str | None = None,
    end: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """
    Newest-first sale listing with filters and pagination.

    start/end are ISO-8601 strings, inclusive, compared against created_at.
    """
    if status is not None and status not in SALE_STATUSES:
        raise ValidationError(f"Invalid status: {status!r}", {"status": status})
    if payment_method is not None and payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {payment_method!r}",
            {"payment_method": payment_method},
        )

    start_dt, end_dt = _parse_window(start, end)

    query = db.session.query(Sale).filter(Sale.store_id == store_id)
    if status is not None:
        query = query.filter(Sale.payment_status == status)
    if user_id is not None:
        query = query.filter(Sale.user_id == user_id)
    if payment_method is not None:
        query = query.filter(Sale.payment_method == payment_method)
    if start_dt is not None:
        query = query.filter(Sale.created_at >= start_dt)
    if end_dt is not None:
        query = query.filter(Sale.created_at <= end_dt)

    limit = min(max(limit or 20, 1), 100)
    page = max(page or 1, 1)

    total = query.count()
    total_pages = (total + limit - 1) // limit if total > 0 else 1
    sales = (
        query.order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "items": [serialize_sale(s) for s in sales],
        "count": len(sales),
        "pagination": {
            "page": page,
            "per_page": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


@require_capability(StockOperation.VIEW_REPORTS)
def get_sales_stats(*, store_id: int, actor: Actor, start: str | None = None, end: str | None = None) -> dict:
    """
    Dashboard figures for a store: completed sales and their revenue, plus
    refunded sales and the amount given back. Pending and cancelled sales
    never count. start/end bound created_at like list_sales does.
    """
    start_dt, end_dt = _parse_window(start, end)

    query = (
        db.session.query(Sale.payment_status, func.count(Sale.id), func.sum(Sale.total))
        .filter(
            Sale.store_id == store_id,
            Sale.payment_status.in_((SALE_COMPLETED, SALE_REFUNDED)),
        )
    )
    if start_dt is not None:
        query = query.filter(Sale.created_at >= start_dt)
    if end_dt is not None:
        query = query.filter(Sale.created_at <= end_dt)

    totals = {SALE_COMPLETED: (0, Decimal("0.00")), SALE_REFUNDED: (0, Decimal("0.00"))}
    for status, count, amount in query.group_by(Sale.payment_status).all():
        totals[status] = (count, quantize_money(Decimal(str(amount or 0))))

    sales_count, revenue = totals[SALE_COMPLETED]
    refunded_count, refunded_amount = totals[SALE_REFUNDED]
    return {
        "store_id": store_id,
        "total_sales": sales_count,
        "revenue": str(revenue),
        "average_ticket": str(quantize_money(revenue / sales_count)) if sales_count else "0.00",
        "refunded_sales": refunded_count,
        "refunded_amount": str(refunded_amount),
    }
