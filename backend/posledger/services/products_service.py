# backend/posledger/services/products_service.py
"""
Product registration, catalogue edits and barcode lookup.

Opening balances are never written straight into the stock columns: they go
through apply_movement as "Opening balance" adjustments, so replaying the
ledger from zero always reproduces the stored balances. For the same reason
update_product refuses stock fields.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import ProductNotFoundError, StoreNotFoundError, ValidationError
from ..extensions import db
from ..models import Product, Store
from ..models.inventory import MOVEMENT_ADJUSTMENT, STOCK_DEPOSITO, STOCK_VENTA
from ..permissions import Actor, StockOperation, require_capability
from ..validation import (
    parse_money,
    require_non_negative_int,
    require_positive_int,
    require_text,
)
from .concurrency import run_in_transaction
from .ledger_service import apply_movement

OPENING_BALANCE_REASON = "Opening balance"

PRODUCT_MUTABLE_FIELDS = (
    "sku",
    "barcode",
    "name",
    "price",
    "cost",
    "min_stock_deposito",
    "min_stock_venta",
    "is_active",
)
STOCK_FIELDS = ("stock_deposito", "stock_venta", "stock", "legacy_stock")


def _clean_barcode(value) -> str | None:
    """Blank barcodes are stored as NULL."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return require_text(value, "barcode", max_length=100)


def _ensure_unique(store_id: int, field: str, value, exclude_id: int | None = None) -> None:
    query = db.session.query(Product.id).filter(
        Product.store_id == store_id,
        getattr(Product, field) == value,
    )
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    if query.first() is not None:
        raise ValidationError(f"{field} {value!r} already exists in this store", {field: value})


def _check_price_over_cost(price, cost) -> None:
    if price <= cost:
        raise ValidationError(
            "price must be greater than cost",
            {"price": str(price), "cost": str(cost)},
        )


def get_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if store is None:
        raise StoreNotFoundError(store_id)
    return store


def get_product(store_id: int, product_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id, store_id=store_id).first()
    if product is None:
        raise ProductNotFoundError(product_id, store_id)
    return product


def get_product_by_barcode(store_id: int, barcode: str) -> Product:
    """Scanner lookup. Inactive products are still found so the caller can say why they can't be sold."""
    cleaned = _clean_barcode(barcode)
    if cleaned is None:
        raise ValidationError("barcode is required")
    product = db.session.query(Product).filter_by(store_id=store_id, barcode=cleaned).first()
    if product is None:
        raise ProductNotFoundError(None, store_id, barcode=cleaned)
    return product


def list_products(store_id: int, *, include_inactive: bool = False) -> list[Product]:
    query = db.session.query(Product).filter(Product.store_id == store_id)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    return query.order_by(Product.name.asc(), Product.id.asc()).all()


@require_capability(StockOperation.MANAGE_PRODUCTS)
def create_product(
    *,
    store_id: int,
    sku: str,
    name: str,
    price,
    cost,
    actor: Actor,
    barcode: str | None = None,
    stock_deposito: int = 0,
    stock_venta: int = 0,
    min_stock_deposito: int | None = None,
    min_stock_venta: int | None = None,
) -> Product:
    """
    Register a product in a store.

    Raises ValidationError for bad money (price must exceed cost), non-positive
    thresholds, negative opening stock, or a SKU or barcode already used in the
    store.
    """
    sku = require_text(sku, "sku", max_length=64)
    name = require_text(name, "name", max_length=255)
    barcode = _clean_barcode(barcode)
    price = parse_money(price, "price")
    cost = parse_money(cost, "cost")
    _check_price_over_cost(price, cost)

    if min_stock_deposito is None:
        min_stock_deposito = current_app.config.get("DEFAULT_MIN_STOCK_DEPOSITO", 10)
    if min_stock_venta is None:
        min_stock_venta = current_app.config.get("DEFAULT_MIN_STOCK_VENTA", 5)
    require_positive_int(min_stock_deposito, "min_stock_deposito")
    require_positive_int(min_stock_venta, "min_stock_venta")
    require_non_negative_int(stock_deposito, "stock_deposito")
    require_non_negative_int(stock_venta, "stock_venta")

    def _op() -> Product:
        get_store(store_id)
        _ensure_unique(store_id, "sku", sku)
        if barcode is not None:
            _ensure_unique(store_id, "barcode", barcode)

        product = Product(
            store_id=store_id,
            sku=sku,
            barcode=barcode,
            name=name,
            price=price,
            cost=cost,
            stock_deposito=0,
            stock_venta=0,
            legacy_stock=0,
            min_stock_deposito=min_stock_deposito,
            min_stock_venta=min_stock_venta,
            is_active=True,
        )
        db.session.add(product)
        try:
            db.session.flush()
        except IntegrityError:
            raise ValidationError(
                f"SKU {sku!r} or barcode {barcode!r} already exists in this store",
                {"sku": sku, "barcode": barcode},
            )

        for stock_type, opening in ((STOCK_DEPOSITO, stock_deposito), (STOCK_VENTA, stock_venta)):
            if opening:
                apply_movement(
                    product_id=product.id,
                    store_id=store_id,
                    stock_type=stock_type,
                    delta=opening,
                    movement_type=MOVEMENT_ADJUSTMENT,
                    reason=OPENING_BALANCE_REASON,
                    performed_by=actor.user_id,
                )
        return get_product(store_id, product.id)

    return run_in_transaction(_op)


def _clean_patch(patch: dict) -> dict:
    if not isinstance(patch, dict) or not patch:
        raise ValidationError("Nothing to update")

    stock_keys = sorted(k for k in patch if k in STOCK_FIELDS)
    if stock_keys:
        raise ValidationError(
            "Stock balances change only through stock movements",
            {"fields": stock_keys},
        )
    unknown = sorted(k for k in patch if k not in PRODUCT_MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown product fields: {', '.join(unknown)}", {"fields": unknown})

    cleaned = {}
    for field, value in patch.items():
        if field == "sku":
            cleaned[field] = require_text(value, "sku", max_length=64)
        elif field == "name":
            cleaned[field] = require_text(value, "name", max_length=255)
        elif field == "barcode":
            cleaned[field] = _clean_barcode(value)
        elif field in ("price", "cost"):
            cleaned[field] = parse_money(value, field)
        elif field in ("min_stock_deposito", "min_stock_venta"):
            cleaned[field] = require_positive_int(value, field)
        elif field == "is_active":
            if not isinstance(value, bool):
                raise ValidationError("is_active must be true or false", {"is_active": value})
            cleaned[field] = value
    return cleaned


@require_capability(StockOperation.MANAGE_PRODUCTS)
def update_product(*, store_id: int, product_id: int, patch: dict, actor: Actor) -> Product:
    """
    Edit catalogue fields of a product.

    patch may hold any of PRODUCT_MUTABLE_FIELDS. The resulting price must
    still exceed the resulting cost; SKU and barcode stay unique per store.
    Stock fields are rejected.
    """
    cleaned = _clean_patch(patch)

    def _op() -> Product:
        product = get_product(store_id, product_id)

        _check_price_over_cost(cleaned.get("price", product.price), cleaned.get("cost", product.cost))
        if "sku" in cleaned and cleaned["sku"] != product.sku:
            _ensure_unique(store_id, "sku", cleaned["sku"], exclude_id=product.id)
        if cleaned.get("barcode") is not None and cleaned["barcode"] != product.barcode:
            _ensure_unique(store_id, "barcode", cleaned["barcode"], exclude_id=product.id)

        for field, value in cleaned.items():
            setattr(product, field, value)
        db.session.flush()
        return product

    return run_in_transaction(_op)


@require_capability(StockOperation.MANAGE_PRODUCTS)
def deactivate_product(*, store_id: int, product_id: int, actor: Actor) -> Product:
    """Hide a product from sale. Stock and ledger are left untouched."""
    return update_product(store_id=store_id, product_id=product_id, patch={"is_active": False}, actor=actor)
