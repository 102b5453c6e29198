from __future__ import annotations

from sqlalchemy import event

from ..errors import ImmutableLedgerError
from ..extensions import db
from ..time_utils import to_utc_z

STOCK_DEPOSITO = "deposito"
STOCK_VENTA = "venta"
STOCK_TYPES = (STOCK_DEPOSITO, STOCK_VENTA)

MOVEMENT_RESTOCK = "restock"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_SALE = "sale"
MOVEMENT_RETURN = "return"
MOVEMENT_TYPES = (MOVEMENT_RESTOCK, MOVEMENT_ADJUSTMENT, MOVEMENT_SALE, MOVEMENT_RETURN)

RETURN_CUSTOMER_MISTAKE = "customer_mistake"
RETURN_DEFECTIVE = "defective"
RETURN_TYPES = (RETURN_CUSTOMER_MISTAKE, RETURN_DEFECTIVE)


class Product(db.Model):
    """
    Product with two stock pools: warehouse (deposito) and sales floor (venta).

    BALANCE OWNERSHIP:
    stock_deposito / stock_venta are a projection of the stock_movements ledger.
    They are written only by ledger_service.apply_movement through a conditional
    UPDATE; nothing else assigns them. legacy_stock ("stock" column) is the
    recomputed sum of both pools, refreshed in the same transaction.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        db.UniqueConstraint("store_id", "barcode", name="uq_products_store_barcode"),
        db.Index("ix_products_store_active", "store_id", "is_active"),
        db.Index(
            "ix_products_low_stock",
            "store_id", "stock_deposito", "min_stock_deposito", "stock_venta", "min_stock_venta",
        ),
        db.CheckConstraint("stock_deposito >= 0", name="ck_products_stock_deposito_nonneg"),
        db.CheckConstraint("stock_venta >= 0", name="ck_products_stock_venta_nonneg"),
        db.CheckConstraint("min_stock_deposito > 0", name="ck_products_min_stock_deposito_pos"),
        db.CheckConstraint("min_stock_venta > 0", name="ck_products_min_stock_venta_pos"),
        db.CheckConstraint("price >= 0 AND cost >= 0", name="ck_products_money_nonneg"),
        db.CheckConstraint("price > cost", name="ck_products_price_over_cost"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    # NULL when the product has no barcode; NULLs never collide
    barcode = db.Column(db.String(100), nullable=True)
    name = db.Column(db.String(255), nullable=False)

    price = db.Column(db.Numeric(12, 2), nullable=False)
    cost = db.Column(db.Numeric(12, 2), nullable=False)

    stock_deposito = db.Column(db.Integer, nullable=False, default=0)
    stock_venta = db.Column(db.Integer, nullable=False, default=0)
    legacy_stock = db.Column("stock", db.Integer, nullable=False, default=0)

    min_stock_deposito = db.Column(db.Integer, nullable=False, default=10)
    min_stock_venta = db.Column(db.Integer, nullable=False, default=5)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def balance(self, stock_type: str) -> int:
        return self.stock_venta if stock_type == STOCK_VENTA else self.stock_deposito

    def __repr__(self) -> str:
        return (
            f"<Product id={self.id} sku={self.sku!r} deposito={self.stock_deposito} "
            f"venta={self.stock_venta}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "price": str(self.price),
            "cost": str(self.cost),
            "stock_deposito": self.stock_deposito,
            "stock_venta": self.stock_venta,
            "stock": self.legacy_stock,
            "min_stock_deposito": self.min_stock_deposito,
            "min_stock_venta": self.min_stock_venta,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only ledger of signed quantity changes to one pool of one product.

    IMMUTABLE: rows are never updated or deleted (enforced by the listeners
    below). Replaying quantity_change per stock_type from zero reproduces the
    product's current balances.

    Return rows also carry return_type and returned_quantity. A defective
    return closes out returned_quantity units with quantity_change = 0.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_store", "product_id", "store_id"),
        db.Index("ix_stock_movements_store_created", "store_id", "created_at"),
        db.Index("ix_stock_movements_store_sale", "store_id", "sale_id"),
        db.Index("ix_stock_movements_product_sale", "product_id", "sale_id"),
        db.CheckConstraint(
            "movement_type IN ('restock', 'adjustment', 'sale', 'return')",
            name="ck_stock_movements_movement_type",
        ),
        db.CheckConstraint("stock_type IN ('deposito', 'venta')", name="ck_stock_movements_stock_type"),
        db.CheckConstraint(
            "quantity_after = quantity_before + quantity_change",
            name="ck_stock_movements_arithmetic",
        ),
        db.CheckConstraint("quantity_after >= 0", name="ck_stock_movements_after_nonneg"),
        db.CheckConstraint("returned_quantity >= 0", name="ck_stock_movements_returned_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(20), nullable=False, index=True)
    stock_type = db.Column(db.String(10), nullable=False)

    # Positive for increase, negative for decrease
    quantity_change = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=False)
    performed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=True, index=True)

    return_type = db.Column(db.String(20), nullable=True)
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "store_id": self.store_id,
            "movement_type": self.movement_type,
            "stock_type": self.stock_type,
            "quantity_change": self.quantity_change,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "reason": self.reason,
            "performed_by": self.performed_by,
            "sale_id": self.sale_id,
            "sale_item_id": self.sale_item_id,
            "return_type": self.return_type,
            "returned_quantity": self.returned_quantity,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockMovement, "before_update")
def _prevent_movement_update(mapper, connection, target):
    raise ImmutableLedgerError(f"Stock movement {target.id} is immutable")


@event.listens_for(StockMovement, "before_delete")
def _prevent_movement_delete(mapper, connection, target):
    raise ImmutableLedgerError(f"Stock movement {target.id} cannot be deleted")
