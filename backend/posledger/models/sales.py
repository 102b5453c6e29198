from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

PAYMENT_CASH = "cash"
PAYMENT_CARD = "card"
PAYMENT_MIXED = "mixed"
PAYMENT_METHODS = (PAYMENT_CASH, PAYMENT_CARD, PAYMENT_MIXED)

SALE_PENDING = "pending"
SALE_COMPLETED = "completed"
SALE_REFUNDED = "refunded"
SALE_CANCELLED = "cancelled"
SALE_STATUSES = (SALE_PENDING, SALE_COMPLETED, SALE_REFUNDED, SALE_CANCELLED)


def _money(value) -> str | None:
    return str(value) if value is not None else None


class Sale(db.Model):
    """
    Sale aggregate.

    LIFECYCLE (payment_status):
    - pending -> completed   (payment confirmed, stock deducted)
    - pending -> cancelled
    - completed -> refunded  (full refund, or every item returned)
    refunded and cancelled are terminal.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("store_id", "receipt_number", name="uq_sales_store_receipt"),
        db.Index("ix_sales_store_status_created", "store_id", "payment_status", "created_at"),
        db.CheckConstraint(
            "subtotal >= 0 AND tax >= 0 AND discount >= 0 AND total >= 0",
            name="ck_sales_money_nonneg",
        ),
        db.CheckConstraint("payment_method IN ('cash', 'card', 'mixed')", name="ck_sales_payment_method"),
        db.CheckConstraint(
            "payment_status IN ('pending', 'completed', 'refunded', 'cancelled')",
            name="ck_sales_payment_status",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False, default=SALE_PENDING, index=True)

    # Human-facing identifier, e.g. "REC-2026-000042"
    receipt_number = db.Column(db.String(32), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("sales", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "user_id": self.user_id,
            "subtotal": _money(self.subtotal),
            "tax": _money(self.tax),
            "discount": _money(self.discount),
            "total": _money(self.total),
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "receipt_number": self.receipt_number,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "refunded_at": to_utc_z(self.refunded_at) if self.refunded_at else None,
            "version_id": self.version_id,
        }


class SaleItem(db.Model):
    """Line item on a sale. Returned quantities are derived from the ledger, never stored here."""
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_pos"),
        db.CheckConstraint("unit_price >= 0", name="ck_sale_items_unit_price_nonneg"),
        db.CheckConstraint("stock_type IN ('deposito', 'venta')", name="ck_sale_items_stock_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Snapshot at sale time
    product_name = db.Column(db.String(255), nullable=False)
    product_sku = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False)

    stock_type = db.Column(db.String(10), nullable=False, default="venta")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship(
        "Sale",
        backref=db.backref("items", lazy=True, order_by="SaleItem.id"),
    )
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "quantity": self.quantity,
            "unit_price": _money(self.unit_price),
            "subtotal": _money(self.subtotal),
            "discount": _money(self.discount),
            "total": _money(self.total),
            "stock_type": self.stock_type,
            "created_at": to_utc_z(self.created_at),
        }


class ReceiptSequence(db.Model):
    """
    Per-store, per-year receipt counter.

    next_number is bumped with a single UPDATE so concurrent sales in the
    same store never draw the same receipt number.
    """
    __tablename__ = "receipt_sequences"
    __table_args__ = (
        db.UniqueConstraint("store_id", "year", name="uq_receipt_sequences_store_year"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
