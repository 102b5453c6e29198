import re
from decimal import Decimal

import pytest

from posledger.errors import (
    InsufficientStockError,
    InvalidTransitionError,
    PermissionDeniedError,
    ProductNotFoundError,
    SaleNotFoundError,
    ValidationError,
)
from posledger.models import ReceiptSequence, Sale, StockMovement
from posledger.services import products_service, receipt_service, return_service, sales_service
from posledger.services.concurrency import run_in_transaction


def _sell(store, actor, product, quantity, **kwargs):
    return sales_service.process_sale(
        store_id=store.id,
        items=[{"product_id": product.id, "quantity": quantity}],
        payment_method=kwargs.pop("payment_method", "cash"),
        actor=actor,
        **kwargs,
    )


class TestProcessSale:
    def test_completed_sale_deducts_sales_floor(self, make_product, store, employee_actor, stock_of, db_session):
        product = make_product(deposito=80, venta=20, price="10.00")

        sale = _sell(store, employee_actor, product, 3)

        assert sale.payment_status == "completed"
        assert sale.completed_at is not None
        assert sale.user_id == employee_actor.user_id
        assert sale.subtotal == Decimal("30.00")
        assert sale.tax == Decimal("4.80")
        assert sale.total == Decimal("34.80")
        assert stock_of(product) == (80, 17)

        rows = db_session.query(StockMovement).filter_by(sale_id=sale.id).all()
        assert len(rows) == 1
        assert rows[0].movement_type == "sale"
        assert rows[0].quantity_change == -3
        assert rows[0].sale_item_id == sale.items[0].id

    def test_receipt_numbers_are_sequential(self, make_product, store, employee_actor):
        product = make_product(venta=10)

        first = _sell(store, employee_actor, product, 1)
        second = _sell(store, employee_actor, product, 1)

        assert re.fullmatch(r"REC-\d{4}-000001", first.receipt_number)
        assert re.fullmatch(r"REC-\d{4}-000002", second.receipt_number)

    def test_receipt_counter_created_by_another_transaction(self, store, db_session, monkeypatch):
        first = run_in_transaction(lambda: receipt_service.next_receipt_number(store_id=store.id, year=2026))

        real_bump = receipt_service._bump_sequence
        calls = []

        def stale_first_read(store_id, year):
            calls.append(year)
            if len(calls) == 1:
                # Misses the row, as a transaction that began before its insert committed would.
                return real_bump(store_id, year + 1)
            return real_bump(store_id, year)

        monkeypatch.setattr(receipt_service, "_bump_sequence", stale_first_read)
        second = run_in_transaction(lambda: receipt_service.next_receipt_number(store_id=store.id, year=2026))

        assert (first, second) == ("REC-2026-000001", "REC-2026-000002")
        assert len(calls) == 2
        sequences = db_session.query(ReceiptSequence).filter_by(store_id=store.id).all()
        assert [(s.year, s.next_number) for s in sequences] == [(2026, 3)]

    def test_line_and_sale_discounts(self, make_product, store, employee_actor):
        coffee = make_product(venta=10, price="12.50", cost="8.00")
        tea = make_product(venta=10, price="6.90", cost="3.10")

        sale = sales_service.process_sale(
            store_id=store.id,
            items=[
                {"product_id": coffee.id, "quantity": 2, "discount": "5.00"},
                {"product_id": tea.id, "quantity": 1, "unit_price": "6.00"},
            ],
            payment_method="card",
            discount="1.00",
            notes="Loyalty customer",
            actor=employee_actor,
        )

        # (25.00 - 5.00) + 6.00 = 26.00; tax 16% = 4.16
        assert sale.subtotal == Decimal("26.00")
        assert sale.tax == Decimal("4.16")
        assert sale.discount == Decimal("1.00")
        assert sale.total == Decimal("29.16")
        coffee_line, tea_line = sale.items
        assert coffee_line.total == Decimal("20.00")
        assert coffee_line.product_sku == coffee.sku
        assert tea_line.unit_price == Decimal("6.00")
        assert sale.notes == "Loyalty customer"

    def test_tax_rounds_to_cents(self, make_product, store, employee_actor):
        product = make_product(venta=5, price="0.03", cost="0.01")

        sale = _sell(store, employee_actor, product, 1)

        # 0.03 * 16% = 0.0048 -> 0.00
        assert sale.tax == Decimal("0.00")
        # 0.06 * 16% = 0.0096 -> 0.01
        second = _sell(store, employee_actor, product, 2, payment_method="mixed")
        assert second.tax == Decimal("0.01")

    def test_insufficient_stock_creates_nothing(self, make_product, store, employee_actor, stock_of, db_session):
        product = make_product(deposito=100, venta=2)

        with pytest.raises(InsufficientStockError) as exc:
            _sell(store, employee_actor, product, 3)

        assert exc.value.available == 2
        assert exc.value.required == 3
        assert db_session.query(Sale).count() == 0
        assert stock_of(product) == (100, 2)

    def test_duplicate_lines_are_checked_together(self, make_product, store, employee_actor):
        product = make_product(venta=5)

        with pytest.raises(InsufficientStockError) as exc:
            sales_service.process_sale(
                store_id=store.id,
                items=[
                    {"product_id": product.id, "quantity": 3},
                    {"product_id": product.id, "quantity": 3},
                ],
                payment_method="cash",
                actor=employee_actor,
            )
        assert exc.value.required == 6

    def test_inactive_product_cannot_be_sold(self, make_product, store, owner_actor, employee_actor):
        product = make_product(venta=5)
        products_service.deactivate_product(store_id=store.id, product_id=product.id, actor=owner_actor)

        with pytest.raises(ValidationError):
            _sell(store, employee_actor, product, 1)

    def test_unknown_product(self, store, employee_actor, db_session):
        with pytest.raises(ProductNotFoundError):
            sales_service.process_sale(
                store_id=store.id,
                items=[{"product_id": 999, "quantity": 1}],
                payment_method="cash",
                actor=employee_actor,
            )

    @pytest.mark.parametrize("items,payment_method", [
        ([], "cash"),
        ([{"product_id": 1, "quantity": 0}], "cash"),
        ([{"product_id": 1, "quantity": 1}], "cheque"),
        ([{"product_id": 1, "quantity": 1, "stock_type": "attic"}], "cash"),
        ([{"quantity": 1}], "cash"),
    ])
    def test_rejects_bad_input(self, store, employee_actor, items, payment_method):
        with pytest.raises(ValidationError):
            sales_service.process_sale(
                store_id=store.id, items=items, payment_method=payment_method, actor=employee_actor,
            )

    def test_line_discount_cannot_exceed_line(self, make_product, store, employee_actor):
        product = make_product(venta=5, price="10.00")

        with pytest.raises(ValidationError):
            sales_service.process_sale(
                store_id=store.id,
                items=[{"product_id": product.id, "quantity": 1, "discount": "10.01"}],
                payment_method="cash",
                actor=employee_actor,
            )

    def test_total_cannot_go_negative(self, make_product, store, employee_actor):
        product = make_product(venta=5, price="10.00")

        with pytest.raises(ValidationError):
            _sell(store, employee_actor, product, 1, discount="11.61")


class TestPendingSales:
    def test_pending_sale_holds_no_stock(self, make_product, store, employee_actor, stock_of, db_session):
        product = make_product(venta=10)

        sale = _sell(store, employee_actor, product, 4, require_payment_confirmation=True)

        assert sale.payment_status == "pending"
        assert stock_of(product) == (0, 10)
        assert db_session.query(StockMovement).filter_by(sale_id=sale.id).count() == 0

    def test_confirm_deducts_and_completes(self, make_product, store, employee_actor, stock_of):
        product = make_product(venta=10)
        sale = _sell(store, employee_actor, product, 4, require_payment_confirmation=True)

        confirmed = sales_service.confirm_pending_sale(store_id=store.id, sale_id=sale.id, actor=employee_actor)

        assert confirmed.payment_status == "completed"
        assert stock_of(product) == (0, 6)

        with pytest.raises(InvalidTransitionError):
            sales_service.confirm_pending_sale(store_id=store.id, sale_id=sale.id, actor=employee_actor)
        assert stock_of(product) == (0, 6)

    def test_confirm_fails_whole_when_stock_was_consumed(
        self, make_product, store, employee_actor, stock_of, db_session,
    ):
        plenty = make_product(venta=10)
        scarce = make_product(venta=3)
        pending = sales_service.process_sale(
            store_id=store.id,
            items=[
                {"product_id": plenty.id, "quantity": 2},
                {"product_id": scarce.id, "quantity": 3},
            ],
            payment_method="card",
            require_payment_confirmation=True,
            actor=employee_actor,
        )
        _sell(store, employee_actor, scarce, 2)

        with pytest.raises(InsufficientStockError):
            sales_service.confirm_pending_sale(store_id=store.id, sale_id=pending.id, actor=employee_actor)

        assert sales_service.get_sale(store.id, pending.id).payment_status == "pending"
        assert stock_of(plenty) == (0, 10)
        assert stock_of(scarce) == (0, 1)
        assert db_session.query(StockMovement).filter_by(sale_id=pending.id).count() == 0

    def test_cancel_pending(self, make_product, store, employee_actor, stock_of):
        product = make_product(venta=10)
        sale = _sell(store, employee_actor, product, 4, require_payment_confirmation=True)

        cancelled = sales_service.cancel_pending_sale(store_id=store.id, sale_id=sale.id, actor=employee_actor)

        assert cancelled.payment_status == "cancelled"
        assert cancelled.cancelled_at is not None
        assert stock_of(product) == (0, 10)
        with pytest.raises(InvalidTransitionError):
            sales_service.confirm_pending_sale(store_id=store.id, sale_id=sale.id, actor=employee_actor)

    def test_cannot_cancel_completed(self, make_product, store, employee_actor):
        product = make_product(venta=10)
        sale = _sell(store, employee_actor, product, 1)

        with pytest.raises(InvalidTransitionError) as exc:
            sales_service.cancel_pending_sale(store_id=store.id, sale_id=sale.id, actor=employee_actor)
        assert exc.value.current == "completed"
        assert exc.value.target == "cancelled"


class TestRefund:
    def test_full_refund_restores_everything(self, make_product, store, employee_actor, stock_of, db_session):
        product = make_product(deposito=5, venta=10)
        sale = _sell(store, employee_actor, product, 4)

        refunded = sales_service.refund_sale(store_id=store.id, sale_id=sale.id, actor=employee_actor)

        assert refunded.payment_status == "refunded"
        assert refunded.refunded_at is not None
        assert stock_of(product) == (5, 10)
        rows = db_session.query(StockMovement).filter_by(sale_id=sale.id, movement_type="return").all()
        assert [(r.quantity_change, r.return_type, r.returned_quantity) for r in rows] == [
            (4, "customer_mistake", 4),
        ]

    def test_refund_after_partial_return_restores_remainder(self, make_product, store, employee_actor, stock_of):
        product = make_product(venta=10)
        sale = _sell(store, employee_actor, product, 5)
        item_id = sale.items[0].id
        return_service.return_items_batch(
            store_id=store.id,
            sale_id=sale.id,
            entries=[{"sale_item_id": item_id, "quantity": 2, "return_type": "defective"}],
            actor=employee_actor,
        )

        sales_service.refund_sale(store_id=store.id, sale_id=sale.id, actor=employee_actor)

        # 2 defective units stay written off, the other 3 come back
        assert stock_of(product) == (0, 8)
        summary = return_service.get_returns_summary(store_id=store.id, sale_id=sale.id)
        assert summary["items"][0]["returnable_remaining"] == 0

    def test_refund_requires_completed(self, make_product, store, employee_actor):
        product = make_product(venta=10)
        pending = _sell(store, employee_actor, product, 1, require_payment_confirmation=True)

        with pytest.raises(InvalidTransitionError):
            sales_service.refund_sale(store_id=store.id, sale_id=pending.id, actor=employee_actor)

        done = _sell(store, employee_actor, product, 1)
        sales_service.refund_sale(store_id=store.id, sale_id=done.id, actor=employee_actor)
        with pytest.raises(InvalidTransitionError):
            sales_service.refund_sale(store_id=store.id, sale_id=done.id, actor=employee_actor)


class TestLookups:
    def test_get_and_find(self, make_product, store, employee_actor):
        product = make_product(venta=10)
        sale = _sell(store, employee_actor, product, 1)

        assert sales_service.get_sale(store.id, sale.id).id == sale.id
        assert sales_service.find_sale_by_receipt(store.id, sale.receipt_number).id == sale.id
        with pytest.raises(SaleNotFoundError):
            sales_service.get_sale(store.id + 1, sale.id)
        with pytest.raises(SaleNotFoundError):
            sales_service.find_sale_by_receipt(store.id, "REC-1999-000001")

    def test_list_sales_filters_and_paginates(self, make_product, store, employee_actor):
        product = make_product(venta=50)
        for _ in range(3):
            _sell(store, employee_actor, product, 1)
        _sell(store, employee_actor, product, 1, payment_method="card")
        _sell(store, employee_actor, product, 1, require_payment_confirmation=True)

        everything = sales_service.list_sales(store.id, limit=2)
        assert everything["pagination"]["total"] == 5
        assert everything["pagination"]["total_pages"] == 3
        assert everything["count"] == 2
        assert everything["pagination"]["has_next"] is True

        cash_completed = sales_service.list_sales(store.id, status="completed", payment_method="cash")
        assert cash_completed["pagination"]["total"] == 3
        assert all(s["items"] for s in cash_completed["items"])

        pending = sales_service.list_sales(store.id, status="pending")
        assert pending["pagination"]["total"] == 1

        with pytest.raises(ValidationError):
            sales_service.list_sales(store.id, status="lost")
        with pytest.raises(ValidationError):
            sales_service.list_sales(store.id, start="yesterday")


def test_actor_is_required(make_product, store):
    product = make_product(venta=3)
    with pytest.raises(PermissionDeniedError):
        sales_service.process_sale(
            store_id=store.id,
            items=[{"product_id": product.id, "quantity": 1}],
            payment_method="cash",
            actor=None,
        )


class TestSalesStats:
    def test_counts_completed_and_refunded_sales(self, make_product, store, owner_actor, employee_actor):
        product = make_product(venta=20, price="10.00")
        _sell(store, employee_actor, product, 1)
        _sell(store, employee_actor, product, 3)
        refunded = _sell(store, employee_actor, product, 2)
        sales_service.refund_sale(store_id=store.id, sale_id=refunded.id, actor=employee_actor)
        _sell(store, employee_actor, product, 1, require_payment_confirmation=True)

        stats = sales_service.get_sales_stats(store_id=store.id, actor=owner_actor)

        assert stats == {
            "store_id": store.id,
            "total_sales": 2,
            "revenue": "46.40",
            "average_ticket": "23.20",
            "refunded_sales": 1,
            "refunded_amount": "23.20",
        }

    def test_empty_store_and_window(self, store, owner_actor):
        stats = sales_service.get_sales_stats(store_id=store.id, actor=owner_actor, start="2020-01-01T00:00Z")

        assert (stats["total_sales"], stats["revenue"], stats["average_ticket"]) == (0, "0.00", "0.00")
        with pytest.raises(ValidationError):
            sales_service.get_sales_stats(store_id=store.id, actor=owner_actor, end="last week")

    def test_requires_report_capability(self, store, employee_actor):
        with pytest.raises(PermissionDeniedError):
            sales_service.get_sales_stats(store_id=store.id, actor=employee_actor)
