from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from posledger.errors import InvalidTransitionError, PermissionDeniedError, SaleNotFoundError, ValidationError
from posledger.models import StockMovement
from posledger.services import ledger_service, return_service, sales_service, stock_service


def _sell(store, actor, product, quantity, **kwargs):
    return sales_service.process_sale(
        store_id=store.id,
        items=[{"product_id": product.id, "quantity": quantity}],
        payment_method="cash",
        actor=actor,
        **kwargs,
    )


def _return(store, actor, sale, *entries):
    return return_service.return_items_batch(
        store_id=store.id, sale_id=sale.id, entries=list(entries), actor=actor,
    )


def test_store_day_scenario(make_product, store, owner_actor, employee_actor, stock_of):
    product = make_product(deposito=100, venta=0)

    stock_service.restock(store_id=store.id, product_id=product.id, quantity=30, actor=employee_actor)
    assert stock_of(product) == (70, 30)

    stock_service.update_sales_floor_stock(store_id=store.id, product_id=product.id, target=20, actor=employee_actor)
    assert stock_of(product) == (80, 20)

    sale = _sell(store, employee_actor, product, 5)
    assert stock_of(product) == (80, 15)
    item_id = sale.items[0].id

    result = _return(store, employee_actor, sale,
                     {"sale_item_id": item_id, "product_id": product.id, "stock_type": "venta",
                      "quantity": 2, "return_type": "customer_mistake"})
    assert result["succeeded"] == 1
    assert stock_of(product) == (80, 17)
    assert result["items"][0]["returnable_remaining"] == 3
    assert result["payment_status"] == "completed"

    result = _return(store, employee_actor, sale,
                     {"sale_item_id": item_id, "quantity": 3, "return_type": "defective"})
    assert result["succeeded"] == 1
    assert stock_of(product) == (80, 17)
    assert result["items"][0]["returnable_remaining"] == 0
    assert result["fully_returned"] is True
    assert sales_service.get_sale(store.id, sale.id).payment_status == "refunded"

    assert ledger_service.verify_product_ledger(product.id)["ok"] is True


def test_over_return_is_rejected(make_product, store, employee_actor, stock_of):
    product = make_product(venta=10)
    sale = _sell(store, employee_actor, product, 5)
    item_id = sale.items[0].id
    _return(store, employee_actor, sale, {"sale_item_id": item_id, "quantity": 3, "return_type": "customer_mistake"})

    result = _return(store, employee_actor, sale,
                     {"sale_item_id": item_id, "quantity": 3, "return_type": "customer_mistake"})
    assert result["failed"] == 1
    error = result["results"][0]["error"]
    assert error["error"] == "over_return"
    assert error["details"] == {"sale_item_id": item_id, "requested": 3, "remaining": 2}
    assert stock_of(product) == (0, 8)

    result = _return(store, employee_actor, sale,
                     {"sale_item_id": item_id, "quantity": 2, "return_type": "customer_mistake"})
    assert result["succeeded"] == 1
    assert result["items"][0]["returnable_remaining"] == 0
    assert stock_of(product) == (0, 10)


def test_entries_succeed_or_fail_independently(make_product, store, employee_actor, stock_of, db_session):
    shirt = make_product(venta=10)
    mug = make_product(venta=10)
    sale = sales_service.process_sale(
        store_id=store.id,
        items=[{"product_id": shirt.id, "quantity": 2}, {"product_id": mug.id, "quantity": 1}],
        payment_method="card",
        actor=employee_actor,
    )
    shirt_item, mug_item = sale.items

    result = _return(
        store, employee_actor, sale,
        {"sale_item_id": shirt_item.id, "quantity": 1, "return_type": "customer_mistake"},
        {"sale_item_id": mug_item.id, "quantity": 5, "return_type": "customer_mistake"},
        {"sale_item_id": mug_item.id, "quantity": 1, "return_type": "lost_in_mail"},
        {"sale_item_id": 987654, "quantity": 1, "return_type": "defective"},
        {"sale_item_id": mug_item.id, "product_id": shirt.id, "quantity": 1, "return_type": "defective"},
        {"sale_item_id": mug_item.id, "quantity": 1, "return_type": "defective"},
    )

    outcomes = [(r["index"], r["success"], r.get("error", {}).get("error")) for r in result["results"]]
    assert outcomes == [
        (0, True, None),
        (1, False, "over_return"),
        (2, False, "invalid_return_type"),
        (3, False, "sale_item_not_found"),
        (4, False, "validation_error"),
        (5, True, None),
    ]
    assert stock_of(shirt) == (0, 9)
    assert stock_of(mug) == (0, 9)
    assert result["payment_status"] == "completed"
    returns = db_session.query(StockMovement).filter_by(sale_id=sale.id, movement_type="return").count()
    assert returns == 2


def test_lock_conflict_is_reported_on_its_entry(make_product, store, employee_actor, stock_of, app, monkeypatch):
    product = make_product(venta=10)
    sale = _sell(store, employee_actor, product, 4)
    item_id = sale.items[0].id

    real_return_one = return_service._return_one

    def locked_for_two(store_id, sale_id, entry, actor):
        if entry["quantity"] == 2:
            raise OperationalError("UPDATE sales", {}, Exception("database is locked"))
        return real_return_one(store_id, sale_id, entry, actor)

    monkeypatch.setitem(app.config, "TRANSACTION_RETRY_ATTEMPTS", 1)
    monkeypatch.setattr(return_service, "_return_one", locked_for_two)

    result = _return(store, employee_actor, sale,
                     {"sale_item_id": item_id, "quantity": 1, "return_type": "customer_mistake"},
                     {"sale_item_id": item_id, "quantity": 2, "return_type": "customer_mistake"},
                     {"sale_item_id": item_id, "quantity": 1, "return_type": "defective"})

    assert [r["success"] for r in result["results"]] == [True, False, True]
    assert result["results"][1]["error"]["error"] == "concurrency_conflict"
    assert result["results"][1]["sale_item_id"] == item_id
    assert result["items"][0]["returnable_remaining"] == 2
    assert stock_of(product) == (0, 7)


def test_defective_row_keeps_balance_but_counts(make_product, store, employee_actor, db_session):
    product = make_product(venta=4)
    sale = _sell(store, employee_actor, product, 4)
    item_id = sale.items[0].id

    result = _return(store, employee_actor, sale, {"sale_item_id": item_id, "quantity": 1, "return_type": "defective"})

    movement = db_session.get(StockMovement, result["results"][0]["movement_id"])
    assert movement.quantity_change == 0
    assert movement.quantity_before == movement.quantity_after == 0
    assert movement.returned_quantity == 1
    assert movement.reason == "Return: defective"
    assert ledger_service.returned_quantity_for_item(item_id) == 1


def test_summary_is_stable_between_reads(make_product, store, employee_actor):
    product = make_product(venta=10)
    sale = _sell(store, employee_actor, product, 3)
    _return(store, employee_actor, sale,
            {"sale_item_id": sale.items[0].id, "quantity": 1, "return_type": "customer_mistake"})

    first = return_service.get_returns_summary(store_id=store.id, sale_id=sale.id)
    second = return_service.get_returns_summary(store_id=store.id, sale_id=sale.id)

    assert first == second
    assert first["items"][0]["returned_so_far"] == 1
    assert first["items"][0]["returnable_remaining"] == 2


def test_batch_requires_completed_sale(make_product, store, employee_actor):
    product = make_product(venta=10)
    pending = _sell(store, employee_actor, product, 2, require_payment_confirmation=True)

    with pytest.raises(InvalidTransitionError):
        _return(store, employee_actor, pending,
                {"sale_item_id": pending.items[0].id, "quantity": 1, "return_type": "defective"})


def test_batch_rejects_missing_sale_and_empty_entries(make_product, store, employee_actor):
    product = make_product(venta=10)
    sale = _sell(store, employee_actor, product, 2)

    with pytest.raises(SaleNotFoundError):
        return_service.return_items_batch(
            store_id=store.id, sale_id=sale.id + 100,
            entries=[{"sale_item_id": 1, "quantity": 1, "return_type": "defective"}],
            actor=employee_actor,
        )
    with pytest.raises(ValidationError):
        return_service.return_items_batch(store_id=store.id, sale_id=sale.id, entries=[], actor=employee_actor)


def test_returns_after_full_refund_are_rejected(make_product, store, employee_actor):
    product = make_product(venta=10)
    sale = _sell(store, employee_actor, product, 2)
    sales_service.refund_sale(store_id=store.id, sale_id=sale.id, actor=employee_actor)

    with pytest.raises(InvalidTransitionError):
        _return(store, employee_actor, sale,
                {"sale_item_id": sale.items[0].id, "quantity": 1, "return_type": "customer_mistake"})


def test_returned_products_report(make_product, store, owner_actor, employee_actor):
    blender = make_product(venta=10, price="80.00", cost="45.50")
    kettle = make_product(venta=10, price="30.00", cost="12.00")
    sale = sales_service.process_sale(
        store_id=store.id,
        items=[{"product_id": blender.id, "quantity": 4}, {"product_id": kettle.id, "quantity": 3}],
        payment_method="cash",
        actor=employee_actor,
    )
    blender_item, kettle_item = sale.items
    _return(
        store, employee_actor, sale,
        {"sale_item_id": blender_item.id, "quantity": 2, "return_type": "defective"},
        {"sale_item_id": blender_item.id, "quantity": 1, "return_type": "customer_mistake"},
        {"sale_item_id": kettle_item.id, "quantity": 3, "return_type": "defective"},
    )

    report = {r["product_id"]: r for r in return_service.get_returned_products(store_id=store.id, actor=owner_actor)}
    assert report[blender.id]["defective_quantity"] == 2
    assert report[blender.id]["customer_mistake_quantity"] == 1
    assert report[blender.id]["total_returned"] == 3
    assert Decimal(report[blender.id]["loss"]) == Decimal("91.00")
    assert Decimal(report[kettle.id]["loss"]) == Decimal("36.00")

    per_sale = return_service.get_returned_products(store_id=store.id, sale_id=sale.id, actor=owner_actor)
    assert len(per_sale) == 2

    defective = return_service.get_defective_products(store_id=store.id, actor=owner_actor)
    assert [d["product_id"] for d in defective] == [kettle.id, blender.id]
    assert defective[0]["defective_quantity"] == 3
    assert defective[0]["last_returned_at"] is not None

    with pytest.raises(PermissionDeniedError):
        return_service.get_defective_products(store_id=store.id, actor=employee_actor)
