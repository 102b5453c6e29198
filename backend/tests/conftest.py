"""
Pytest fixtures for posledger tests.

Provides the in-memory test database, a store with an owner and an employee,
and a factory for products with opening stock.
"""

import pytest

from posledger import create_app
from posledger.extensions import db
from posledger.permissions import Actor, StoreRole
from posledger.services import products_service, store_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RECEIPT_PREFIX': 'REC',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    """Store with a 16% tax rate."""
    return store_service.create_store("Main Store", code="MAIN", tax_rate="16.00")


@pytest.fixture(scope='function')
def owner(db_session, store):
    return store_service.create_user(store_id=store.id, username="owner", role=StoreRole.OWNER)


@pytest.fixture(scope='function')
def employee(db_session, store):
    return store_service.create_user(store_id=store.id, username="clerk", role=StoreRole.EMPLOYEE)


@pytest.fixture(scope='function')
def owner_actor(owner):
    return Actor.for_user(owner)


@pytest.fixture(scope='function')
def employee_actor(employee):
    return Actor.for_user(employee)


@pytest.fixture(scope='function')
def make_product(store, owner_actor):
    """Factory: make_product(deposito=100, venta=0, price="10.00", cost="6.00", sku=None)."""
    counter = {"n": 0}

    def _make(deposito=0, venta=0, price="10.00", cost="6.00", sku=None, **kwargs):
        counter["n"] += 1
        return products_service.create_product(
            store_id=store.id,
            sku=sku or f"SKU-{counter['n']:03d}",
            name=kwargs.pop("name", f"Product {counter['n']}"),
            price=price,
            cost=cost,
            stock_deposito=deposito,
            stock_venta=venta,
            actor=owner_actor,
            **kwargs,
        )

    return _make


@pytest.fixture(scope='function')
def stock_of(db_session):
    """stock_of(product) -> (deposito, venta), read fresh from the database."""
    def _read(product):
        db_session.refresh(product)
        return product.stock_deposito, product.stock_venta

    return _read
