from __future__ import annotations

from ..errors import StoreNotFoundError, ValidationError
from ..extensions import db
from ..models import Store, User
from ..permissions import coerce_role
from ..validation import parse_percentage, require_text
from .concurrency import lock_for_update, run_in_transaction


def create_store(name: str, code: str | None = None, tax_rate=0) -> Store:
    name = require_text(name, "name", max_length=120)
    tax_rate = parse_percentage(tax_rate, "tax_rate")

    def _op():
        if db.session.query(Store.id).filter_by(name=name).first() is not None:
            raise ValidationError(f"Store {name!r} already exists", {"name": name})

        store = Store(name=name, code=code, tax_rate=tax_rate, is_active=True)
        db.session.add(store)
        db.session.flush()
        return store

    return run_in_transaction(_op)


def update_tax_rate(store_id: int, tax_rate) -> Store:
    """New rate applies to sales created afterwards; existing sales keep their tax."""
    tax_rate = parse_percentage(tax_rate, "tax_rate")

    def _op():
        store = lock_for_update(db.session.query(Store).filter_by(id=store_id)).first()
        if not store:
            raise StoreNotFoundError(store_id)
        store.tax_rate = tax_rate
        db.session.flush()
        return store

    return run_in_transaction(_op)


def create_user(*, store_id: int, username: str, role, email: str | None = None) -> User:
    username = require_text(username, "username", max_length=64)
    role = coerce_role(role)

    def _op():
        if db.session.get(Store, store_id) is None:
            raise StoreNotFoundError(store_id)
        if db.session.query(User.id).filter_by(username=username).first() is not None:
            raise ValidationError(f"Username {username!r} is taken", {"username": username})

        user = User(store_id=store_id, username=username, email=email, role=role.value, is_active=True)
        db.session.add(user)
        db.session.flush()
        return user

    return run_in_transaction(_op)


def get_user_by_username(username: str) -> User | None:
    return db.session.query(User).filter_by(username=username).first()
