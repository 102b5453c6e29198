# Overview: Flask CLI command groups for bootstrap, inspection, and ledger audits.

# backend/posledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to posledger (PowerShell: $env:FLASK_APP="posledger").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migrated databases).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a demo store, an owner, an employee and a few stocked products.
#
# Stores and users:
# - python -m flask stores create --name "Main Store" --tax-rate 16
# - python -m flask stores list
# - python -m flask users create --store-id 1 --username maria --role owner
# - python -m flask users list --store-id 1
#
# Stock inspection:
# - python -m flask stock audit --store-id 1
#   Replay the ledger and report products whose balances drifted.
# - python -m flask stock low --store-id 1 --username maria
#   Low-stock alerts for both pools.
# - python -m flask stock movements --store-id 1 [--product-id 3] [--limit 20]
#   Recent ledger rows, newest first.

import click
from flask.cli import with_appcontext

from .errors import StockError
from .extensions import db
from .models import Store, User
from .permissions import Actor, StoreRole
from .services import ledger_service, products_service, stock_service, store_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the stock ledger.
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """
    Idempotent demo data: store "Demo Store" (16% tax), users demo_owner and
    demo_employee, and three products with opening stock in both pools.
    """
    db.create_all()
    try:
        store = db.session.query(Store).filter_by(name="Demo Store").first()
        if store is None:
            store = store_service.create_store("Demo Store", code="DEMO", tax_rate=16)
            click.echo(f"PASS Created store: {store.name} (ID: {store.id})")
        else:
            click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")

        owner = store_service.get_user_by_username("demo_owner")
        if owner is None:
            owner = store_service.create_user(store_id=store.id, username="demo_owner", role=StoreRole.OWNER)
        if store_service.get_user_by_username("demo_employee") is None:
            store_service.create_user(store_id=store.id, username="demo_employee", role=StoreRole.EMPLOYEE)
        click.echo("PASS Users: demo_owner (owner), demo_employee (employee)")

        actor = Actor.for_user(owner)
        catalog = [
            ("DEMO-001", "Coffee 500g", "12.50", "8.00", 100, 20),
            ("DEMO-002", "Green Tea 20ct", "6.90", "3.10", 60, 12),
            ("DEMO-003", "Ceramic Mug", "9.99", "4.25", 8, 3),
        ]
        for sku, name, price, cost, deposito, venta in catalog:
            existing = [p for p in products_service.list_products(store.id, include_inactive=True) if p.sku == sku]
            if existing:
                continue
            products_service.create_product(
                store_id=store.id,
                sku=sku,
                name=name,
                price=price,
                cost=cost,
                stock_deposito=deposito,
                stock_venta=venta,
                actor=actor,
            )
            click.echo(f"PASS Product {sku}: deposito={deposito}, venta={venta}")
    except StockError as e:
        click.echo(f"FAIL Seeding failed: {e.message}")
        return

    click.echo("PASS Demo data ready.")


@click.group('stores')
def stores_group():
    """Store bootstrap commands."""


@stores_group.command('create')
@click.option('--name', prompt=True, help='Store name')
@click.option('--code', default=None, help='Short store code')
@click.option('--tax-rate', default='0', help='Tax rate percentage, e.g. 16 for 16%')
@with_appcontext
def create_store_cli(name, code, tax_rate):
    try:
        store = store_service.create_store(name, code=code, tax_rate=tax_rate)
    except StockError as e:
        click.echo(f"FAIL Failed to create store: {e.message}")
        return
    click.echo(f"PASS Created store: {store.name} (ID: {store.id}, tax {store.tax_rate}%)")


@stores_group.command('list')
@with_appcontext
def list_stores_cli():
    stores = db.session.query(Store).order_by(Store.id.asc()).all()
    if not stores:
        click.echo("No stores found.")
        return
    for store in stores:
        status = "active" if store.is_active else "inactive"
        click.echo(f"{store.id:>4}  {store.name:<30} tax={store.tax_rate}%  {status}")


@click.group('users')
def users_group():
    """User bootstrap commands."""


@users_group.command('create')
@click.option('--store-id', type=int, required=True, help='Store the user works in')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', default=None, help='Email address')
@click.option('--role', type=click.Choice([r.value for r in StoreRole]), prompt=True, help='Role')
@with_appcontext
def create_user_cli(store_id, username, email, role):
    try:
        user = store_service.create_user(store_id=store_id, username=username, email=email, role=role)
    except StockError as e:
        click.echo(f"FAIL Failed to create user: {e.message}")
        return
    click.echo(f"PASS Created user: {user.username} with role '{user.role}' in store {user.store_id}")


@users_group.command('list')
@click.option('--store-id', type=int, default=None, help='Filter by store')
@with_appcontext
def list_users_cli(store_id):
    query = db.session.query(User)
    if store_id is not None:
        query = query.filter_by(store_id=store_id)
    users = query.order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>4}  {user.username:<20} {user.role:<9} store={user.store_id}  {status}")


@click.group('stock')
def stock_group():
    """Stock ledger inspection commands."""


@stock_group.command('audit')
@click.option('--store-id', type=int, required=True)
@with_appcontext
def audit_stock_cli(store_id):
    """Replay every product's ledger and compare it with stored balances."""
    report = ledger_service.verify_store_ledger(store_id)
    click.echo(f"Checked {report['products_checked']} products in store {store_id}")
    if report["ok"]:
        click.echo("PASS Ledger and balances agree.")
        return

    for item in report["discrepancies"]:
        click.echo(
            f"FAIL product {item['product_id']} ({item['sku']}): "
            f"stored {item['stored']} replayed {item['replayed']} "
            f"legacy_stock_ok={item['legacy_stock_ok']} chain_breaks={len(item['chain_breaks'])}"
        )
    click.get_current_context().exit(1)


@stock_group.command('low')
@click.option('--store-id', type=int, required=True)
@click.option('--username', required=True, help='User the report is run as')
@with_appcontext
def low_stock_cli(store_id, username):
    user = store_service.get_user_by_username(username)
    if user is None:
        click.echo(f"FAIL User {username!r} not found")
        return
    try:
        alerts = stock_service.get_low_stock_alerts(store_id=store_id, actor=Actor.for_user(user))
    except StockError as e:
        click.echo(f"FAIL {e.message}")
        return

    if not alerts:
        click.echo("PASS No products below threshold.")
        return
    for alert in alerts:
        click.echo(
            f"{alert['sku']:<12} {alert['name']:<30} "
            f"deposito={alert['stock_deposito']}/{alert['min_stock_deposito']} "
            f"venta={alert['stock_venta']}/{alert['min_stock_venta']} low={','.join(alert['low'])}"
        )


@stock_group.command('movements')
@click.option('--store-id', type=int, required=True)
@click.option('--product-id', type=int, default=None)
@click.option('--limit', type=int, default=None)
@with_appcontext
def movements_cli(store_id, product_id, limit):
    try:
        movements = ledger_service.list_stock_movements(store_id, product_id=product_id, limit=limit)
    except StockError as e:
        click.echo(f"FAIL {e.message}")
        return
    for m in movements:
        click.echo(
            f"{m.id:>6}  product={m.product_id:<5} {m.movement_type:<10} {m.stock_type:<8} "
            f"{m.quantity_change:+d} ({m.quantity_before}->{m.quantity_after})  {m.reason}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stores_group)
    app.cli.add_command(users_group)
    app.cli.add_command(stock_group)
