from posledger.models import Product, Store, User
from posledger.services import ledger_service


def test_seed_demo_is_idempotent_and_audits_clean(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["system", "seed-demo"])
    second = runner.invoke(args=["system", "seed-demo"])

    assert first.exit_code == 0, first.output
    assert "PASS Demo data ready." in second.output
    assert db_session.query(Store).filter_by(name="Demo Store").count() == 1
    assert db_session.query(User).count() == 2
    assert db_session.query(Product).count() == 3

    store = db_session.query(Store).filter_by(name="Demo Store").one()
    assert ledger_service.verify_store_ledger(store.id)["ok"] is True

    audit = runner.invoke(args=["stock", "audit", "--store-id", str(store.id)])
    assert audit.exit_code == 0
    assert "PASS Ledger and balances agree." in audit.output

    low = runner.invoke(args=["stock", "low", "--store-id", str(store.id), "--username", "demo_employee"])
    assert "DEMO-003" in low.output

    history = runner.invoke(args=["stock", "movements", "--store-id", str(store.id), "--limit", "2"])
    assert history.exit_code == 0
    assert len(history.output.strip().splitlines()) == 2


def test_users_create_reports_validation_errors(app, db_session):
    runner = app.test_cli_runner()
    runner.invoke(args=["stores", "create", "--name", "CLI Store", "--tax-rate", "8"])
    store = db_session.query(Store).filter_by(name="CLI Store").one()

    ok = runner.invoke(args=["users", "create", "--store-id", str(store.id), "--username", "lee", "--role", "owner"])
    dup = runner.invoke(args=["users", "create", "--store-id", str(store.id), "--username", "lee", "--role", "owner"])

    assert "PASS Created user: lee" in ok.output
    assert "FAIL Failed to create user" in dup.output
