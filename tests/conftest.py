import os, time

import pytest

os.environ.setdefault("SECRET_KEY", "test-secret")

from app import app as flask_app  # noqa: E402
from ledger import LedgerStore  # noqa: E402


@pytest.fixture
def store(tmp_path):
    return LedgerStore(str(tmp_path / "db.json"))


@pytest.fixture
def app(store):
    flask_app.config.update(TESTING=True, LEDGER=store,
                            MAX_SESSION_SECONDS=86400.0, REJECT_EXTREME_OVERAGE=False)
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def set_row(store, account_id, **fields):
    """Poke ledger fields directly (test setup only)."""
    with store.lock:
        db = store.load()
        db["users"][account_id].update(fields)
        store.save(db)


def away(store, account_id, seconds, **fields):
    set_row(store, account_id, last_update=time.time() - seconds, **fields)


@pytest.fixture
def player(client, store):
    r = client.post("/register", json={"username": "bunny", "password": "carrot123"})
    assert r.status_code == 200
    return "bunny"
