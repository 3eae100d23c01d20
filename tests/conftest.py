"""Pytest configuration and shared fixtures for all tests."""

import os

# minimal environment before cbots.core.config builds its settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test_secret_key_for_testing_only")
os.environ.setdefault("AUTH_MODE", "password")
os.environ.setdefault("NOTIFY_DATABASE", "true")
os.environ.setdefault("DEFAULT_LANGUAGE", "en")
os.environ.setdefault("ADMIN_USER_IDS", "admin-uid")

import pytest
from sqlalchemy.pool import StaticPool

from cbots import crud, database, lifecycle, models, yield_engine
from cbots.database import db_session, run_in_transaction
from cbots.notifications import outbox


class MemorySink:
    """Collects delivered notifications in a list."""

    def __init__(self):
        self.events = []

    def deliver(self, event):
        self.events.append(event)

    def for_account(self, handle):
        return [e for e in self.events if e.account_handle == handle]


@pytest.fixture(autouse=True)
def engine():
    """Fresh in-memory SQLite database per test."""
    eng = database.configure_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=eng)
    yield eng
    outbox.drain()
    models.Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def sink():
    """Route the outbox into memory for the duration of a test."""
    memory = MemorySink()
    previous = outbox.sinks
    outbox.drain()
    outbox.sinks = [memory]
    yield memory
    outbox.drain()
    outbox.sinks = previous


@pytest.fixture
def make_account():
    def _make(handle, *, referrer=None, status=models.STATUS_ACTIVE, **kwargs):
        def _create(db):
            referral_code = None
            if referrer is not None:
                referral_code = crud.get_account(db, referrer).referral_code
            account = crud.create_account(
                db, handle=handle, referral_code=referral_code, is_verified=True, **kwargs
            )
            account.status = status
            db.flush()
            return account

        return run_in_transaction(_create)

    return _make


@pytest.fixture
def fund():
    """Credit the main wallet through a real approved deposit."""

    def _fund(handle, amount):
        req = run_in_transaction(
            lifecycle.submit_deposit, handle=handle, amount=amount, proof_ref="proofs/seed.png"
        )
        return run_in_transaction(lifecycle.approve_deposit, request_id=req.id, admin_handle="admin-uid")

    return _fund


@pytest.fixture
def bot_type():
    def _bot_type(*, cost="10", daily_profit="2", duration_days=10, name="Starter"):
        return run_in_transaction(
            yield_engine.create_bot_type,
            name=name,
            cost=cost,
            daily_profit=daily_profit,
            duration_days=duration_days,
        )

    return _bot_type


@pytest.fixture
def load():
    """Read a fresh copy of a row by primary key."""

    def _load(model, pk):
        with db_session() as db:
            return db.get(model, pk)

    return _load

