"""Races between units of work on separate connections."""

import threading
import time
from decimal import Decimal
from functools import partial

import pytest

from cbots import database, lifecycle, models
from cbots.database import db_session, run_in_transaction
from cbots.errors import AlreadyProcessed, ConflictRetryable, LedgerError
from cbots.notifications import outbox


@pytest.fixture(autouse=True)
def engine(tmp_path):
    """File-backed SQLite, so every thread works on its own connection."""
    eng = database.configure_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    models.Base.metadata.create_all(bind=eng)
    yield eng
    outbox.drain()
    eng.dispose()


def _race(*calls):
    """Release every call at the same moment; return each result or LedgerError."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def _run(i, fn):
        barrier.wait()
        try:
            outcomes[i] = fn()
        except LedgerError as e:
            outcomes[i] = e

    threads = [threading.Thread(target=_run, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(60)
    assert not any(t.is_alive() for t in threads)
    return outcomes


def _retrying(fn, attempts=50):
    for _ in range(attempts - 1):
        try:
            return fn()
        except ConflictRetryable:
            time.sleep(0.01)
    return fn()


def _approve(request_id):
    return partial(run_in_transaction, lifecycle.approve_deposit, request_id=request_id, admin_handle="admin-uid")


def _submit(handle, amount):
    return run_in_transaction(lifecycle.submit_deposit, handle=handle, amount=amount, proof_ref="proofs/p.png")


def test_double_approval_credits_once(make_account, load):
    make_account("alice")
    rounds = 10

    for _ in range(rounds):
        req = _submit("alice", "2")
        outcomes = _race(_approve(req.id), _approve(req.id))

        approved = [o for o in outcomes if isinstance(o, models.DepositRequest)]
        refused = [o for o in outcomes if isinstance(o, LedgerError)]
        assert len(approved) == 1
        assert len(refused) == 1
        assert isinstance(refused[0], (AlreadyProcessed, ConflictRetryable))
        assert load(models.DepositRequest, req.id).status == models.REQUEST_APPROVED

    assert load(models.Account, "alice").balance == Decimal("2") * rounds
    with db_session() as db:
        credited = (
            db.query(models.LedgerEntry)
            .filter(
                models.LedgerEntry.account_handle == "alice",
                models.LedgerEntry.kind == models.KIND_DEPOSIT,
            )
            .count()
        )
    assert credited == rounds


def test_parallel_first_deposits_count_each_referral_once(make_account, load):
    make_account("ref")
    make_account("amy", referrer="ref")
    make_account("ben", referrer="ref")
    first = _submit("amy", "10")
    second = _submit("ben", "10")

    outcomes = _race(
        partial(_retrying, _approve(first.id)),
        partial(_retrying, _approve(second.id)),
    )

    assert all(isinstance(o, models.DepositRequest) for o in outcomes), outcomes
    assert load(models.Account, "ref").qualified_referrals == 2
    assert load(models.Account, "amy").has_deposited is True
    assert load(models.Account, "ben").has_deposited is True

    # a retried approval after the fact changes nothing
    with pytest.raises(AlreadyProcessed):
        _approve(first.id)()
    assert load(models.Account, "ref").qualified_referrals == 2
