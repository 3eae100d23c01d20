from decimal import Decimal

import pytest

from cbots import ledger, lifecycle, models
from cbots.database import db_session, run_in_transaction
from cbots.notifications import outbox
from cbots.errors import AccountBlocked, AlreadyProcessed, InsufficientFunds, NotFound, ValidationError


def _balance(handle):
    with db_session() as db:
        return ledger.get_balance(db, handle=handle)


def _entries(handle, kind=None):
    with db_session() as db:
        q = db.query(models.LedgerEntry).filter(models.LedgerEntry.account_handle == handle)
        if kind:
            q = q.filter(models.LedgerEntry.kind == kind)
        return q.order_by(models.LedgerEntry.id).all()


class TestDeposits:
    def test_submit_and_approve(self, make_account, sink):
        """Approval credits the amount once and notifies the depositor."""
        make_account("alice")
        req = run_in_transaction(
            lifecycle.submit_deposit, handle="alice", amount="100", proof_ref="proofs/a.png"
        )
        assert req.status == models.REQUEST_PENDING
        assert _balance("alice") == Decimal("0")

        approved = run_in_transaction(lifecycle.approve_deposit, request_id=req.id, admin_handle="admin-uid")
        assert approved.status == models.REQUEST_APPROVED
        assert approved.processed_by == "admin-uid"
        assert approved.processed_at is not None

        assert _balance("alice") == Decimal("100")
        deposits = _entries("alice", models.KIND_DEPOSIT)
        assert len(deposits) == 1
        assert deposits[0].status == models.ENTRY_COMPLETED

        # delivery happens on drain, after the commit
        assert sink.for_account("alice") == []
        outbox.drain()
        assert [e.title for e in sink.for_account("alice")] == ["Deposit approved"]

    def test_double_approve_credits_once(self, make_account):
        make_account("bob")
        req = run_in_transaction(lifecycle.submit_deposit, handle="bob", amount="40", proof_ref="p")
        run_in_transaction(lifecycle.approve_deposit, request_id=req.id)

        with pytest.raises(AlreadyProcessed):
            run_in_transaction(lifecycle.approve_deposit, request_id=req.id)
        with pytest.raises(AlreadyProcessed):
            run_in_transaction(lifecycle.reject_deposit, request_id=req.id, reason="late")

        assert _balance("bob") == Decimal("40")
        assert len(_entries("bob", models.KIND_DEPOSIT)) == 1

    def test_reject_records_reason_and_leaves_balance(self, make_account, load):
        make_account("carol")
        req = run_in_transaction(lifecycle.submit_deposit, handle="carol", amount="40", proof_ref="p")

        run_in_transaction(lifecycle.reject_deposit, request_id=req.id, reason="blurry proof")

        row = load(models.DepositRequest, req.id)
        assert row.status == models.REQUEST_REJECTED
        assert row.rejection_reason == "blurry proof"
        assert _balance("carol") == Decimal("0")
        assert _entries("carol") == []

    def test_reject_requires_reason(self, make_account, load):
        make_account("dave")
        req = run_in_transaction(lifecycle.submit_deposit, handle="dave", amount="40", proof_ref="p")

        with pytest.raises(ValidationError):
            run_in_transaction(lifecycle.reject_deposit, request_id=req.id, reason="   ")
        assert load(models.DepositRequest, req.id).status == models.REQUEST_PENDING

    def test_submit_validation(self, make_account):
        make_account("erin")
        with pytest.raises(ValidationError):
            run_in_transaction(lifecycle.submit_deposit, handle="erin", amount="0", proof_ref="p")
        with pytest.raises(ValidationError):
            run_in_transaction(lifecycle.submit_deposit, handle="erin", amount="10", proof_ref="")
        with pytest.raises(NotFound):
            run_in_transaction(
                lifecycle.submit_deposit, handle="erin", amount="10", proof_ref="p", payment_method_id=999
            )

    def test_unknown_request(self):
        with pytest.raises(NotFound):
            run_in_transaction(lifecycle.approve_deposit, request_id=12345)

    def test_blocked_account_cannot_submit(self, make_account):
        make_account("frank", status=models.STATUS_BLOCKED)
        with pytest.raises(AccountBlocked):
            run_in_transaction(lifecycle.submit_deposit, handle="frank", amount="10", proof_ref="p")

    def test_pending_projection(self, make_account):
        make_account("gina")
        first = run_in_transaction(lifecycle.submit_deposit, handle="gina", amount="1", proof_ref="p")
        second = run_in_transaction(lifecycle.submit_deposit, handle="gina", amount="2", proof_ref="p")
        run_in_transaction(lifecycle.approve_deposit, request_id=first.id)

        with db_session() as db:
            pending = lifecycle.list_pending_deposits(db)
            mine = lifecycle.list_account_deposits(db, handle="gina")
        assert [r.id for r in pending] == [second.id]
        assert [r.id for r in mine] == [second.id, first.id]


class TestWithdrawals:
    def test_submit_holds_funds(self, make_account, fund):
        make_account("alice")
        fund("alice", "100")

        req = run_in_transaction(
            lifecycle.submit_withdrawal, handle="alice", amount="30", destination="TXaddr"
        )
        assert req.status == models.REQUEST_PENDING
        assert _balance("alice") == Decimal("70")

        hold = _entries("alice", models.KIND_WITHDRAWAL)
        assert len(hold) == 1
        assert hold[0].id == req.entry_id
        assert hold[0].status == models.ENTRY_PENDING
        assert hold[0].amount == Decimal("-30")

    def test_approve_completes_hold_without_second_debit(self, make_account, fund, load):
        make_account("bob")
        fund("bob", "100")
        req = run_in_transaction(lifecycle.submit_withdrawal, handle="bob", amount="30", destination="TX")

        run_in_transaction(lifecycle.approve_withdrawal, request_id=req.id, proof_ref="tx-hash-1")

        row = load(models.WithdrawalRequest, req.id)
        assert row.status == models.REQUEST_APPROVED
        assert row.proof_ref == "tx-hash-1"
        assert load(models.LedgerEntry, req.entry_id).status == models.ENTRY_COMPLETED
        assert _balance("bob") == Decimal("70")

    def test_approve_requires_proof(self, make_account, fund):
        make_account("carol")
        fund("carol", "10")
        req = run_in_transaction(lifecycle.submit_withdrawal, handle="carol", amount="5", destination="TX")
        with pytest.raises(ValidationError):
            run_in_transaction(lifecycle.approve_withdrawal, request_id=req.id, proof_ref=None)

    def test_reject_refunds_once(self, make_account, fund, load):
        make_account("dave")
        fund("dave", "100")
        req = run_in_transaction(lifecycle.submit_withdrawal, handle="dave", amount="30", destination="TX")

        run_in_transaction(lifecycle.reject_withdrawal, request_id=req.id, reason="wrong network")
        assert _balance("dave") == Decimal("100")

        entry = load(models.LedgerEntry, req.entry_id)
        assert entry.status == models.ENTRY_REJECTED
        assert "wrong network" in entry.description

        with pytest.raises(AlreadyProcessed):
            run_in_transaction(lifecycle.reject_withdrawal, request_id=req.id, reason="again")
        with pytest.raises(AlreadyProcessed):
            run_in_transaction(lifecycle.approve_withdrawal, request_id=req.id, proof_ref="tx")
        assert _balance("dave") == Decimal("100")

        with db_session() as db:
            assert ledger.entries_balance(db, handle="dave") == Decimal("100")

    def test_over_balance_withdrawal_creates_nothing(self, make_account, fund):
        make_account("erin")
        fund("erin", "20")

        with pytest.raises(InsufficientFunds):
            run_in_transaction(lifecycle.submit_withdrawal, handle="erin", amount="20.01", destination="TX")

        assert _balance("erin") == Decimal("20")
        assert _entries("erin", models.KIND_WITHDRAWAL) == []
        with db_session() as db:
            assert lifecycle.list_account_withdrawals(db, handle="erin") == []

    def test_destination_required(self, make_account, fund):
        make_account("frank")
        fund("frank", "20")
        with pytest.raises(ValidationError):
            run_in_transaction(lifecycle.submit_withdrawal, handle="frank", amount="5", destination=" ")
