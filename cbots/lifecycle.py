# cbots/lifecycle.py
"""Deposit and withdrawal request state machines.

    pending --approve--> approved
    pending --reject---> rejected

Both non-pending states are terminal. Every transition runs inside one unit
of work with the request row locked first, then the account, then (for
qualifying deposits) the referrer.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Type, TypeVar

from sqlalchemy import desc
from sqlalchemy.orm import Session

from cbots import crud, ledger, models, referrals
from cbots.core.config import settings
from cbots.errors import AlreadyProcessed, NotFound, ValidationError
from cbots.i18n import tf
from cbots.notifications import notify_account

logger = logging.getLogger(__name__)

R = TypeVar("R", models.DepositRequest, models.WithdrawalRequest)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _lang(account: models.Account) -> str:
    return account.language or settings.DEFAULT_LANGUAGE


def _required(value: Optional[str], field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required")
    return value


def _lock_pending(db: Session, model: Type[R], request_id: int) -> R:
    req = (
        db.query(model)
        .filter(model.id == request_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if req is None:
        raise NotFound(f"{model.__tablename__} {request_id} not found")
    if req.status != models.REQUEST_PENDING:
        raise AlreadyProcessed(f"{model.__tablename__} {request_id} is already {req.status}")
    return req


def _close(req, status: str, admin_handle: Optional[str]) -> None:
    req.status = status
    req.processed_at = _utcnow()
    req.processed_by = admin_handle


# -------- Deposits --------

def check_payment_method(db: Session, payment_method_id: Optional[int]) -> None:
    if payment_method_id is None:
        return
    method = db.get(models.PaymentMethod, payment_method_id)
    if method is None or not method.is_active:
        raise NotFound(f"payment method {payment_method_id} not found")


def submit_deposit(
    db: Session,
    *,
    handle: str,
    amount,
    proof_ref: Optional[str],
    payment_method_id: Optional[int] = None,
) -> models.DepositRequest:
    amt = ledger.positive_amount(amount)
    proof_ref = _required(proof_ref, "proof of payment")

    check_payment_method(db, payment_method_id)
    account = crud.lock_active_account(db, handle)

    req = models.DepositRequest(
        account_handle=account.handle,
        amount=amt,
        proof_ref=proof_ref,
        payment_method_id=payment_method_id,
        status=models.REQUEST_PENDING,
        created_at=_utcnow(),
    )
    db.add(req)
    db.flush()
    logger.info("Deposit request %s submitted by %s (%s)", req.id, handle, amt)
    return req


def approve_deposit(db: Session, *, request_id: int, admin_handle: Optional[str] = None) -> models.DepositRequest:
    req = _lock_pending(db, models.DepositRequest, request_id)
    account = ledger.lock_account(db, req.account_handle)

    ledger.credit(
        db,
        account,
        req.amount,
        models.KIND_DEPOSIT,
        tf(_lang(account), "DEPOSIT_APPROVED_DESC", request_id=req.id),
        meta={"deposit_request_id": req.id},
    )
    _close(req, models.REQUEST_APPROVED, admin_handle)

    first_deposit = not account.has_deposited
    if first_deposit:
        account.has_deposited = True
    db.flush()

    if first_deposit:
        referrals.on_qualifying_deposit(db, account)

    notify_account(
        db, account, "DEPOSIT_APPROVED_TITLE", "DEPOSIT_APPROVED_BODY",
        amount=req.amount, currency=settings.CURRENCY,
    )
    logger.info("Deposit request %s approved by %s", req.id, admin_handle)
    return req


def reject_deposit(
    db: Session,
    *,
    request_id: int,
    reason: Optional[str],
    admin_handle: Optional[str] = None,
) -> models.DepositRequest:
    reason = _required(reason, "rejection reason")
    req = _lock_pending(db, models.DepositRequest, request_id)

    _close(req, models.REQUEST_REJECTED, admin_handle)
    req.rejection_reason = reason
    db.flush()

    account = db.get(models.Account, req.account_handle)
    if account is not None:
        notify_account(
            db, account, "DEPOSIT_REJECTED_TITLE", "DEPOSIT_REJECTED_BODY",
            amount=req.amount, currency=settings.CURRENCY, reason=reason,
        )
    logger.info("Deposit request %s rejected by %s: %s", req.id, admin_handle, reason)
    return req


# -------- Withdrawals --------

def submit_withdrawal(db: Session, *, handle: str, amount, destination: Optional[str]) -> models.WithdrawalRequest:
    amt = ledger.positive_amount(amount)
    destination = _required(destination, "destination address")

    account = crud.lock_active_account(db, handle)

    # funds leave the balance now; approval only finalizes the entry
    entry = ledger.reserve(
        db,
        account,
        amt,
        tf(_lang(account), "WITHDRAWAL_REQUESTED_DESC", destination=destination),
        meta={"destination": destination},
    )
    req = models.WithdrawalRequest(
        account_handle=account.handle,
        entry_id=entry.id,
        amount=amt,
        destination=destination,
        status=models.REQUEST_PENDING,
        created_at=_utcnow(),
    )
    db.add(req)
    db.flush()
    logger.info("Withdrawal request %s submitted by %s (%s -> %s)", req.id, handle, amt, destination)
    return req


def _linked_entry(db: Session, req: models.WithdrawalRequest) -> models.LedgerEntry:
    entry = (
        db.query(models.LedgerEntry)
        .filter(models.LedgerEntry.id == req.entry_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if entry is None:
        raise NotFound(f"ledger entry {req.entry_id} of withdrawal {req.id} not found")
    return entry


def approve_withdrawal(
    db: Session,
    *,
    request_id: int,
    proof_ref: Optional[str],
    admin_handle: Optional[str] = None,
) -> models.WithdrawalRequest:
    proof_ref = _required(proof_ref, "proof of send")
    req = _lock_pending(db, models.WithdrawalRequest, request_id)
    entry = _linked_entry(db, req)

    ledger.settle(db, entry)
    _close(req, models.REQUEST_APPROVED, admin_handle)
    req.proof_ref = proof_ref
    db.flush()

    account = db.get(models.Account, req.account_handle)
    if account is not None:
        notify_account(
            db, account, "WITHDRAWAL_APPROVED_TITLE", "WITHDRAWAL_APPROVED_BODY",
            amount=req.amount, currency=settings.CURRENCY,
        )
    logger.info("Withdrawal request %s approved by %s", req.id, admin_handle)
    return req


def reject_withdrawal(
    db: Session,
    *,
    request_id: int,
    reason: Optional[str],
    admin_handle: Optional[str] = None,
) -> models.WithdrawalRequest:
    reason = _required(reason, "rejection reason")
    req = _lock_pending(db, models.WithdrawalRequest, request_id)
    entry = _linked_entry(db, req)

    account = ledger.lock_account(db, req.account_handle)
    ledger.release(db, entry, tf(_lang(account), "WITHDRAWAL_REJECTED_DESC", reason=reason))
    _close(req, models.REQUEST_REJECTED, admin_handle)
    req.rejection_reason = reason
    db.flush()

    notify_account(
        db, account, "WITHDRAWAL_REJECTED_TITLE", "WITHDRAWAL_REJECTED_BODY",
        amount=req.amount, currency=settings.CURRENCY, reason=reason,
    )
    logger.info("Withdrawal request %s rejected by %s: %s", req.id, admin_handle, reason)
    return req


# -------- Projections --------

def list_pending_deposits(db: Session, *, limit: int = 50) -> List[models.DepositRequest]:
    return (
        db.query(models.DepositRequest)
        .filter(models.DepositRequest.status == models.REQUEST_PENDING)
        .order_by(models.DepositRequest.id)
        .limit(limit)
        .all()
    )


def list_pending_withdrawals(db: Session, *, limit: int = 50) -> List[models.WithdrawalRequest]:
    return (
        db.query(models.WithdrawalRequest)
        .filter(models.WithdrawalRequest.status == models.REQUEST_PENDING)
        .order_by(models.WithdrawalRequest.id)
        .limit(limit)
        .all()
    )


def list_account_deposits(db: Session, *, handle: str, limit: int = 20) -> List[models.DepositRequest]:
    return (
        db.query(models.DepositRequest)
        .filter(models.DepositRequest.account_handle == handle)
        .order_by(desc(models.DepositRequest.id))
        .limit(limit)
        .all()
    )


def list_account_withdrawals(db: Session, *, handle: str, limit: int = 20) -> List[models.WithdrawalRequest]:
    return (
        db.query(models.WithdrawalRequest)
        .filter(models.WithdrawalRequest.account_handle == handle)
        .order_by(desc(models.WithdrawalRequest.id))
        .limit(limit)
        .all()
    )
