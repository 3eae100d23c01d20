# cbots/ledger.py
"""Balance mutation primitives.

Each primitive changes exactly one balance field and appends exactly one
ledger entry (or flips the status of one). None of them commit: callers run
them inside ``database.db_session()`` so the balance change, the entry and
any request status change land together or not at all.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Optional, List, Dict, Any, Union

from sqlalchemy import func, desc
from sqlalchemy.orm import Session

from cbots import models
from cbots.errors import InsufficientFunds, NotFound, ValidationError

logger = logging.getLogger(__name__)

AccountRef = Union[models.Account, str]

_BALANCE_FIELDS = {
    models.WALLET_MAIN: "balance",
    models.WALLET_BONUS: "bonus_balance",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_decimal(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def quantize_money(x) -> Decimal:
    # 8 decimals, same scale as the NUMERIC(24,8) columns
    return _to_decimal(x).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)


def _canonical_json(meta: Dict[str, Any]) -> str:
    # Deterministic JSON so substring marker queries are stable.
    return json.dumps(meta, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def positive_amount(amount) -> Decimal:
    try:
        amt = quantize_money(amount)
    except (ArithmeticError, ValueError) as e:
        raise ValidationError(f"invalid amount: {amount!r}") from e
    if amt <= 0:
        raise ValidationError("amount must be > 0")
    return amt


def _balance_field(wallet: str) -> str:
    try:
        return _BALANCE_FIELDS[wallet]
    except KeyError:
        raise ValidationError(f"unknown wallet: {wallet}") from None


def lock_account(db: Session, handle: str) -> models.Account:
    """Load an account with a row lock held until the unit of work ends."""
    account = (
        db.query(models.Account)
        .filter(models.Account.handle == handle)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if account is None:
        raise NotFound(f"account {handle} not found")
    return account


def _resolve(db: Session, account: AccountRef) -> models.Account:
    if isinstance(account, models.Account):
        return account
    return lock_account(db, account)


def _append(
    db: Session,
    account: models.Account,
    *,
    wallet: str,
    kind: str,
    amount: Decimal,
    description: str,
    status: str,
    meta: Optional[Dict[str, Any]],
) -> models.LedgerEntry:
    if kind not in models.ENTRY_KINDS:
        raise ValidationError(f"unknown entry kind: {kind}")

    row = models.LedgerEntry(
        account_handle=account.handle,
        wallet=wallet,
        kind=kind,
        amount=amount,
        description=description,
        status=status,
        meta=(_canonical_json(meta) if meta else None),
        created_at=_utcnow(),
    )
    db.add(row)
    db.flush()
    return row


def credit(
    db: Session,
    account: AccountRef,
    amount,
    kind: str,
    description: str,
    *,
    wallet: str = models.WALLET_MAIN,
    meta: Optional[Dict[str, Any]] = None,
) -> models.LedgerEntry:
    amt = positive_amount(amount)
    field = _balance_field(wallet)
    acc = _resolve(db, account)

    setattr(acc, field, _to_decimal(getattr(acc, field) or 0) + amt)
    entry = _append(
        db, acc, wallet=wallet, kind=kind, amount=amt, description=description,
        status=models.ENTRY_COMPLETED, meta=meta,
    )
    logger.info("credit %s %s %s kind=%s entry=%s", acc.handle, wallet, amt, kind, entry.id)
    return entry


def debit(
    db: Session,
    account: AccountRef,
    amount,
    kind: str,
    description: str,
    *,
    wallet: str = models.WALLET_MAIN,
    status: str = models.ENTRY_COMPLETED,
    meta: Optional[Dict[str, Any]] = None,
) -> models.LedgerEntry:
    amt = positive_amount(amount)
    field = _balance_field(wallet)
    acc = _resolve(db, account)

    current = _to_decimal(getattr(acc, field) or 0)
    if amt > current:
        raise InsufficientFunds(f"insufficient balance: requested {amt}, available {current}")

    setattr(acc, field, current - amt)
    entry = _append(
        db, acc, wallet=wallet, kind=kind, amount=-amt, description=description,
        status=status, meta=meta,
    )
    logger.info("debit %s %s %s kind=%s entry=%s", acc.handle, wallet, amt, kind, entry.id)
    return entry


def reserve(
    db: Session,
    account: AccountRef,
    amount,
    description: str,
    *,
    meta: Optional[Dict[str, Any]] = None,
) -> models.LedgerEntry:
    """Hold funds for a withdrawal: debit now, entry stays pending."""
    return debit(
        db, account, amount, models.KIND_WITHDRAWAL, description,
        status=models.ENTRY_PENDING, meta=meta,
    )


def _pending_hold(entry: models.LedgerEntry) -> None:
    if entry.status != models.ENTRY_PENDING:
        raise ValidationError(f"entry {entry.id} is {entry.status}, expected pending")


def settle(db: Session, entry: models.LedgerEntry) -> models.LedgerEntry:
    """Finalize a pending hold. The balance already reflects it."""
    _pending_hold(entry)
    entry.status = models.ENTRY_COMPLETED
    entry.updated_at = _utcnow()
    db.flush()
    return entry


def release(db: Session, entry: models.LedgerEntry, description: str) -> models.LedgerEntry:
    """Cancel a pending hold and give the held amount back."""
    _pending_hold(entry)
    acc = lock_account(db, entry.account_handle)
    field = _balance_field(entry.wallet)

    refund = -_to_decimal(entry.amount)
    setattr(acc, field, _to_decimal(getattr(acc, field) or 0) + refund)
    entry.status = models.ENTRY_REJECTED
    entry.description = description
    entry.updated_at = _utcnow()
    db.flush()
    logger.info("release %s %s %s entry=%s", acc.handle, entry.wallet, refund, entry.id)
    return entry


def get_balance(db: Session, *, handle: str, wallet: str = models.WALLET_MAIN) -> Decimal:
    account = db.get(models.Account, handle)
    if account is None:
        raise NotFound(f"account {handle} not found")
    return _to_decimal(getattr(account, _balance_field(wallet)) or 0)


def entries_balance(db: Session, *, handle: str, wallet: str = models.WALLET_MAIN) -> Decimal:
    """Recompute a wallet balance from its entries (rejected holds excluded)."""
    total = (
        db.query(func.coalesce(func.sum(models.LedgerEntry.amount), 0))
        .filter(
            models.LedgerEntry.account_handle == handle,
            models.LedgerEntry.wallet == wallet,
            models.LedgerEntry.status != models.ENTRY_REJECTED,
        )
        .scalar()
    )
    return quantize_money(total)


def get_statement(
    db: Session,
    *,
    handle: str,
    wallet: Optional[str] = None,
    limit: int = 10,
) -> List[models.LedgerEntry]:
    q = db.query(models.LedgerEntry).filter(models.LedgerEntry.account_handle == handle)
    if wallet:
        q = q.filter(models.LedgerEntry.wallet == wallet)
    return q.order_by(desc(models.LedgerEntry.id)).limit(limit).all()
