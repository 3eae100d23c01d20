# cbots/crud.py
from __future__ import annotations

import logging
import secrets
from decimal import Decimal
from typing import List

from sqlalchemy import desc
from sqlalchemy.orm import Session

from cbots import ledger, models
from cbots.core.config import settings
from cbots.errors import AccountBlocked, NotFound, ValidationError
from cbots.i18n import tf
from cbots.notifications import notify_account

logger = logging.getLogger(__name__)


def _admin_identities() -> set[str]:
    raw = settings.ADMIN_USER_IDS or ""
    return {x.strip().lower() for x in raw.split(",") if x.strip()}


# -------- Accounts --------

def get_account(db: Session, handle: str) -> models.Account:
    account = db.get(models.Account, handle)
    if account is None:
        raise NotFound(f"account {handle} not found")
    return account


def get_account_by_email(db: Session, email: str) -> models.Account | None:
    return db.query(models.Account).filter(models.Account.email == email.strip().lower()).first()


def lock_active_account(db: Session, handle: str) -> models.Account:
    account = ledger.lock_account(db, handle)
    if account.is_blocked:
        raise AccountBlocked(f"account {handle} is blocked")
    return account


def _new_referral_code(db: Session) -> str:
    while True:
        code = secrets.token_hex(4).upper()
        if not db.query(models.Account.handle).filter(models.Account.referral_code == code).first():
            return code


def create_account(
    db: Session,
    *,
    handle: str,
    name: str | None = None,
    email: str | None = None,
    referral_code: str | None = None,
    language: str | None = None,
    password_hash: str | None = None,
    verification_token: str | None = None,
    is_verified: bool = False,
) -> models.Account:
    handle = (handle or "").strip()
    if not handle:
        raise ValidationError("account handle is required")
    if db.get(models.Account, handle) is not None:
        raise ValidationError("account already exists")

    email = email.strip().lower() if email else None
    if email and get_account_by_email(db, email) is not None:
        raise ValidationError("email already in use")

    referrer_handle = None
    if referral_code:
        referrer = (
            db.query(models.Account)
            .filter(models.Account.referral_code == referral_code.strip().upper())
            .first()
        )
        if referrer is None:
            raise ValidationError("unknown referral code")
        referrer_handle = referrer.handle

    admins = _admin_identities()
    role = models.ROLE_ADMIN if (handle.lower() in admins or (email and email in admins)) else models.ROLE_USER

    account = models.Account(
        handle=handle,
        name=name,
        email=email,
        language=language or settings.DEFAULT_LANGUAGE,
        balance=Decimal("0"),
        bonus_balance=Decimal("0"),
        referrer_handle=referrer_handle,
        referral_code=_new_referral_code(db),
        qualified_referrals=0,
        has_deposited=False,
        role=role,
        status=models.STATUS_ACTIVE,
        password_hash=password_hash,
        verification_token=verification_token,
        is_verified=is_verified,
    )
    db.add(account)
    db.flush()
    logger.info("Account %s created (referrer=%s, role=%s)", handle, referrer_handle, role)
    return account


def grant_signup_bonus(db: Session, account: models.Account) -> models.LedgerEntry | None:
    """Credit the signup bonus to the configured wallet, once per account."""
    amount = Decimal(str(settings.SIGNUP_BONUS))
    if amount <= 0:
        return None

    already = (
        db.query(models.LedgerEntry.id)
        .filter(
            models.LedgerEntry.account_handle == account.handle,
            models.LedgerEntry.kind == models.KIND_SIGNUP_BONUS,
        )
        .first()
    )
    if already:
        return None

    lang = account.language or settings.DEFAULT_LANGUAGE
    entry = ledger.credit(
        db,
        account,
        amount,
        models.KIND_SIGNUP_BONUS,
        tf(lang, "SIGNUP_BONUS_DESC"),
        wallet=settings.SIGNUP_BONUS_WALLET,
    )
    notify_account(
        db, account, "SIGNUP_BONUS_TITLE", "SIGNUP_BONUS_BODY",
        amount=amount, currency=settings.CURRENCY,
    )
    return entry


def list_accounts(db: Session, *, limit: int = 50, offset: int = 0) -> List[models.Account]:
    return (
        db.query(models.Account)
        .order_by(desc(models.Account.created_at), models.Account.handle)
        .offset(offset)
        .limit(limit)
        .all()
    )


def set_account_status(db: Session, *, handle: str, status: str) -> models.Account:
    if status not in (models.STATUS_ACTIVE, models.STATUS_BLOCKED):
        raise ValidationError(f"invalid status: {status}")
    account = ledger.lock_account(db, handle)
    account.status = status
    db.flush()
    logger.info("Account %s status set to %s", handle, status)
    return account


# -------- Payment methods --------

def create_payment_method(db: Session, *, name: str, details: str | None = None) -> models.PaymentMethod:
    name = (name or "").strip()
    if not name:
        raise ValidationError("payment method name is required")
    row = models.PaymentMethod(name=name, details=details, is_active=True)
    db.add(row)
    db.flush()
    return row


def list_payment_methods(db: Session, *, active_only: bool = True) -> List[models.PaymentMethod]:
    q = db.query(models.PaymentMethod)
    if active_only:
        q = q.filter(models.PaymentMethod.is_active.is_(True))
    return q.order_by(models.PaymentMethod.id).all()


# -------- Notifications --------

def list_notifications(db: Session, *, handle: str, limit: int = 20) -> List[models.Notification]:
    return (
        db.query(models.Notification)
        .filter(models.Notification.account_handle == handle)
        .order_by(desc(models.Notification.id))
        .limit(limit)
        .all()
    )


def mark_notifications_read(db: Session, *, handle: str) -> int:
    return (
        db.query(models.Notification)
        .filter(
            models.Notification.account_handle == handle,
            models.Notification.is_read.is_(False),
        )
        .update({models.Notification.is_read: True}, synchronize_session=False)
    )
