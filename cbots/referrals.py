# cbots/referrals.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from cbots import ledger, models
from cbots.core.config import settings
from cbots.errors import NotFound
from cbots.i18n import tf
from cbots.notifications import notify_account

logger = logging.getLogger(__name__)


def _d(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def _lang(account: models.Account) -> str:
    return account.language or settings.DEFAULT_LANGUAGE


def milestone_reached(counter: int, block: Optional[int] = None) -> int:
    """Return the milestone ``counter`` lands on exactly, or 0."""
    block = block or settings.REFERRAL_MILESTONE_SIZE
    milestone_block = counter // block
    if counter % block == 0 and milestone_block > 0:
        return milestone_block * block
    return 0


def on_qualifying_deposit(db: Session, account: models.Account) -> Optional[models.Account]:
    """Count ``account``'s first approved deposit towards its referrer.

    Runs inside the deposit approval unit of work. The referrer row is locked,
    so qualifying deposits of two referred accounts serialize on it.
    Returns the updated referrer, or None when the account has no referrer.
    """
    referrer = _lock_referrer(db, account)
    if referrer is None:
        return None

    referrer.qualified_referrals = (referrer.qualified_referrals or 0) + 1
    counter = referrer.qualified_referrals
    db.flush()

    notify_account(db, referrer, "REFERRAL_QUALIFIED_TITLE", "REFERRAL_QUALIFIED_BODY", count=counter)

    milestone = milestone_reached(counter)
    if milestone:
        # one block per crossing, so the bonus is a flat amount
        amount = _d(settings.REFERRAL_MILESTONE_BONUS)
        ledger.credit(
            db,
            referrer,
            amount,
            models.KIND_REFERRAL_MILESTONE_BONUS,
            tf(_lang(referrer), "REFERRAL_MILESTONE_DESC", milestone=milestone),
            meta={"milestone": milestone, "referred": account.handle},
        )
        notify_account(
            db,
            referrer,
            "REFERRAL_MILESTONE_TITLE",
            "REFERRAL_MILESTONE_BODY",
            milestone=milestone,
            amount=amount,
            currency=settings.CURRENCY,
        )
        logger.info("Referral milestone %s reached by %s", milestone, referrer.handle)

    return referrer


def _lock_referrer(db: Session, account: models.Account) -> Optional[models.Account]:
    if not account.referrer_handle:
        return None
    try:
        return ledger.lock_account(db, account.referrer_handle)
    except NotFound:
        logger.warning("Referrer %s of %s not found", account.referrer_handle, account.handle)
        return None


def on_first_bot_purchase(db: Session, account: models.Account) -> Optional[models.LedgerEntry]:
    """Flat bonus to the referrer when a referred account buys its first bot."""
    amount = _d(settings.REFERRAL_FIRST_BUY_BONUS)
    if amount <= 0:
        return None
    referrer = _lock_referrer(db, account)
    if referrer is None:
        return None
    return ledger.credit(
        db,
        referrer,
        amount,
        models.KIND_REFERRAL_FIRST_BUY_BONUS,
        tf(_lang(referrer), "REFERRAL_FIRST_BUY_DESC", referred=account.handle),
        meta={"referred": account.handle},
    )


def on_bot_profit(db: Session, account: models.Account, bot: models.ActiveBot, profit: Decimal) -> Optional[models.LedgerEntry]:
    """Credit the referrer a share of a referred account's bot profit."""
    percent = _d(settings.REFERRAL_PROFIT_SHARE_PERCENT)
    if percent <= 0:
        return None
    share = ledger.quantize_money(_d(profit) * percent / Decimal("100"))
    if share <= 0:
        return None
    referrer = _lock_referrer(db, account)
    if referrer is None:
        return None
    return ledger.credit(
        db,
        referrer,
        share,
        models.KIND_REFERRAL_PROFIT_SHARE,
        tf(_lang(referrer), "REFERRAL_PROFIT_SHARE_DESC", bot_id=bot.id),
        meta={"referred": account.handle, "bot_id": bot.id, "percent": str(percent)},
    )
