# cbots/yield_engine.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import desc
from sqlalchemy.orm import Session

from cbots import crud, ledger, models, referrals
from cbots.core.config import settings
from cbots.database import db_session, run_in_transaction
from cbots.errors import ConflictRetryable, NotFound, ValidationError
from cbots.i18n import tf
from cbots.notifications import notify_account

logger = logging.getLogger(__name__)

# one sweep at a time per process; BotAccrual's unique key covers the rest
_sweep_lock = threading.Lock()


def _d(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utc_day(dt: datetime) -> date:
    # SQLite hands back naive datetimes; they are stored as UTC
    if dt.tzinfo is None:
        return dt.date()
    return dt.astimezone(timezone.utc).date()


@dataclass(frozen=True)
class BotAccrualOutcome:
    bot_id: int
    days_credited: int
    profit: Decimal
    expired: bool


@dataclass(frozen=True)
class AccrualResult:
    processed: int
    credited: int
    expired: int
    failed: int
    total_profit: Decimal


# -------- Catalog --------

def create_bot_type(db: Session, *, name: str, cost, daily_profit, duration_days: int) -> models.BotType:
    name = (name or "").strip()
    if not name:
        raise ValidationError("bot name is required")
    if int(duration_days) <= 0:
        raise ValidationError("duration_days must be > 0")

    row = models.BotType(
        name=name,
        cost=ledger.positive_amount(cost),
        daily_profit=ledger.positive_amount(daily_profit),
        duration_days=int(duration_days),
        is_active=True,
    )
    db.add(row)
    db.flush()
    return row


def list_bot_types(db: Session, *, active_only: bool = True) -> List[models.BotType]:
    q = db.query(models.BotType)
    if active_only:
        q = q.filter(models.BotType.is_active.is_(True))
    return q.order_by(models.BotType.cost).all()


def list_account_bots(db: Session, *, handle: str) -> List[models.ActiveBot]:
    return (
        db.query(models.ActiveBot)
        .filter(models.ActiveBot.account_handle == handle)
        .order_by(desc(models.ActiveBot.id))
        .all()
    )


# -------- Purchase --------

def purchase_bot(
    db: Session,
    *,
    handle: str,
    bot_type_id: int,
    now: Optional[datetime] = None,
) -> models.ActiveBot:
    bot_type = db.get(models.BotType, bot_type_id)
    if bot_type is None or not bot_type.is_active:
        raise NotFound(f"bot type {bot_type_id} not found")

    account = crud.lock_active_account(db, handle)
    lang = account.language or settings.DEFAULT_LANGUAGE
    first_purchase = (
        db.query(models.ActiveBot.id)
        .filter(models.ActiveBot.account_handle == account.handle)
        .first()
        is None
    )

    ledger.debit(
        db,
        account,
        bot_type.cost,
        models.KIND_BOT_PURCHASE,
        tf(lang, "BOT_PURCHASE_DESC", name=bot_type.name),
        meta={"bot_type_id": bot_type.id},
    )

    start = now or _utcnow()
    bot = models.ActiveBot(
        account_handle=account.handle,
        bot_type_id=bot_type.id,
        start_date=start,
        end_date=start + timedelta(days=bot_type.duration_days),
        daily_profit=bot_type.daily_profit,
        duration_days=bot_type.duration_days,
        accrued_days=0,
        total_profit=Decimal("0"),
        status=models.BOT_ACTIVE,
    )
    db.add(bot)
    db.flush()

    if first_purchase:
        referrals.on_first_bot_purchase(db, account)

    notify_account(
        db, account, "BOT_PURCHASED_TITLE", "BOT_PURCHASED_BODY",
        name=bot_type.name, days=bot_type.duration_days,
    )
    logger.info("Bot %s (%s) purchased by %s", bot.id, bot_type.name, handle)
    return bot


# -------- Accrual --------

def accrue_bot(db: Session, *, bot_id: int, accrual_day: Optional[date] = None) -> BotAccrualOutcome:
    """
    Settle one bot up to ``accrual_day``:
    - due days = min(whole days since start, duration)
    - every due day not yet credited gets one bot_profit entry + BotAccrual row
    - once the duration has elapsed the bot flips to expired
    Idempotent per (bot, day): a rerun for the same day credits nothing.
    """
    if accrual_day is None:
        accrual_day = _utcnow().date()

    bot = (
        db.query(models.ActiveBot)
        .filter(models.ActiveBot.id == bot_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if bot is None:
        raise NotFound(f"bot {bot_id} not found")
    if bot.status != models.BOT_ACTIVE:
        return BotAccrualOutcome(bot_id, 0, Decimal("0"), False)

    start_day = _utc_day(bot.start_date)
    elapsed = max(0, (accrual_day - start_day).days)
    due = min(elapsed, bot.duration_days)
    accrued = bot.accrued_days or 0

    profit = Decimal("0")
    if due > accrued:
        account = ledger.lock_account(db, bot.account_handle)
        lang = account.language or settings.DEFAULT_LANGUAGE
        bot_type = db.get(models.BotType, bot.bot_type_id)
        name = bot_type.name if bot_type else str(bot.bot_type_id)
        daily = _d(bot.daily_profit)

        for day in range(accrued + 1, due + 1):
            day_date = start_day + timedelta(days=day)
            entry = ledger.credit(
                db,
                account,
                daily,
                models.KIND_BOT_PROFIT,
                tf(lang, "BOT_PROFIT_DESC", bot_id=bot.id, name=name, day=day, days=bot.duration_days),
                meta={"bot_id": bot.id, "day": day, "accrual_date": day_date.isoformat()},
            )
            db.add(
                models.BotAccrual(
                    bot_id=bot.id,
                    day_number=day,
                    accrual_date=day_date.isoformat(),
                    entry_id=entry.id,
                )
            )
            referrals.on_bot_profit(db, account, bot, daily)
            profit += daily

        bot.accrued_days = due
        bot.total_profit = _d(bot.total_profit or 0) + profit

    expired = elapsed >= bot.duration_days
    if expired:
        bot.status = models.BOT_EXPIRED
        owner = db.get(models.Account, bot.account_handle)
        if owner is not None:
            notify_account(
                db, owner, "BOT_EXPIRED_TITLE", "BOT_EXPIRED_BODY",
                bot_id=bot.id, total=bot.total_profit, currency=settings.CURRENCY,
            )
    db.flush()

    return BotAccrualOutcome(bot.id, due - accrued if due > accrued else 0, profit, expired)


def run_daily_bot_accrual(*, accrual_day: Optional[date] = None) -> AccrualResult:
    """
    Daily tick: settle every active bot, each in its own transaction so the
    sweep composes with live approvals on the same accounts. A bot that hits
    a write conflict is skipped and caught up by the next tick.
    """
    if accrual_day is None:
        accrual_day = _utcnow().date()

    if not _sweep_lock.acquire(blocking=False):
        raise ConflictRetryable("accrual sweep already running")

    try:
        with db_session() as db:
            bot_ids = [
                row[0]
                for row in db.query(models.ActiveBot.id)
                .filter(models.ActiveBot.status == models.BOT_ACTIVE)
                .order_by(models.ActiveBot.id)
                .all()
            ]

        processed = 0
        credited = 0
        expired = 0
        failed = 0
        total_profit = Decimal("0")

        for bot_id in bot_ids:
            processed += 1
            try:
                outcome = run_in_transaction(accrue_bot, bot_id=bot_id, accrual_day=accrual_day)
            except (ConflictRetryable, NotFound) as e:
                failed += 1
                logger.warning("Accrual for bot %s skipped: %s", bot_id, e)
                continue

            if outcome.days_credited:
                credited += 1
                total_profit += outcome.profit
            if outcome.expired:
                expired += 1

        result = AccrualResult(
            processed=processed,
            credited=credited,
            expired=expired,
            failed=failed,
            total_profit=ledger.quantize_money(total_profit),
        )
        logger.info("Daily accrual %s: %s", accrual_day.isoformat(), result)
        return result
    finally:
        _sweep_lock.release()
