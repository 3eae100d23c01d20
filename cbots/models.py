# cbots/models.py
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column,
    String,
    Numeric,
    DateTime,
    Integer,
    Boolean,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

MONEY = Numeric(24, 8)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# LedgerEntry.kind
KIND_DEPOSIT = "deposit"
KIND_WITHDRAWAL = "withdrawal"
KIND_BOT_PURCHASE = "bot_purchase"
KIND_BOT_PROFIT = "bot_profit"
KIND_SIGNUP_BONUS = "signup_bonus"
KIND_REFERRAL_MILESTONE_BONUS = "referral_milestone_bonus"
KIND_REFERRAL_PROFIT_SHARE = "referral_profit_share"
KIND_REFERRAL_FIRST_BUY_BONUS = "referral_first_buy_bonus"

ENTRY_KINDS = (
    KIND_DEPOSIT,
    KIND_WITHDRAWAL,
    KIND_BOT_PURCHASE,
    KIND_BOT_PROFIT,
    KIND_SIGNUP_BONUS,
    KIND_REFERRAL_MILESTONE_BONUS,
    KIND_REFERRAL_PROFIT_SHARE,
    KIND_REFERRAL_FIRST_BUY_BONUS,
)

# LedgerEntry.status
ENTRY_PENDING = "pending"
ENTRY_COMPLETED = "completed"
ENTRY_REJECTED = "rejected"

# DepositRequest / WithdrawalRequest.status
REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"

# wallets
WALLET_MAIN = "main"
WALLET_BONUS = "bonus"

BOT_ACTIVE = "active"
BOT_EXPIRED = "expired"

ROLE_USER = "user"
ROLE_ADMIN = "admin"

STATUS_ACTIVE = "active"
STATUS_BLOCKED = "blocked"


class Account(Base):
    __tablename__ = "accounts"

    # opaque handle issued by the identity provider
    handle = Column(String(128), primary_key=True)

    name = Column(String(128), nullable=True)
    email = Column(String(255), nullable=True, unique=True)
    language = Column(String(8), nullable=True)

    balance = Column(MONEY, nullable=False, default=Decimal("0"))
    bonus_balance = Column(MONEY, nullable=False, default=Decimal("0"))

    # set once at creation, never updated
    referrer_handle = Column(String(128), ForeignKey("accounts.handle"), nullable=True, index=True)
    referral_code = Column(String(32), nullable=False, unique=True)
    qualified_referrals = Column(Integer, nullable=False, default=0)
    has_deposited = Column(Boolean, nullable=False, default=False)

    role = Column(String(16), nullable=False, default=ROLE_USER)      # user / admin
    status = Column(String(16), nullable=False, default=STATUS_ACTIVE)  # active / blocked

    # password identity mode only
    password_hash = Column(String(128), nullable=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    verification_token = Column(String(64), nullable=True, unique=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=_utcnow, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_blocked(self) -> bool:
        return self.status == STATUS_BLOCKED


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)

    account_handle = Column(String(128), ForeignKey("accounts.handle"), nullable=False)
    wallet = Column(String(16), nullable=False, default=WALLET_MAIN)  # main / bonus
    kind = Column(String(32), nullable=False)
    amount = Column(MONEY, nullable=False)  # signed
    description = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default=ENTRY_COMPLETED)
    meta = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=_utcnow, nullable=True)

    __table_args__ = (
        Index("ix_ledger_entries_account", "account_handle"),
        Index("ix_ledger_entries_account_wallet", "account_handle", "wallet"),
        Index("ix_ledger_entries_kind", "kind"),
    )


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), nullable=False)
    details = Column(Text, nullable=True)  # address / instructions shown to depositors
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=True)


class DepositRequest(Base):
    __tablename__ = "deposit_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_handle = Column(String(128), ForeignKey("accounts.handle"), nullable=False)

    amount = Column(MONEY, nullable=False)
    proof_ref = Column(String(512), nullable=False)
    payment_method_id = Column(Integer, ForeignKey("payment_methods.id"), nullable=True)

    status = Column(String(16), nullable=False, default=REQUEST_PENDING)  # pending / approved / rejected
    rejection_reason = Column(Text, nullable=True)
    processed_by = Column(String(128), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_deposit_requests_account", "account_handle"),
        Index("ix_deposit_requests_status", "status"),
    )


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_handle = Column(String(128), ForeignKey("accounts.handle"), nullable=False)
    entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=False, unique=True)

    amount = Column(MONEY, nullable=False)
    destination = Column(String(256), nullable=False)

    status = Column(String(16), nullable=False, default=REQUEST_PENDING)
    proof_ref = Column(String(512), nullable=True)  # admin proof-of-send
    rejection_reason = Column(Text, nullable=True)
    processed_by = Column(String(128), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_withdrawal_requests_account", "account_handle"),
        Index("ix_withdrawal_requests_status", "status"),
    )


class BotType(Base):
    __tablename__ = "bot_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), nullable=False)
    cost = Column(MONEY, nullable=False)
    daily_profit = Column(MONEY, nullable=False)
    duration_days = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=True)


class ActiveBot(Base):
    __tablename__ = "active_bots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_handle = Column(String(128), ForeignKey("accounts.handle"), nullable=False)
    bot_type_id = Column(Integer, ForeignKey("bot_types.id"), nullable=False)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)

    # copied from the bot type at purchase time
    daily_profit = Column(MONEY, nullable=False)
    duration_days = Column(Integer, nullable=False)

    accrued_days = Column(Integer, nullable=False, default=0)
    total_profit = Column(MONEY, nullable=False, default=Decimal("0"))
    status = Column(String(16), nullable=False, default=BOT_ACTIVE)  # active / expired

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_active_bots_account", "account_handle"),
        Index("ix_active_bots_status", "status"),
    )


class BotAccrual(Base):
    """One row per credited (bot, day). The unique key blocks double credit."""

    __tablename__ = "bot_accruals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bot_id = Column(Integer, ForeignKey("active_bots.id"), nullable=False)
    day_number = Column(Integer, nullable=False)  # 1..duration_days
    accrual_date = Column(String(10), nullable=False)  # ISO date the day belongs to
    entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=True)

    __table_args__ = (
        UniqueConstraint("bot_id", "day_number", name="uq_bot_accruals_bot_day"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_handle = Column(String(128), nullable=False, index=True)
    title = Column(String(256), nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String(512), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=True)
