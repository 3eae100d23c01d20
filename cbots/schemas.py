# cbots/schemas.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


# -------- inputs --------

class RegisterIn(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    referral_code: Optional[str] = None
    language: Optional[str] = None


class VerifyEmailIn(BaseModel):
    token: str


class LoginIn(BaseModel):
    email: str
    password: str


class WithdrawalIn(BaseModel):
    amount: Decimal
    destination: str


class PurchaseBotIn(BaseModel):
    bot_type_id: int


class RejectIn(BaseModel):
    reason: Optional[str] = None


class AccountStatusIn(BaseModel):
    status: str


class BotTypeIn(BaseModel):
    name: str
    cost: Decimal
    daily_profit: Decimal
    duration_days: int


class PaymentMethodIn(BaseModel):
    name: str
    details: Optional[str] = None


class DailyTickIn(BaseModel):
    accrual_day: Optional[str] = None  # ISO date, defaults to today (UTC)


# -------- outputs --------

class MessageOut(BaseModel):
    message: str


class TokenOut(BaseModel):
    token: str
    role: str


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    handle: str
    name: Optional[str] = None
    email: Optional[str] = None
    balance: Decimal
    bonus_balance: Decimal
    referral_code: str
    referrer_handle: Optional[str] = None
    qualified_referrals: int
    has_deposited: bool
    role: str
    status: str
    created_at: Optional[datetime] = None


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    wallet: str
    kind: str
    amount: Decimal
    description: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None


class DashboardOut(BaseModel):
    account: AccountOut
    transactions: List[LedgerEntryOut]


class DepositRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_handle: str
    amount: Decimal
    proof_ref: str
    payment_method_id: Optional[int] = None
    status: str
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class WithdrawalRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_handle: str
    entry_id: int
    amount: Decimal
    destination: str
    status: str
    proof_ref: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class BotTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    cost: Decimal
    daily_profit: Decimal
    duration_days: int


class ActiveBotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bot_type_id: int
    start_date: datetime
    end_date: datetime
    daily_profit: Decimal
    duration_days: int
    accrued_days: int
    total_profit: Decimal
    status: str


class PaymentMethodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    details: Optional[str] = None


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    message: str
    link: Optional[str] = None
    is_read: bool
    created_at: Optional[datetime] = None


class AccrualResultOut(BaseModel):
    processed: int
    credited: int
    expired: int
    failed: int
    total_profit: Decimal
