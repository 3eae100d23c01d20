# cbots/main.py
from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session

from cbots import crud, ledger, lifecycle, models, schemas, yield_engine
from cbots.core.config import settings
from cbots.database import get_db, init_db, run_in_transaction
from cbots.errors import (
    AccountBlocked,
    AuthenticationError,
    ConflictRetryable,
    LedgerError,
    NotFound,
    ValidationError,
)
from cbots.identity import IdentityProvider, PasswordTokenProvider, get_identity_provider
from cbots.monitoring import run_selftest
from cbots.notifications import build_default_sinks, outbox
from cbots.storage import LocalBlobStore

logger = logging.getLogger(__name__)

app = FastAPI(title="CBots Ledger API")
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")

bearer = HTTPBearer(auto_error=False)


@app.on_event("startup")
async def startup_event():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # an unreachable store at startup is fatal
    init_db()
    logger.info("DB initialized")

    outbox.sinks = build_default_sinks()
    outbox.start()


@app.on_event("shutdown")
async def shutdown_event():
    # stop joins the worker thread, keep it off the event loop
    await run_in_threadpool(outbox.stop)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    headers = {"Retry-After": "1"} if isinstance(exc, ConflictRetryable) else None
    return JSONResponse(
        {"detail": exc.message, "error": exc.code},
        status_code=exc.status_code,
        headers=headers,
    )


# --------- dependencies ---------

def get_provider() -> IdentityProvider:
    return get_identity_provider()


def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore(settings.UPLOAD_DIR)


def current_handle(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    provider: IdentityProvider = Depends(get_provider),
) -> str:
    return provider.resolve_handle(credentials.credentials if credentials else None)


def current_account(handle: str = Depends(current_handle), db: Session = Depends(get_db)) -> models.Account:
    account = db.get(models.Account, handle)
    if account is None:
        raise AuthenticationError("account not registered")
    if account.is_blocked:
        raise AccountBlocked("account is blocked")
    return account


def admin_account(account: models.Account = Depends(current_account)) -> models.Account:
    if not account.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin only")
    return account


def _password_provider(provider: IdentityProvider) -> PasswordTokenProvider:
    if not isinstance(provider, PasswordTokenProvider):
        raise NotFound("not available in this auth mode")
    return provider


# --------- system ---------

@app.get("/")
async def root():
    return {"message": "CBots Ledger API is running"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    result = run_selftest(quick=True)
    return {"status": result.get("status", "unknown"), "checks": result.get("checks", [])}


@app.get("/selftest")
def selftest():
    return run_selftest(quick=False)


# --------- public catalog ---------

@app.get("/api/bots", response_model=List[schemas.BotTypeOut])
def list_bots(db: Session = Depends(get_db)):
    return yield_engine.list_bot_types(db)


@app.get("/api/payment-methods", response_model=List[schemas.PaymentMethodOut])
def list_payment_methods(db: Session = Depends(get_db)):
    return crud.list_payment_methods(db)


# --------- auth ---------

@app.post("/api/auth/register", response_model=schemas.AccountOut, status_code=status.HTTP_201_CREATED)
def register(
    body: schemas.RegisterIn,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    provider: IdentityProvider = Depends(get_provider),
):
    uid = None
    if not isinstance(provider, PasswordTokenProvider):
        uid = provider.resolve_handle(credentials.credentials if credentials else None)
    return run_in_transaction(
        lambda db: provider.register(
            db,
            name=body.name,
            email=body.email,
            password=body.password,
            uid=uid,
            referral_code=body.referral_code,
            language=body.language,
        )
    )


@app.post("/api/auth/verify-email", response_model=schemas.MessageOut)
def verify_email(body: schemas.VerifyEmailIn, provider: IdentityProvider = Depends(get_provider)):
    pw = _password_provider(provider)
    run_in_transaction(lambda db: pw.verify_email(db, body.token))
    return {"message": "email verified"}


@app.post("/api/auth/login", response_model=schemas.TokenOut)
def login(body: schemas.LoginIn, provider: IdentityProvider = Depends(get_provider), db: Session = Depends(get_db)):
    pw = _password_provider(provider)
    token = pw.login(db, email=body.email, password=body.password)
    account = crud.get_account_by_email(db, body.email)
    return {"token": token, "role": account.role}


# --------- user ---------

@app.get("/api/user/dashboard", response_model=schemas.DashboardOut)
def dashboard(account: models.Account = Depends(current_account), db: Session = Depends(get_db)):
    transactions = ledger.get_statement(db, handle=account.handle, limit=10)
    return {"account": account, "transactions": transactions}


@app.get("/api/user/deposits", response_model=List[schemas.DepositRequestOut])
def my_deposits(account: models.Account = Depends(current_account), db: Session = Depends(get_db)):
    return lifecycle.list_account_deposits(db, handle=account.handle)


@app.post("/api/user/deposits", response_model=schemas.DepositRequestOut, status_code=status.HTTP_201_CREATED)
def request_deposit(
    amount: Optional[str] = Form(None),
    payment_method_id: Optional[int] = Form(None),
    proof: Optional[UploadFile] = File(None),
    account: models.Account = Depends(current_account),
    blobs: LocalBlobStore = Depends(get_blob_store),
    db: Session = Depends(get_db),
):
    if not amount or proof is None:
        raise ValidationError("amount and proof of payment are required")
    amt = ledger.positive_amount(amount)
    # nothing is written to the blob store for a request that cannot be filed
    lifecycle.check_payment_method(db, payment_method_id)
    proof_ref = blobs.put("proofs", proof.filename, proof.file)
    return run_in_transaction(
        lifecycle.submit_deposit,
        handle=account.handle,
        amount=amt,
        proof_ref=proof_ref,
        payment_method_id=payment_method_id,
    )


@app.get("/api/user/withdrawals", response_model=List[schemas.WithdrawalRequestOut])
def my_withdrawals(account: models.Account = Depends(current_account), db: Session = Depends(get_db)):
    return lifecycle.list_account_withdrawals(db, handle=account.handle)


@app.post("/api/user/withdrawals", response_model=schemas.WithdrawalRequestOut, status_code=status.HTTP_201_CREATED)
def request_withdrawal(body: schemas.WithdrawalIn, account: models.Account = Depends(current_account)):
    return run_in_transaction(
        lifecycle.submit_withdrawal,
        handle=account.handle,
        amount=body.amount,
        destination=body.destination,
    )


@app.get("/api/user/bots", response_model=List[schemas.ActiveBotOut])
def my_bots(account: models.Account = Depends(current_account), db: Session = Depends(get_db)):
    return yield_engine.list_account_bots(db, handle=account.handle)


@app.post("/api/user/bots", response_model=schemas.ActiveBotOut, status_code=status.HTTP_201_CREATED)
def buy_bot(body: schemas.PurchaseBotIn, account: models.Account = Depends(current_account)):
    return run_in_transaction(yield_engine.purchase_bot, handle=account.handle, bot_type_id=body.bot_type_id)


@app.get("/api/user/notifications", response_model=List[schemas.NotificationOut])
def my_notifications(account: models.Account = Depends(current_account), db: Session = Depends(get_db)):
    return crud.list_notifications(db, handle=account.handle)


@app.post("/api/user/notifications/read", response_model=schemas.MessageOut)
def read_notifications(account: models.Account = Depends(current_account)):
    count = run_in_transaction(crud.mark_notifications_read, handle=account.handle)
    return {"message": f"{count} notifications marked as read"}


# --------- admin ---------

@app.get("/api/admin/deposits/pending", response_model=List[schemas.DepositRequestOut])
def pending_deposits(admin: models.Account = Depends(admin_account), db: Session = Depends(get_db)):
    return lifecycle.list_pending_deposits(db)


@app.post("/api/admin/deposits/{request_id}/approve", response_model=schemas.DepositRequestOut)
def approve_deposit(request_id: int, admin: models.Account = Depends(admin_account)):
    return run_in_transaction(lifecycle.approve_deposit, request_id=request_id, admin_handle=admin.handle)


@app.post("/api/admin/deposits/{request_id}/reject", response_model=schemas.DepositRequestOut)
def reject_deposit(request_id: int, body: schemas.RejectIn, admin: models.Account = Depends(admin_account)):
    return run_in_transaction(
        lifecycle.reject_deposit, request_id=request_id, reason=body.reason, admin_handle=admin.handle
    )


@app.get("/api/admin/withdrawals/pending", response_model=List[schemas.WithdrawalRequestOut])
def pending_withdrawals(admin: models.Account = Depends(admin_account), db: Session = Depends(get_db)):
    return lifecycle.list_pending_withdrawals(db)


@app.post("/api/admin/withdrawals/{request_id}/approve", response_model=schemas.WithdrawalRequestOut)
def approve_withdrawal(
    request_id: int,
    proof_ref: Optional[str] = Form(None),
    proof: Optional[UploadFile] = File(None),
    admin: models.Account = Depends(admin_account),
    blobs: LocalBlobStore = Depends(get_blob_store),
):
    if proof is not None:
        proof_ref = blobs.put("withdrawals", proof.filename, proof.file)
    return run_in_transaction(
        lifecycle.approve_withdrawal, request_id=request_id, proof_ref=proof_ref, admin_handle=admin.handle
    )


@app.post("/api/admin/withdrawals/{request_id}/reject", response_model=schemas.WithdrawalRequestOut)
def reject_withdrawal(request_id: int, body: schemas.RejectIn, admin: models.Account = Depends(admin_account)):
    return run_in_transaction(
        lifecycle.reject_withdrawal, request_id=request_id, reason=body.reason, admin_handle=admin.handle
    )


@app.get("/api/admin/users", response_model=List[schemas.AccountOut])
def list_users(
    limit: int = 50,
    offset: int = 0,
    admin: models.Account = Depends(admin_account),
    db: Session = Depends(get_db),
):
    return crud.list_accounts(db, limit=limit, offset=offset)


@app.get("/api/admin/users/{handle}/statement", response_model=List[schemas.LedgerEntryOut])
def user_statement(
    handle: str,
    limit: int = 50,
    admin: models.Account = Depends(admin_account),
    db: Session = Depends(get_db),
):
    crud.get_account(db, handle)
    return ledger.get_statement(db, handle=handle, limit=limit)


@app.post("/api/admin/users/{handle}/status", response_model=schemas.AccountOut)
def set_user_status(handle: str, body: schemas.AccountStatusIn, admin: models.Account = Depends(admin_account)):
    return run_in_transaction(crud.set_account_status, handle=handle, status=body.status)


@app.post("/api/admin/bot-types", response_model=schemas.BotTypeOut, status_code=status.HTTP_201_CREATED)
def create_bot_type(body: schemas.BotTypeIn, admin: models.Account = Depends(admin_account)):
    return run_in_transaction(
        yield_engine.create_bot_type,
        name=body.name,
        cost=body.cost,
        daily_profit=body.daily_profit,
        duration_days=body.duration_days,
    )


@app.post("/api/admin/payment-methods", response_model=schemas.PaymentMethodOut, status_code=status.HTTP_201_CREATED)
def create_payment_method(body: schemas.PaymentMethodIn, admin: models.Account = Depends(admin_account)):
    return run_in_transaction(crud.create_payment_method, name=body.name, details=body.details)


@app.post("/api/admin/jobs/daily-tick", response_model=schemas.AccrualResultOut)
def daily_tick(body: Optional[schemas.DailyTickIn] = None, admin: models.Account = Depends(admin_account)):
    accrual_day = None
    if body and body.accrual_day:
        try:
            accrual_day = date.fromisoformat(body.accrual_day)
        except ValueError:
            raise ValidationError("accrual_day must be an ISO date (YYYY-MM-DD)") from None
    return asdict(yield_engine.run_daily_bot_accrual(accrual_day=accrual_day))
