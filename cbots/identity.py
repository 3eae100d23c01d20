# cbots/identity.py
"""Identity providers.

The ledger only needs a stable account handle per caller. Two ways of
getting one are supported, picked by ``AUTH_MODE``:

- ``password``: email + bcrypt password, email verification, JWT bearer
  tokens whose ``sub`` is the handle.
- ``external_uid``: an upstream identity service already authenticated the
  caller; the bearer value is its UID and is used verbatim as the handle.
"""
from __future__ import annotations

import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from sqlalchemy.orm import Session

from cbots import crud, models
from cbots.core.config import settings
from cbots.errors import AccountBlocked, AuthenticationError, ValidationError
from cbots.notifications import notify_account

logger = logging.getLogger(__name__)

AUTH_MODE_PASSWORD = "password"
AUTH_MODE_EXTERNAL_UID = "external_uid"


def _required(value: Optional[str], field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required")
    return value


class IdentityProvider(ABC):
    mode: str

    @abstractmethod
    def register(
        self,
        db: Session,
        *,
        name: Optional[str],
        email: Optional[str],
        password: Optional[str] = None,
        uid: Optional[str] = None,
        referral_code: Optional[str] = None,
        language: Optional[str] = None,
    ) -> models.Account:
        ...

    @abstractmethod
    def resolve_handle(self, credential: Optional[str]) -> str:
        """Map a bearer credential to an account handle."""


class PasswordTokenProvider(IdentityProvider):
    mode = AUTH_MODE_PASSWORD

    def __init__(self, secret_key: str, algorithm: str = "HS256", expires_hours: int = 24):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expires_hours = expires_hours

    @staticmethod
    def hash_password(password: str) -> str:
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

    @staticmethod
    def check_password(password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        return bcrypt.checkpw(password.encode(), password_hash.encode())

    def register(self, db, *, name, email, password=None, uid=None, referral_code=None, language=None):
        name = _required(name, "name")
        email = _required(email, "email")
        password = _required(password, "password")

        token = secrets.token_hex(32)
        account = crud.create_account(
            db,
            handle=uuid.uuid4().hex,
            name=name,
            email=email,
            referral_code=referral_code,
            language=language,
            password_hash=self.hash_password(password),
            verification_token=token,
            is_verified=False,
        )
        notify_account(
            db, account, "VERIFY_EMAIL_TITLE", "VERIFY_EMAIL_BODY",
            link=f"{settings.PUBLIC_BASE_URL.rstrip('/')}/email-verification.html?token={token}",
            name=name,
        )
        return account

    def verify_email(self, db: Session, token: Optional[str]) -> models.Account:
        token = _required(token, "token")
        account = (
            db.query(models.Account)
            .filter(models.Account.verification_token == token)
            .with_for_update()
            .first()
        )
        if account is None:
            raise ValidationError("invalid or expired token")

        account.is_verified = True
        account.verification_token = None
        db.flush()
        crud.grant_signup_bonus(db, account)
        return account

    def issue_token(self, account: models.Account) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=self.expires_hours)
        payload = {"sub": account.handle, "role": account.role, "exp": expire}
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def login(self, db: Session, *, email: Optional[str], password: Optional[str]) -> str:
        email = _required(email, "email")
        password = _required(password, "password")

        account = crud.get_account_by_email(db, email)
        if account is None or not self.check_password(password, account.password_hash):
            raise AuthenticationError("invalid credentials")
        if not account.is_verified:
            raise AuthenticationError("email not verified")
        if account.is_blocked:
            raise AccountBlocked("account is blocked")
        return self.issue_token(account)

    def resolve_handle(self, credential: Optional[str]) -> str:
        if not credential:
            raise AuthenticationError("missing token")
        try:
            payload = jwt.decode(credential, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("token expired") from None
        except jwt.InvalidTokenError:
            raise AuthenticationError("invalid token") from None
        handle = payload.get("sub")
        if not handle:
            raise AuthenticationError("invalid token")
        return handle


class ExternalUidProvider(IdentityProvider):
    mode = AUTH_MODE_EXTERNAL_UID

    def register(self, db, *, name, email, password=None, uid=None, referral_code=None, language=None):
        uid = _required(uid, "uid")
        account = crud.create_account(
            db,
            handle=uid,
            name=name,
            email=email,
            referral_code=referral_code,
            language=language,
            is_verified=True,
        )
        crud.grant_signup_bonus(db, account)
        return account

    def resolve_handle(self, credential: Optional[str]) -> str:
        uid = (credential or "").strip()
        if not uid:
            raise AuthenticationError("missing uid")
        return uid


def get_identity_provider(mode: Optional[str] = None) -> IdentityProvider:
    mode = (mode or settings.AUTH_MODE).strip().lower()
    if mode == AUTH_MODE_PASSWORD:
        return PasswordTokenProvider(
            settings.SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
            expires_hours=settings.JWT_EXPIRES_HOURS,
        )
    if mode == AUTH_MODE_EXTERNAL_UID:
        return ExternalUidProvider()
    raise ValueError(f"unknown AUTH_MODE: {mode}")
