from decimal import Decimal

import jwt
import pytest

from cbots import lifecycle, models
from cbots.core.config import settings
from cbots.database import db_session, run_in_transaction
from cbots.errors import AccountBlocked, AuthenticationError, ValidationError
from cbots.notifications import outbox
from cbots.identity import (
    ExternalUidProvider,
    PasswordTokenProvider,
    get_identity_provider,
)

SECRET = "unit-test-secret"


@pytest.fixture
def provider():
    return PasswordTokenProvider(SECRET, expires_hours=1)


def _register(provider, email="alice@example.com", **kwargs):
    return run_in_transaction(
        provider.register, name="Alice", email=email, password="s3cret!", **kwargs
    )


class TestPasswordProvider:
    def test_password_hashing(self, provider):
        hashed = provider.hash_password("s3cret!")
        assert hashed != "s3cret!"
        assert provider.check_password("s3cret!", hashed)
        assert not provider.check_password("wrong", hashed)
        assert not provider.check_password("s3cret!", None)

    def test_register_creates_unverified_account_without_bonus(self, provider, load, sink):
        account = _register(provider)

        row = load(models.Account, account.handle)
        assert row.email == "alice@example.com"
        assert row.is_verified is False
        assert row.verification_token
        assert row.bonus_balance == Decimal("0")

        outbox.drain()
        [event] = sink.for_account(account.handle)
        assert event.link.endswith(f"/email-verification.html?token={row.verification_token}")

    def test_verify_email_grants_bonus_once(self, provider, load):
        account = _register(provider)
        token = load(models.Account, account.handle).verification_token

        run_in_transaction(provider.verify_email, token)
        row = load(models.Account, account.handle)
        assert row.is_verified is True
        assert row.verification_token is None
        assert row.bonus_balance == Decimal("5")
        assert row.balance == Decimal("0")

        # token is single use
        with pytest.raises(ValidationError):
            run_in_transaction(provider.verify_email, token)
        assert load(models.Account, account.handle).bonus_balance == Decimal("5")

    def test_login_flow(self, provider):
        account = _register(provider)
        with db_session() as db:
            with pytest.raises(AuthenticationError):
                provider.login(db, email="alice@example.com", password="s3cret!")

        with db_session() as db:
            verification_token = db.get(models.Account, account.handle).verification_token
        run_in_transaction(provider.verify_email, verification_token)

        with db_session() as db:
            token = provider.login(db, email="ALICE@example.com", password="s3cret!")
            with pytest.raises(AuthenticationError):
                provider.login(db, email="alice@example.com", password="nope")

        assert provider.resolve_handle(token) == account.handle
        payload = jwt.decode(token, SECRET, algorithms=["HS256"])
        assert payload["role"] == models.ROLE_USER

    def test_blocked_account_cannot_log_in(self, provider):
        account = _register(provider)

        def _verify_and_block(db):
            row = db.get(models.Account, account.handle)
            row.is_verified = True
            row.status = models.STATUS_BLOCKED

        run_in_transaction(_verify_and_block)
        with db_session() as db:
            with pytest.raises(AccountBlocked):
                provider.login(db, email="alice@example.com", password="s3cret!")

    @pytest.mark.parametrize("credential", [None, "", "not-a-jwt"])
    def test_bad_tokens(self, provider, credential):
        with pytest.raises(AuthenticationError):
            provider.resolve_handle(credential)

    def test_token_signed_with_other_key(self, provider):
        forged = jwt.encode({"sub": "someone"}, "other-secret", algorithm="HS256")
        with pytest.raises(AuthenticationError):
            provider.resolve_handle(forged)

    def test_duplicate_email_and_bad_referral_code(self, provider):
        _register(provider)
        with pytest.raises(ValidationError):
            _register(provider)
        with pytest.raises(ValidationError):
            _register(provider, email="bob@example.com", referral_code="NOPE1234")

    def test_referral_code_links_referrer(self, provider, load):
        referrer = _register(provider)
        code = load(models.Account, referrer.handle).referral_code
        referred = _register(provider, email="bob@example.com", referral_code=code.lower())
        assert load(models.Account, referred.handle).referrer_handle == referrer.handle


class TestExternalUidProvider:
    def test_register_uses_uid_and_grants_bonus(self, load):
        provider = ExternalUidProvider()
        run_in_transaction(provider.register, name="Zed", email=None, uid="firebase-uid-1")

        row = load(models.Account, "firebase-uid-1")
        assert row.is_verified is True
        assert row.bonus_balance == Decimal("5")

        with pytest.raises(ValidationError):
            run_in_transaction(provider.register, name="Zed", email=None, uid="firebase-uid-1")

    def test_signup_bonus_can_target_main_wallet(self, load, monkeypatch):
        monkeypatch.setattr(settings, "SIGNUP_BONUS_WALLET", models.WALLET_MAIN)
        run_in_transaction(ExternalUidProvider().register, name="Yan", email=None, uid="uid-main")

        row = load(models.Account, "uid-main")
        assert row.balance == Decimal("5")
        assert row.bonus_balance == Decimal("0")

        # spendable straight away
        run_in_transaction(lifecycle.submit_withdrawal, handle="uid-main", amount="5", destination="TX")
        assert load(models.Account, "uid-main").balance == Decimal("0")

    def test_resolve_handle(self):
        provider = ExternalUidProvider()
        assert provider.resolve_handle("  uid-7 ") == "uid-7"
        with pytest.raises(AuthenticationError):
            provider.resolve_handle(" ")

    def test_admin_role_from_settings(self, load):
        run_in_transaction(ExternalUidProvider().register, name="Root", email=None, uid="admin-uid")
        assert load(models.Account, "admin-uid").role == models.ROLE_ADMIN


def test_provider_selection():
    assert isinstance(get_identity_provider("password"), PasswordTokenProvider)
    assert isinstance(get_identity_provider("external_uid"), ExternalUidProvider)
    with pytest.raises(ValueError):
        get_identity_provider("saml")
