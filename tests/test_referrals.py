from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from cbots import ledger, lifecycle, models, referrals, yield_engine
from cbots.core.config import settings
from cbots.database import db_session, run_in_transaction
from cbots.notifications import outbox

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _set_counter(handle, value):
    def _apply(db):
        ledger.lock_account(db, handle).qualified_referrals = value

    run_in_transaction(_apply)


def _entries(handle, kind):
    with db_session() as db:
        return (
            db.query(models.LedgerEntry)
            .filter(models.LedgerEntry.account_handle == handle, models.LedgerEntry.kind == kind)
            .all()
        )


class TestMilestoneRule:
    @pytest.mark.parametrize(
        "counter, expected",
        [(0, 0), (1, 0), (99, 0), (100, 100), (101, 0), (150, 0), (200, 200), (300, 300)],
    )
    def test_milestone_reached(self, counter, expected):
        assert referrals.milestone_reached(counter, 100) == expected

    def test_custom_block_size(self):
        assert referrals.milestone_reached(10, 5) == 10
        assert referrals.milestone_reached(12, 5) == 0


class TestQualifyingDeposit:
    def test_only_first_approved_deposit_counts(self, make_account, fund, load):
        make_account("ref")
        make_account("kid", referrer="ref")

        fund("kid", "10")
        fund("kid", "25")

        assert load(models.Account, "ref").qualified_referrals == 1
        assert load(models.Account, "kid").has_deposited is True

    def test_rejected_deposit_does_not_count(self, make_account, load):
        make_account("ref")
        make_account("kid", referrer="ref")
        req = run_in_transaction(lifecycle.submit_deposit, handle="kid", amount="10", proof_ref="p")
        run_in_transaction(lifecycle.reject_deposit, request_id=req.id, reason="fake")

        assert load(models.Account, "ref").qualified_referrals == 0
        assert load(models.Account, "kid").has_deposited is False

    def test_no_referrer_is_a_no_op(self, make_account, fund, load):
        make_account("solo")
        fund("solo", "10")
        assert load(models.Account, "solo").qualified_referrals == 0

    def test_crossing_the_milestone_pays_once(self, make_account, fund, load, sink):
        make_account("ref")
        make_account("kid", referrer="ref")
        make_account("kid2", referrer="ref")
        _set_counter("ref", 99)

        fund("kid", "10")

        referrer = load(models.Account, "ref")
        assert referrer.qualified_referrals == 100
        assert referrer.balance == Decimal("15")

        bonus = _entries("ref", models.KIND_REFERRAL_MILESTONE_BONUS)
        assert len(bonus) == 1
        assert bonus[0].amount == Decimal("15")
        assert bonus[0].description == "Referral milestone reached: 100 qualified referrals"

        outbox.drain()
        titles = [e.title for e in sink.for_account("ref")]
        assert titles == ["New qualified referral", "Referral milestone reached"]

        # 101 is not a milestone
        fund("kid2", "10")
        assert load(models.Account, "ref").qualified_referrals == 101
        assert len(_entries("ref", models.KIND_REFERRAL_MILESTONE_BONUS)) == 1

        with db_session() as db:
            assert ledger.entries_balance(db, handle="ref") == Decimal("15")

    def test_milestone_bonus_is_configurable(self, make_account, fund, load, monkeypatch):
        monkeypatch.setattr(settings, "REFERRAL_MILESTONE_SIZE", 2)
        monkeypatch.setattr(settings, "REFERRAL_MILESTONE_BONUS", "7.5")
        make_account("ref")
        make_account("a", referrer="ref")
        make_account("b", referrer="ref")

        fund("a", "1")
        assert load(models.Account, "ref").balance == Decimal("0")
        fund("b", "1")
        assert load(models.Account, "ref").balance == Decimal("7.5")


class TestBotHooks:
    def test_disabled_by_default(self, make_account, fund, bot_type):
        make_account("ref")
        make_account("kid", referrer="ref")
        fund("kid", "100")
        bt = bot_type(cost="10", daily_profit="2", duration_days=10)

        bot = run_in_transaction(yield_engine.purchase_bot, handle="kid", bot_type_id=bt.id, now=START)
        run_in_transaction(yield_engine.accrue_bot, bot_id=bot.id, accrual_day=date(2024, 1, 3))

        assert _entries("ref", models.KIND_REFERRAL_FIRST_BUY_BONUS) == []
        assert _entries("ref", models.KIND_REFERRAL_PROFIT_SHARE) == []

    def test_first_buy_bonus_once(self, make_account, fund, bot_type, monkeypatch, load):
        monkeypatch.setattr(settings, "REFERRAL_FIRST_BUY_BONUS", "3")
        make_account("ref")
        make_account("kid", referrer="ref")
        fund("kid", "100")
        bt = bot_type(cost="10")

        run_in_transaction(yield_engine.purchase_bot, handle="kid", bot_type_id=bt.id, now=START)
        run_in_transaction(yield_engine.purchase_bot, handle="kid", bot_type_id=bt.id, now=START)

        bonus = _entries("ref", models.KIND_REFERRAL_FIRST_BUY_BONUS)
        assert len(bonus) == 1
        assert load(models.Account, "ref").balance == Decimal("3")

    def test_profit_share(self, make_account, fund, bot_type, monkeypatch, load):
        monkeypatch.setattr(settings, "REFERRAL_PROFIT_SHARE_PERCENT", "10")
        make_account("ref")
        make_account("kid", referrer="ref")
        fund("kid", "100")
        bt = bot_type(cost="10", daily_profit="2", duration_days=10)

        bot = run_in_transaction(yield_engine.purchase_bot, handle="kid", bot_type_id=bt.id, now=START)
        run_in_transaction(yield_engine.accrue_bot, bot_id=bot.id, accrual_day=date(2024, 1, 4))

        share = _entries("ref", models.KIND_REFERRAL_PROFIT_SHARE)
        assert len(share) == 3
        assert all(e.amount == Decimal("0.2") for e in share)
        assert load(models.Account, "ref").balance == Decimal("0.6")
