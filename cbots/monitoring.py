# cbots/monitoring.py
from __future__ import annotations

import time
from typing import Any, Dict, List

from sqlalchemy import func

from cbots import ledger, models
from cbots.core.config import settings
from cbots.database import db_session, ping
from cbots.notifications import outbox

OUTBOX_BACKLOG_LIMIT = 1000
DRIFT_SAMPLE_SIZE = 200


def _check(name: str, ok: bool, detail: str = "", extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
    row: Dict[str, Any] = {"name": name, "ok": bool(ok)}
    if detail:
        row["detail"] = detail
    if extra:
        row["extra"] = extra
    return row


def _config_checks() -> List[Dict[str, Any]]:
    default_key = settings.SECRET_KEY == "change-me"
    telegram = bool(settings.BOT_TOKEN and settings.LOG_TRANSACTIONS_CHAT_ID)
    return [
        _check("config:DATABASE_URL", bool(settings.DATABASE_URL)),
        _check("config:SECRET_KEY", not default_key, detail="default key in use" if default_key else ""),
        _check("config:AUTH_MODE", settings.AUTH_MODE in ("password", "external_uid"), detail=settings.AUTH_MODE),
        # optional, never fails the probe
        _check("config:telegram_sink", True, detail="enabled" if telegram else "disabled"),
    ]


def _store_check() -> Dict[str, Any]:
    t0 = time.time()
    try:
        ping()
    except Exception as e:
        return _check("db:select1", False, detail=repr(e), extra={"ms": int((time.time() - t0) * 1000)})
    return _check("db:select1", True, extra={"ms": int((time.time() - t0) * 1000)})


def _balance_drift_check() -> Dict[str, Any]:
    """Compare cached wallet balances against the sum of their entries."""
    drifted: List[str] = []
    with db_session() as db:
        sums = dict(
            db.query(models.LedgerEntry.account_handle, func.sum(models.LedgerEntry.amount))
            .filter(
                models.LedgerEntry.wallet == models.WALLET_MAIN,
                models.LedgerEntry.status != models.ENTRY_REJECTED,
            )
            .group_by(models.LedgerEntry.account_handle)
            .all()
        )
        accounts = db.query(models.Account.handle, models.Account.balance).limit(DRIFT_SAMPLE_SIZE).all()
        for handle, balance in accounts:
            if ledger.quantize_money(sums.get(handle) or 0) != ledger.quantize_money(balance or 0):
                drifted.append(handle)
    return _check(
        "ledger:balance_drift",
        not drifted,
        detail=", ".join(drifted[:10]),
        extra={"sampled": len(accounts), "drifted": len(drifted)},
    )


def run_selftest(quick: bool = True) -> dict:
    checks: List[Dict[str, Any]] = _config_checks()

    store = _store_check()
    checks.append(store)

    # deeper checks only when asked, and only against a reachable store
    if not quick:
        backlog = outbox.pending()
        checks.append(_check("notifications:outbox", backlog < OUTBOX_BACKLOG_LIMIT, extra={"pending": backlog}))
        if store["ok"]:
            checks.append(_balance_drift_check())

    status = "ok" if all(c.get("ok") for c in checks) else "degraded"
    return {"status": status, "checks": checks}
