# cbots/jobs.py
"""Entry point for the platform's daily tick (cron, scheduler, etc.)."""
from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from typing import Optional, Sequence

from cbots.core.config import settings
from cbots.database import init_db
from cbots.errors import LedgerError
from cbots.notifications import build_default_sinks, outbox
from cbots.yield_engine import run_daily_bot_accrual

logger = logging.getLogger(__name__)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Settle daily bot profit")
    parser.add_argument("--date", dest="accrual_day", type=date.fromisoformat, default=None,
                        help="accrual day (YYYY-MM-DD), defaults to today UTC")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        init_db()
        outbox.sinks = build_default_sinks()
        result = run_daily_bot_accrual(accrual_day=args.accrual_day)
    except LedgerError as e:
        logger.error("Daily tick failed: %s", e)
        return 1
    finally:
        # deliver whatever the sweep queued before the process exits
        outbox.drain()

    print(
        f"processed={result.processed} credited={result.credited} "
        f"expired={result.expired} failed={result.failed} total_profit={result.total_profit}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
