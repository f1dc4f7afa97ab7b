"""
Run one subscription-expiry sweep and exit.

Useful from cron when the in-process sweeper is disabled (SWEEPER_ENABLED=0):
  python backend/scripts/run_sweep.py
"""

from __future__ import annotations

import logging
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from lotty.db import session_scope  # noqa: E402
from lotty.sweeper import expire_lapsed_subscriptions, purge_expired_sessions  # noqa: E402


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
    with session_scope() as db:
        affected = expire_lapsed_subscriptions(db)
        purge_expired_sessions(db)
    print(f"Expired subscriptions for {len(affected)} user(s).")


if __name__ == "__main__":
    main()
