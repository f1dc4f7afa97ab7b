"""
Subscription expiry sweep.

`expire_lapsed_subscriptions` performs one pass and `purge_expired_sessions`
drops stale session rows; `SubscriptionSweeper` runs both on a fixed interval
in a background thread, independent of request handling.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from typing import Callable

from sqlalchemy.orm import Session

from lotty import storage
from lotty.db import session_scope
from lotty.models import utcnow

logger = logging.getLogger(__name__)


def expire_lapsed_subscriptions(db: Session, *, now: dt.datetime | None = None) -> list[int]:
    """
    Mark every lapsed-but-active subscription expired and archive all
    listings of its owner, whatever their current status.

    Returns the ids of the affected users.
    """
    now = now or utcnow()
    affected: list[int] = []
    for sub in storage.list_lapsed_active_subscriptions(db, now):
        logger.info("Subscription %s expired for user %s. Archiving listings.", sub.id, sub.user_id)
        storage.expire_subscription(db, sub.id)
        archived = storage.archive_listings_for_user(db, sub.user_id)
        storage.log_moderation(
            db,
            actor_user_id=None,
            entity_type="subscription",
            entity_id=sub.id,
            action="expire",
            reason=f"{archived} listing(s) archived",
        )
        if sub.user_id not in affected:
            affected.append(int(sub.user_id))
    return affected


def purge_expired_sessions(db: Session, *, now: dt.datetime | None = None) -> int:
    removed = storage.delete_expired_sessions(db, now or utcnow())
    if removed:
        logger.info("Purged %s expired session(s)", removed)
    return removed


def _run_sweep_once() -> list[int]:
    with session_scope() as db:
        affected = expire_lapsed_subscriptions(db)
        purge_expired_sessions(db)
        return affected


class SubscriptionSweeper:
    """
    Calls `sweep` every `interval_seconds` on a daemon thread.

    A failing tick is logged and the loop waits for the next one.
    """

    def __init__(self, interval_seconds: int, *, sweep: Callable[[], list[int]] = _run_sweep_once) -> None:
        self.interval_seconds = int(interval_seconds)
        self._sweep = sweep
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="subscription-sweeper", daemon=True)
            self._thread.start()
        logger.info("Subscription sweeper started (every %ss)", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop.set()
        if thread is not None:
            thread.join(timeout=timeout)
            logger.info("Subscription sweeper stopped")

    def run_once(self) -> list[int]:
        try:
            return self._sweep()
        except Exception:
            logger.exception("Subscription sweep failed; retrying on next tick")
            return []

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
