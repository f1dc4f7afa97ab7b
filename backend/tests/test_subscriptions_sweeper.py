from __future__ import annotations

import datetime as dt
import logging
import threading

from sqlalchemy import select

from conftest import give_plan, make_listing, make_user

from lotty import storage
from lotty.db import session_scope
from lotty.models import UserSession, utcnow
from lotty.rules import check_active_subscription
from lotty.sweeper import SubscriptionSweeper, expire_lapsed_subscriptions, purge_expired_sessions


def test_plan_lapses_before_the_sweep_runs():
    user_id = make_user("seller@lotty.py")
    ends = utcnow() + dt.timedelta(days=1)
    give_plan(user_id, ends_at=ends)

    with session_scope() as db:
        assert check_active_subscription(db, user_id, now=ends - dt.timedelta(seconds=1))
        assert not check_active_subscription(db, user_id, now=ends + dt.timedelta(seconds=1))
        # Still marked active until the sweep touches it.
        assert storage.get_active_subscription(db, user_id).status == "active"


def test_user_without_plan_has_no_active_subscription():
    user_id = make_user("nobody@lotty.py")
    with session_scope() as db:
        assert not check_active_subscription(db, user_id)


def test_sweep_expires_plan_and_archives_every_listing():
    seller_id = make_user("seller@lotty.py")
    sub_id = give_plan(seller_id, ends_at=utcnow() - dt.timedelta(minutes=5))
    listing_ids = [make_listing(seller_id, status=s) for s in ("active", "pending", "rejected")]

    other_id = make_user("other@lotty.py")
    give_plan(other_id)
    other_listing = make_listing(other_id, status="active")

    with session_scope() as db:
        assert expire_lapsed_subscriptions(db) == [seller_id]

    with session_scope() as db:
        assert storage.get_active_subscription(db, seller_id) is None
        assert storage.get_latest_subscription(db, seller_id).id == sub_id
        assert storage.get_latest_subscription(db, seller_id).status == "expired"
        assert {storage.get_listing(db, i).status for i in listing_ids} == {"archived"}
        assert storage.get_listing(db, other_listing).status == "active"

        logs = storage.list_moderation_logs(db)
        assert [(e.action, e.actor_user_id, e.entity_id) for e in logs] == [("expire", None, sub_id)]


def test_sweep_is_a_no_op_when_nothing_lapsed():
    seller_id = make_user("seller@lotty.py")
    give_plan(seller_id)
    make_listing(seller_id)
    with session_scope() as db:
        assert expire_lapsed_subscriptions(db) == []


def test_archived_listing_disappears_from_public_search(client):
    seller_id = make_user("seller@lotty.py")
    give_plan(seller_id, ends_at=utcnow() - dt.timedelta(minutes=5))
    listing_id = make_listing(seller_id, status="active")
    assert [x["id"] for x in client.get("/api/listings").json()] == [listing_id]

    with session_scope() as db:
        expire_lapsed_subscriptions(db)

    assert client.get("/api/listings").json() == []
    assert client.get(f"/api/listings/{listing_id}").status_code == 404


def test_run_once_logs_and_swallows_failures(caplog):
    def boom():
        raise RuntimeError("database is locked")

    sweeper = SubscriptionSweeper(60, sweep=boom)
    with caplog.at_level(logging.ERROR, logger="lotty.sweeper"):
        assert sweeper.run_once() == []
    assert "Subscription sweep failed" in caplog.text


def test_start_and_stop_are_idempotent():
    ticked = threading.Event()

    def sweep():
        ticked.set()
        return []

    sweeper = SubscriptionSweeper(0, sweep=sweep)
    sweeper.stop()
    assert not sweeper.running

    sweeper.start()
    first = sweeper._thread
    sweeper.start()
    assert sweeper._thread is first
    assert sweeper.running
    assert ticked.wait(2)

    sweeper.stop()
    sweeper.stop()
    assert not sweeper.running


def test_loop_keeps_running_after_a_failing_tick():
    calls = []
    done = threading.Event()

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")
        done.set()
        return []

    sweeper = SubscriptionSweeper(0, sweep=flaky)
    sweeper.start()
    try:
        assert done.wait(2)
    finally:
        sweeper.stop()
    assert len(calls) >= 2


def test_lapsed_query_only_returns_past_active_plans():
    now = utcnow()
    lapsed_user = make_user("lapsed@lotty.py")
    current_user = make_user("current@lotty.py")
    lapsed_id = give_plan(lapsed_user, ends_at=now - dt.timedelta(seconds=1))
    give_plan(current_user, ends_at=now + dt.timedelta(hours=1))

    with session_scope() as db:
        assert [s.id for s in storage.list_lapsed_active_subscriptions(db, now)] == [lapsed_id]
        storage.expire_subscription(db, lapsed_id)

    with session_scope() as db:
        assert storage.list_lapsed_active_subscriptions(db, now) == []


def test_sweep_purges_expired_sessions():
    user_id = make_user("seller@lotty.py")
    now = utcnow()
    with session_scope() as db:
        storage.create_session(db, user_id=user_id, token_hash="a" * 64, expires_at=now - dt.timedelta(days=1))
        storage.create_session(db, user_id=user_id, token_hash="b" * 64, expires_at=now + dt.timedelta(days=1))

    with session_scope() as db:
        assert purge_expired_sessions(db, now=now) == 1

    with session_scope() as db:
        assert [r.token_hash for r in db.execute(select(UserSession)).scalars()] == ["b" * 64]
