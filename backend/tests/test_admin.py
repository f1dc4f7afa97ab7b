from __future__ import annotations

from sqlalchemy import func, select

from conftest import give_plan, listing_payload, make_listing, make_user

from lotty.db import session_scope
from lotty.models import Subscription


def test_admin_routes_require_session(client):
    assert client.get("/api/admin/stats").status_code == 401
    assert client.get("/api/admin/users").status_code == 401


def test_admin_routes_forbid_regular_users(client_for):
    user, _ = client_for("ana@lotty.py")
    assert user.get("/api/admin/stats").status_code == 403
    assert user.get("/api/admin/logs").status_code == 403
    assert user.post("/api/admin/users/1/plan", json={"planType": "x", "durationDays": 5, "maxListings": -1}).status_code == 403


def test_reject_persists_reason(client_for):
    owner_id = make_user("owner@lotty.py")
    listing_id = make_listing(owner_id, status="pending")
    admin, _ = client_for("admin@lotty.py", role="admin")

    resp = admin.post(f"/api/admin/listings/{listing_id}/moderate", json={"action": "reject", "reason": "  Fotos borrosas "})
    assert resp.status_code == 200
    assert resp.json()["status"] == "rejected"
    assert resp.json()["rejectionReason"] == "Fotos borrosas"

    detail = admin.get(f"/api/listings/{listing_id}").json()
    assert detail["rejectionReason"] == "Fotos borrosas"


def test_approve_clears_reason(client_for):
    owner_id = make_user("owner@lotty.py")
    listing_id = make_listing(owner_id, status="rejected", rejection_reason="Sin título")
    admin, _ = client_for("admin@lotty.py", role="admin")

    resp = admin.post(f"/api/admin/listings/{listing_id}/moderate", json={"action": "approve"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "active"
    assert resp.json()["rejectionReason"] is None


def test_moderate_unknown_listing(client_for):
    admin, _ = client_for("admin@lotty.py", role="admin")
    assert admin.post("/api/admin/listings/4040/moderate", json={"action": "approve"}).status_code == 404


def test_moderate_bad_action(client_for):
    owner_id = make_user("owner@lotty.py")
    listing_id = make_listing(owner_id, status="pending")
    admin, _ = client_for("admin@lotty.py", role="admin")
    resp = admin.post(f"/api/admin/listings/{listing_id}/moderate", json={"action": "delete"})
    assert resp.status_code == 400
    assert resp.json()["field"] == "action"


def test_stats(client_for):
    admin, _ = client_for("admin@lotty.py", role="admin")
    owner_id = make_user("owner@lotty.py")
    give_plan(owner_id)
    make_listing(owner_id, status="pending")
    make_listing(owner_id, status="active")

    assert admin.get("/api/admin/stats").json() == {
        "totalUsers": 2,
        "totalListings": 2,
        "activeSubscriptions": 1,
        "pendingVerifications": 1,
    }


def test_users_list_includes_subscription(client_for):
    admin, _ = client_for("admin@lotty.py", role="admin")
    owner_id = make_user("owner@lotty.py")
    give_plan(owner_id)

    users = {u["id"]: u for u in admin.get("/api/admin/users").json()}
    assert users[owner_id]["subscription"]["status"] == "active"
    assert all("passwordHash" not in u for u in users.values())
    admin_row = next(u for u in users.values() if u["role"] == "admin")
    assert admin_row["subscription"] is None


def test_assign_plan_keeps_a_single_active_row(client_for):
    admin, _ = client_for("admin@lotty.py", role="admin")
    owner_id = make_user("owner@lotty.py")

    for days in (90, 7):
        resp = admin.post(
            f"/api/admin/users/{owner_id}/plan",
            json={"planType": "mensual", "durationDays": days, "maxListings": 10},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"
        assert resp.json()["maxListings"] == 10

    with session_scope() as db:
        active = db.execute(
            select(func.count(Subscription.id)).where(
                (Subscription.user_id == owner_id) & (Subscription.status == "active")
            )
        ).scalar_one()
    assert active == 1


def test_assign_plan_unknown_user(client_for):
    admin, _ = client_for("admin@lotty.py", role="admin")
    resp = admin.post("/api/admin/users/999/plan", json={"planType": "anual", "durationDays": 365, "maxListings": -1})
    assert resp.status_code == 404


def test_assign_plan_unlocks_listing_creation(client_for):
    admin, _ = client_for("admin@lotty.py", role="admin")
    seller, seller_id = client_for("seller@lotty.py")
    assert seller.post("/api/listings", json=listing_payload()).status_code == 403

    admin.post(f"/api/admin/users/{seller_id}/plan", json={"planType": "mensual", "durationDays": 30, "maxListings": -1})
    assert seller.post("/api/listings", json=listing_payload()).status_code == 201


def test_admin_listings_filter_by_status(client_for):
    admin, _ = client_for("admin@lotty.py", role="admin")
    owner_id = make_user("owner@lotty.py")
    pending_id = make_listing(owner_id, status="pending")
    make_listing(owner_id, status="active")

    items = admin.get("/api/admin/listings", params={"status": "pending"}).json()
    assert [x["id"] for x in items] == [pending_id]
    assert len(admin.get("/api/admin/listings").json()) == 2


def test_logs_record_moderation(client_for):
    admin, admin_id = client_for("admin@lotty.py", role="admin")
    owner_id = make_user("owner@lotty.py")
    listing_id = make_listing(owner_id, status="pending")
    admin.post(f"/api/admin/listings/{listing_id}/moderate", json={"action": "reject", "reason": "Duplicado"})

    logs = admin.get("/api/admin/logs").json()
    assert logs[0]["action"] == "reject"
    assert logs[0]["entityType"] == "listing"
    assert logs[0]["entityId"] == listing_id
    assert logs[0]["actorUserId"] == admin_id
    assert logs[0]["reason"] == "Duplicado"


def test_archived_listing_cannot_be_moderated(client_for):
    owner_id = make_user("owner@lotty.py")
    listing_id = make_listing(owner_id, status="archived")
    admin, _ = client_for("admin@lotty.py", role="admin")

    for action in ("approve", "reject"):
        resp = admin.post(f"/api/admin/listings/{listing_id}/moderate", json={"action": action})
        assert resp.status_code == 400
        assert resp.json()["field"] == "action"

    assert admin.get(f"/api/listings/{listing_id}").json()["status"] == "archived"
    assert admin.get("/api/admin/logs").json() == []
