from __future__ import annotations

from conftest import make_listing, make_user


def test_create_chat_is_idempotent(client_for):
    seller_id = make_user("seller@lotty.py")
    listing_id = make_listing(seller_id)
    buyer, buyer_id = client_for("buyer@lotty.py")

    first = buyer.post("/api/chats", json={"listingId": listing_id})
    assert first.status_code == 201
    assert first.json()["buyerId"] == buyer_id
    assert first.json()["sellerId"] == seller_id

    second = buyer.post("/api/chats", json={"listingId": listing_id})
    assert second.json()["id"] == first.json()["id"]


def test_cannot_open_chat_on_archived_listing(client_for):
    seller_id = make_user("seller@lotty.py")
    listing_id = make_listing(seller_id, status="archived")
    buyer, _ = client_for("buyer@lotty.py")

    resp = buyer.post("/api/chats", json={"listingId": listing_id})
    assert resp.status_code == 400
    assert resp.json()["field"] == "listingId"


def test_chat_on_missing_listing(client_for):
    buyer, _ = client_for("buyer@lotty.py")
    assert buyer.post("/api/chats", json={"listingId": 777}).status_code == 404


def test_chats_require_session(client):
    assert client.get("/api/chats").status_code == 401
    assert client.post("/api/chats", json={"listingId": 1}).status_code == 401


def test_outsiders_cannot_read_or_post(client_for):
    seller_id = make_user("seller@lotty.py")
    listing_id = make_listing(seller_id)
    buyer, _ = client_for("buyer@lotty.py")
    chat_id = buyer.post("/api/chats", json={"listingId": listing_id}).json()["id"]

    outsider, _ = client_for("outsider@lotty.py")
    assert outsider.get(f"/api/chats/{chat_id}/messages").status_code == 404
    assert outsider.post(f"/api/chats/{chat_id}/messages", json={"content": "hola"}).status_code == 404


def test_messages_flow_and_read_flags(client_for):
    seller, seller_id = client_for("seller@lotty.py")
    listing_id = make_listing(seller_id)
    buyer, buyer_id = client_for("buyer@lotty.py")
    chat_id = buyer.post("/api/chats", json={"listingId": listing_id}).json()["id"]

    for text in ("Hola, sigue disponible?", "Acepta financiación?"):
        resp = buyer.post(f"/api/chats/{chat_id}/messages", json={"content": text})
        assert resp.status_code == 201
        assert resp.json()["senderId"] == buyer_id
        assert resp.json()["read"] is False

    assert buyer.post(f"/api/chats/{chat_id}/messages", json={"content": "   "}).status_code == 400

    # The sender reading its own messages does not flip them.
    own = buyer.get(f"/api/chats/{chat_id}/messages").json()
    assert [m["read"] for m in own] == [False, False]

    seen = seller.get(f"/api/chats/{chat_id}/messages").json()
    assert [m["content"] for m in seen] == ["Hola, sigue disponible?", "Acepta financiación?"]
    assert all(m["read"] for m in seen)


def test_chat_list_shows_last_message_and_counterpart(client_for):
    seller, seller_id = client_for("seller@lotty.py")
    listing_id = make_listing(seller_id, title="Lote en San Ber")
    buyer, buyer_id = client_for("buyer@lotty.py")
    chat_id = buyer.post("/api/chats", json={"listingId": listing_id}).json()["id"]
    buyer.post(f"/api/chats/{chat_id}/messages", json={"content": "primero"})
    seller.post(f"/api/chats/{chat_id}/messages", json={"content": "segundo"})

    [item] = buyer.get("/api/chats").json()
    assert item["id"] == chat_id
    assert item["listing"]["title"] == "Lote en San Ber"
    assert item["otherUser"]["id"] == seller_id
    assert item["lastMessage"]["content"] == "segundo"

    [item] = seller.get("/api/chats").json()
    assert item["otherUser"]["id"] == buyer_id
