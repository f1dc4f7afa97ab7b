from __future__ import annotations

import io

from conftest import make_listing, make_user

from lotty.config import max_upload_image_bytes

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _upload(c, listing_id, data=PNG, content_type="image/png", **form):
    return c.post(
        f"/api/listings/{listing_id}/images",
        files={"image": ("lote.png", io.BytesIO(data), content_type)},
        data=form,
    )


def test_owner_uploads_image_and_it_is_served(client_for):
    owner, owner_id = client_for("owner@lotty.py")
    listing_id = make_listing(owner_id)

    resp = _upload(owner, listing_id)
    assert resp.status_code == 201
    body = resp.json()
    assert body["listingId"] == listing_id
    assert body["isTitleDocument"] is False
    assert body["url"].startswith("/uploads/") and body["url"].endswith(".png")

    served = owner.get(body["url"])
    assert served.status_code == 200
    assert served.content == PNG

    detail = owner.get(f"/api/listings/{listing_id}").json()
    assert [i["url"] for i in detail["images"]] == [body["url"]]


def test_title_document_flag(client_for):
    owner, owner_id = client_for("owner@lotty.py")
    listing_id = make_listing(owner_id)
    resp = _upload(owner, listing_id, isTitle="true")
    assert resp.status_code == 201
    assert resp.json()["isTitleDocument"] is True


def test_jpg_alias_is_accepted(client_for):
    owner, owner_id = client_for("owner@lotty.py")
    listing_id = make_listing(owner_id)
    resp = _upload(owner, listing_id, data=b"\xff\xd8\xff" + b"\x00" * 16, content_type="image/jpg")
    assert resp.status_code == 201
    assert resp.json()["url"].endswith(".jpg")


def test_rejects_unsupported_type(client_for):
    owner, owner_id = client_for("owner@lotty.py")
    listing_id = make_listing(owner_id)
    resp = _upload(owner, listing_id, data=b"%PDF-1.7", content_type="application/pdf")
    assert resp.status_code == 400
    assert resp.json()["field"] == "image"


def test_rejects_oversized_file(client_for):
    owner, owner_id = client_for("owner@lotty.py")
    listing_id = make_listing(owner_id)
    resp = _upload(owner, listing_id, data=b"\x00" * (max_upload_image_bytes() + 1))
    assert resp.status_code == 400
    assert resp.json()["field"] == "image"


def test_rejects_empty_and_missing_files(client_for):
    owner, owner_id = client_for("owner@lotty.py")
    listing_id = make_listing(owner_id)
    assert _upload(owner, listing_id, data=b"").status_code == 400
    assert owner.post(f"/api/listings/{listing_id}/images", data={"isTitle": "false"}).status_code == 400


def test_only_the_owner_can_upload(client_for):
    owner_id = make_user("owner@lotty.py")
    listing_id = make_listing(owner_id)
    stranger, _ = client_for("stranger@lotty.py")
    assert _upload(stranger, listing_id).status_code == 403


def test_upload_to_missing_listing(client_for):
    owner, _ = client_for("owner@lotty.py")
    assert _upload(owner, 31337).status_code == 404
