from __future__ import annotations

import datetime as dt
import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="lotty-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["UPLOADS_DIR"] = os.path.join(_TMP, "uploads")
os.environ["SWEEPER_ENABLED"] = "0"
os.environ["SEED_DEMO_DATA"] = "0"
os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from lotty import storage  # noqa: E402
from lotty.db import ENGINE, session_scope  # noqa: E402
from lotty.main import app  # noqa: E402
from lotty.models import Base, utcnow  # noqa: E402
from lotty.rate_limit import login_limiter  # noqa: E402
from lotty.security import hash_password  # noqa: E402

PASSWORD = "secret123"
_PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture(autouse=True)
def _fresh_db():
    Base.metadata.drop_all(bind=ENGINE)
    Base.metadata.create_all(bind=ENGINE)
    login_limiter.reset()
    yield


def make_user(username: str, *, role: str = "user") -> int:
    with session_scope() as db:
        user = storage.create_user(
            db,
            username=username,
            password_hash=_PASSWORD_HASH,
            full_name=username.split("@")[0].title(),
            phone="0981123456",
            role=role,
        )
        return user.id


def give_plan(user_id: int, *, days: int = 30, ends_at: dt.datetime | None = None) -> int:
    now = utcnow()
    with session_scope() as db:
        sub = storage.create_subscription(
            db,
            user_id=user_id,
            plan_type="mensual",
            start_date=now - dt.timedelta(days=60),
            end_date=ends_at or (now + dt.timedelta(days=days)),
            max_listings=-1,
        )
        return sub.id


def listing_payload(**overrides) -> dict:
    data = {
        "title": "Terreno en Luque",
        "description": "Lote esquina con todos los servicios.",
        "currency": "PYG",
        "price": 150_000_000,
        "department": "Central",
        "city": "Luque",
        "zone": "Barrio Itapuami",
        "googleMapsLink": "https://maps.google.com/?q=-25.27,-57.48",
        "landSize": 360,
        "dimensions": "12x30",
        "ownerName": "Maria Gonzalez",
        "ownerType": "owner",
        "titleStatus": "has_title",
        "phone": "0981123456",
        "paymentCondition": "cash_only",
    }
    data.update(overrides)
    return data


def make_listing(user_id: int, *, status: str = "active", **overrides) -> int:
    values = {
        "title": "Lote en Aregua",
        "description": "Vista al lago.",
        "currency": "USD",
        "price": 25_000,
        "department": "Central",
        "city": "Aregua",
        "zone": "Centro",
        "google_maps_link": "https://maps.google.com/?q=-25.31,-57.38",
        "land_size": 450,
        "dimensions": "15x30",
        "owner_name": "Carlos Benitez",
        "owner_type": "owner",
        "title_status": "has_title",
        "phone": "0971000000",
        "payment_condition": "installments",
        "status": status,
    }
    values.update(overrides)
    with session_scope() as db:
        return storage.insert_listing(db, user_id=user_id, values=values).id


def login(client: TestClient, username: str) -> TestClient:
    resp = client.post("/api/login", json={"username": username, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return client


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def client_for():
    """
    Factory: a TestClient logged in as a freshly created user.
    Returns (client, user_id).
    """

    def _make(username: str, *, role: str = "user", plan: bool = False):
        user_id = make_user(username, role=role)
        if plan:
            give_plan(user_id)
        return login(TestClient(app), username), user_id

    return _make
