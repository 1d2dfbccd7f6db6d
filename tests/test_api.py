import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from csrf import generate_csrf_token, validate_csrf_token
from database import Base
from models import User
from services import IpBlockService, get_current_user_id
from tasks import build_task_manager


@pytest.fixture
def factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        session.add(User(id=get_current_user_id(), username="owner", is_admin=True))
        session.commit()
    return factory


@pytest.fixture
def client(factory, monkeypatch):
    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(main, "SessionLocal", factory)
    monkeypatch.setattr(main, "task_manager", build_task_manager(factory))
    main.app.dependency_overrides[main.get_db] = override_get_db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _report(client, **params):
    params.setdefault("start", "2024-01-01")
    params.setdefault("end", "2024-01-31")
    response = client.get("/api/reports/budget", params=params)
    assert response.status_code == 200
    return response.json()


def test_budget_report_reflects_new_postings(client):
    category = client.post(
        "/api/categories", json={"name": "Food", "monthly_budget_cents": 20000}
    ).json()
    client.post(
        "/api/postings",
        json={"booking_date": "2024-01-05", "amount_cents": -1500, "category_id": category["id"]},
    )
    first = _report(client)
    assert first["months"][0]["categories"][0]["spent_cents"] == -1500

    created = client.post(
        "/api/postings",
        json={"booking_date": "2024-01-20", "amount_cents": -500, "category_id": category["id"]},
    )
    assert created.status_code == 201
    assert created.json()["valuta_date"] == "2024-01-20"

    second = _report(client)
    assert second["months"][0]["categories"][0]["spent_cents"] == -2000


def test_posting_update_and_delete(client):
    posting = client.post(
        "/api/postings", json={"booking_date": "2024-01-05", "amount_cents": -100}
    ).json()

    updated = client.put(
        f"/api/postings/{posting['id']}",
        json={"booking_date": "2024-02-05", "amount_cents": -300},
    )
    assert updated.status_code == 200
    assert updated.json()["amount_cents"] == -300

    assert client.delete(f"/api/postings/{posting['id']}").status_code == 204
    assert client.get(f"/api/postings/{posting['id']}").status_code == 404


def test_postings_list_and_export(client):
    client.post(
        "/api/postings",
        json={"booking_date": "2024-01-05", "amount_cents": -100, "subject": "Coffee"},
    )
    params = {"period": "custom", "start": "2024-01-01", "end": "2024-01-31"}

    listing = client.get("/api/postings", params=params).json()
    assert [item["subject"] for item in listing["items"]] == ["Coffee"]
    assert listing["has_more"] is False

    export = client.get("/api/postings/export.csv", params=params)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "Coffee" in export.text


def test_inverted_report_range_is_bad_request(client):
    response = client.get(
        "/api/reports/budget", params={"start": "2024-02-01", "end": "2024-01-01"}
    )
    assert response.status_code == 400


def test_refresh_task_can_be_polled(client):
    _report(client)
    assert client.post("/api/report-cache/mark-all").json() == {"marked": 1}

    started = client.post("/api/report-cache/refresh")
    assert started.status_code == 202
    task_id = started.json()["id"]

    status = client.get(f"/api/tasks/{task_id}").json()
    assert status["state"] == "completed"
    assert status["processed"] == 1
    assert client.get("/api/tasks/unknown").status_code == 404

    assert client.delete("/api/report-cache").json() == {"removed": 1}


def test_ip_block_routes_require_csrf_and_reject_blocked_clients(client):
    payload = {"ip_address": "203.0.113.5", "reason": "brute force"}
    assert client.post("/api/admin/ip-blocks", json=payload).status_code == 400

    token = client.get("/api/csrf-token").json()["csrf_token"]
    created = client.post(
        "/api/admin/ip-blocks", json=payload, headers={"X-CSRF-Token": token}
    )
    assert created.status_code == 201
    assert created.json()["is_blocked"] is True

    block_id = created.json()["id"]
    unblocked = client.post(
        f"/api/admin/ip-blocks/{block_id}/unblock", headers={"X-CSRF-Token": token}
    )
    assert unblocked.json()["is_blocked"] is False

    notifications = client.get("/api/notifications").json()
    assert notifications[0]["type"] == "system_alert"


def test_notification_settings_roundtrip(client):
    response = client.put(
        "/api/users/me/notification-settings",
        json={
            "monthly_reminder_enabled": True,
            "monthly_reminder_hour": 7,
            "timezone": "Europe/Berlin",
            "holiday_country_code": "de",
        },
    )
    assert response.status_code == 200
    assert response.json()["holiday_country_code"] == "DE"

    bad = client.put(
        "/api/users/me/notification-settings",
        json={"monthly_reminder_hour": 24},
    )
    assert bad.status_code == 422


def test_csrf_token_is_bound_to_user():
    token = generate_csrf_token(7)
    assert validate_csrf_token(token, 7)
    assert not validate_csrf_token(token, 8)
    assert not validate_csrf_token("garbage", 7)


def test_blocked_peer_is_rejected_whatever_headers_it_sends(client, factory):
    with factory() as session:
        IpBlockService(session).block_by_address("testclient", reason="manual")

    blocked = client.get("/api/accounts")
    assert blocked.status_code == 403
    assert blocked.json() == {"detail": "Access from this IP is blocked"}

    spoofed = client.get("/api/accounts", headers={"X-Forwarded-For": "198.51.100.1"})
    assert spoofed.status_code == 403

    with factory() as session:
        service = IpBlockService(session)
        service.unblock(service.list()[0].id)
    assert client.get("/api/accounts").status_code == 200


def test_forwarded_header_does_not_block_the_peer(client):
    token = client.get("/api/csrf-token").json()["csrf_token"]
    client.post(
        "/api/admin/ip-blocks",
        json={"ip_address": "203.0.113.5"},
        headers={"X-CSRF-Token": token},
    )

    response = client.get("/api/accounts", headers={"X-Forwarded-For": "203.0.113.5"})
    assert response.status_code == 200


def test_admin_can_block_an_address_directly(client):
    token = client.get("/api/csrf-token").json()["csrf_token"]
    response = client.post(
        "/api/admin/ip-blocks/by-address",
        json={"ip_address": "192.0.2.44", "reason": "scanner"},
        headers={"X-CSRF-Token": token},
    )
    assert response.status_code == 200
    assert response.json()["is_blocked"] is True
    assert response.json()["block_reason"] == "scanner"

    blank = client.post(
        "/api/admin/ip-blocks/by-address",
        json={"ip_address": "   "},
        headers={"X-CSRF-Token": token},
    )
    assert blank.status_code == 400


def test_admin_announcement_reaches_every_user(client):
    token = client.get("/api/csrf-token").json()["csrf_token"]
    response = client.post(
        "/api/admin/notifications",
        json={"title": "Maintenance", "message": "Down at noon", "scheduled_date": "2024-01-01"},
        headers={"X-CSRF-Token": token},
    )
    assert response.status_code == 201

    titles = [n["title"] for n in client.get("/api/notifications").json()]
    assert titles == ["Maintenance"]
