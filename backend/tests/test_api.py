"""HTTP contract: status codes, error bodies, idempotency and bearer auth."""
from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

import freightline.core.auth as auth_module
from freightline.core.config import Settings
from freightline.core.errors import BID_ACCESS_DENIED, LOAD_ACCESS_DENIED
from freightline.main import app


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as test_client:
        yield test_client


def _tag() -> str:
    return uuid.uuid4().hex[:8]


def _register(client, role, *, carrier_id=None, headers=None, user_id=None, email=None):
    tag = _tag()
    payload = {"email": email or f"{role}-{tag}@api.test", "name": f"{role.title()} {tag}", "role": role}
    if carrier_id:
        payload["carrier_id"] = carrier_id
    if user_id:
        payload["user_id"] = user_id
    response = client.post("/users", json=payload, headers=headers or {})
    assert response.status_code == 201, response.text
    return response.json()["user_id"]


@pytest.fixture(scope="module")
def admin(client):
    return _register(client, "admin", headers={"X-Admin-Bootstrap-Token": "bootstrap-secret"})


def _as(user_id, **extra):
    return {"X-User-ID": user_id, **extra}


def _carrier(client, admin):
    """Register and verify a carrier company, then sign up its dispatcher."""
    tag = _tag()
    email = f"dispatch-{tag}@api.test"
    created = client.post("/carriers", json={"name": f"Haulers {tag}", "dot_number": f"DOT-{tag}", "contact_email": email})
    assert created.status_code == 201, created.text
    carrier_id = created.json()["carrier_id"]
    assert client.post(f"/carriers/{carrier_id}/verify", headers=_as(admin)).status_code == 200
    return carrier_id, _register(client, "carrier", carrier_id=carrier_id, email=email)


def _posted_load(client, shipper_id):
    location = {
        "name": "Yard",
        "address": "1 Main St",
        "city": "Austin",
        "state": "TX",
        "zip_code": "78701",
        "latitude": 30.2672,
        "longitude": -97.7431,
    }
    pickup = client.post("/locations", json=location, headers=_as(shipper_id)).json()["location_id"]
    delivery = client.post("/locations", json={**location, "city": "Waco"}, headers=_as(shipper_id)).json()["location_id"]
    response = client.post(
        "/loads",
        json={"pickup_location_id": pickup, "delivery_location_id": delivery, "weight": 8000, "rate": 150000},
        headers=_as(shipper_id),
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health_and_root(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["name"] == "Freightline API"


def test_missing_caller_is_401(client):
    response = client.get("/users/me")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthenticated"


def test_cross_tenant_and_missing_loads_look_the_same(client):
    owner = _register(client, "shipper")
    outsider = _register(client, "shipper")
    load = _posted_load(client, owner)

    denied = client.get(f"/loads/{load['load_id']}", headers=_as(outsider))
    missing = client.get("/loads/LD-999999", headers=_as(outsider))

    assert denied.status_code == missing.status_code == 403
    assert denied.json() == missing.json() == {"error": "forbidden", "detail": LOAD_ACCESS_DENIED}


def test_admin_sees_real_not_found(client):
    admin = _register(client, "admin", headers={"X-Admin-Bootstrap-Token": "bootstrap-secret"})
    response = client.get("/loads/LD-999999", headers=_as(admin))
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_admin_registration_needs_bootstrap_token(client):
    response = client.post(
        "/users",
        json={"email": f"admin-{_tag()}@api.test", "name": "Nope", "role": "admin"},
        headers={"X-Admin-Bootstrap-Token": "wrong"},
    )
    assert response.status_code == 403


def test_bid_flow_over_http(client, admin):
    shipper = _register(client, "shipper")
    carrier_id, carrier = _carrier(client, admin)
    load = _posted_load(client, shipper)

    created = client.post(f"/loads/{load['load_id']}/bids", json={"amount": 140000}, headers=_as(carrier))
    assert created.status_code == 201
    bid = created.json()
    assert bid["status"] == "pending"
    assert bid["is_expired"] is False

    duplicate = client.post(f"/loads/{load['load_id']}/bids", json={"amount": 130000}, headers=_as(carrier))
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "conflict"

    listed = client.get(f"/loads/{load['load_id']}/bids", headers=_as(shipper)).json()["bids"]
    assert [item["bid_id"] for item in listed] == [bid["bid_id"]]

    accepted = client.post(f"/bids/{bid['bid_id']}/accept", json={"notes": "Deal"}, headers=_as(shipper))
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"

    detail = client.get(f"/loads/{load['load_id']}", headers=_as(carrier)).json()
    assert detail["load"]["status"] == "assigned"
    assert detail["load"]["carrier_id"] == carrier_id
    assert detail["events"][0]["event_type"] in {"bid_accepted", "carrier_assigned"}

    inbox = client.get("/notifications", headers=_as(carrier)).json()
    assert inbox["unread"] >= 2


def test_invalid_transition_is_400(client):
    shipper = _register(client, "shipper")
    load = _posted_load(client, shipper)
    response = client.post(f"/loads/{load['load_id']}/status", json={"status": "delivered"}, headers=_as(shipper))
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "invalid_state"
    assert body["details"]["allowed"] == ["assigned", "cancelled"]


def test_create_load_is_idempotent(client):
    shipper = _register(client, "shipper")
    first = _posted_load(client, shipper)
    payload = {"pickup_location_id": first["pickup_location_id"], "delivery_location_id": first["delivery_location_id"]}
    key = f"load-{_tag()}"

    one = client.post("/loads", json=payload, headers=_as(shipper, **{"Idempotency-Key": key}))
    two = client.post("/loads", json=payload, headers=_as(shipper, **{"Idempotency-Key": key}))
    three = client.post("/loads", json=payload, headers=_as(shipper))

    assert one.json()["load_id"] == two.json()["load_id"]
    assert three.json()["load_id"] != one.json()["load_id"]
    mine = client.get("/loads/mine", headers=_as(shipper)).json()
    assert len(mine) == 3


def test_history_endpoints(client):
    shipper = _register(client, "shipper")
    load = _posted_load(client, shipper)

    logged = client.post(
        f"/loads/{load['load_id']}/history",
        json={"action_type": "APPOINTMENT_SET", "details": {"description": "Dock 3 at 08:00"}},
        headers=_as(shipper),
    )
    assert logged.status_code == 201
    history = client.get(f"/loads/{load['load_id']}/history", headers=_as(shipper)).json()
    assert history[0]["history_id"] == logged.json()["history_id"]

    by_role = client.get(f"/loads/{load['load_id']}/history/by-role", headers=_as(shipper)).json()
    assert [entry["action_type"] for entry in by_role] == ["LOAD_CREATED"]
    events = client.get(f"/loads/{load['load_id']}/events", params={"limit": 1}, headers=_as(shipper)).json()
    assert events[0]["event_type"] == "appointment_set"


def test_validation_errors_are_422(client, admin):
    shipper = _register(client, "shipper")
    load = _posted_load(client, shipper)
    _, carrier = _carrier(client, admin)
    response = client.post(f"/loads/{load['load_id']}/bids", json={"amount": 0}, headers=_as(carrier))
    assert response.status_code == 422


def test_bearer_tokens_when_auth_enabled(client, monkeypatch):
    user_id = f"USR-{_tag()}"
    _register(client, "shipper", user_id=user_id)
    settings = Settings(_env_file=None, auth_enabled=True, user_tokens=f"tok-{user_id}:{user_id}")
    monkeypatch.setattr(auth_module, "get_settings", lambda: settings)

    ok = client.get("/users/me", headers={"Authorization": f"Bearer tok-{user_id}"})
    assert ok.status_code == 200
    assert ok.json()["user_id"] == user_id

    assert client.get("/users/me", headers={"Authorization": "Bearer nope"}).status_code == 401
    # The dev header alone is ignored once auth is on.
    assert client.get("/users/me", headers=_as(user_id)).status_code == 401
    mismatch = client.get("/users/me", headers={"Authorization": f"Bearer tok-{user_id}", "X-User-ID": "USR-other"})
    assert mismatch.status_code == 403


def test_failed_request_frees_its_idempotency_key(client):
    shipper = _register(client, "shipper")
    first = _posted_load(client, shipper)
    key = f"load-{_tag()}"
    headers = _as(shipper, **{"Idempotency-Key": key})

    broken = client.post("/loads", json={"pickup_location_id": "LOC-404", "delivery_location_id": "LOC-404"}, headers=headers)
    assert broken.status_code == 404

    payload = {"pickup_location_id": first["pickup_location_id"], "delivery_location_id": first["delivery_location_id"]}
    retried = client.post("/loads", json=payload, headers=headers)
    assert retried.status_code == 201
    replayed = client.post("/loads", json=payload, headers=headers)
    assert replayed.json()["load_id"] == retried.json()["load_id"]


def test_foreign_and_missing_bids_look_the_same(client, admin):
    shipper = _register(client, "shipper")
    outsider = _register(client, "shipper")
    _, carrier = _carrier(client, admin)
    load = _posted_load(client, shipper)
    bid = client.post(f"/loads/{load['load_id']}/bids", json={"amount": 99000}, headers=_as(carrier)).json()

    denied = client.get(f"/bids/{bid['bid_id']}", headers=_as(outsider))
    missing = client.get("/bids/BID-999999", headers=_as(outsider))
    assert denied.status_code == missing.status_code == 403
    assert denied.json() == missing.json() == {"error": "forbidden", "detail": BID_ACCESS_DENIED}


def test_carrier_registry_over_http(client, admin):
    tag = _tag()
    email = f"owner-{tag}@api.test"
    created = client.post("/carriers", json={"name": f"Mesa {tag}", "dot_number": f"DOT-{tag}", "contact_email": email})
    assert created.status_code == 201
    carrier_id = created.json()["carrier_id"]
    assert created.json()["is_verified"] is False

    again = client.post("/carriers", json={"name": "Copy", "dot_number": f"DOT-{tag}", "contact_email": email})
    assert again.status_code == 409

    stranger = client.post(
        "/users",
        json={"email": f"stranger-{tag}@api.test", "name": "Stranger", "role": "carrier", "carrier_id": carrier_id},
    )
    assert stranger.status_code == 403
    owner = _register(client, "carrier", carrier_id=carrier_id, email=email)

    assert client.post(f"/carriers/{carrier_id}/verify", headers=_as(owner)).status_code == 403
    verified = client.get("/carriers", params={"verified_only": True}, headers=_as(owner)).json()
    assert carrier_id not in {item["carrier_id"] for item in verified}

    truck = client.post(f"/carriers/{carrier_id}/vehicles", json={"vin": f"vin{tag}", "make": "Volvo"}, headers=_as(owner))
    assert truck.status_code == 201
    assert truck.json()["vin"] == f"VIN{tag.upper()}"
    parked = client.patch(
        f"/vehicles/{truck.json()['vehicle_id']}/status",
        json={"status": "maintenance"},
        headers=_as(owner),
    )
    assert parked.json()["status"] == "maintenance"
    listed = client.get(f"/carriers/{carrier_id}/vehicles", headers=_as(owner)).json()
    assert [item["vehicle_id"] for item in listed] == [truck.json()["vehicle_id"]]
    assert client.get(f"/carriers/{carrier_id}", headers=_as(owner)).json()["contact_email"] == email
