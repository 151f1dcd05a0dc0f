"""HTTP surface: status codes, field aliases and the admin API."""

import pytest

from accounts import PasswordHasher
from app import create_app
from db import LICENSES, USERS, StoreError

ADMIN = {"X-Admin-Key": "test-admin-key"}


def test_home(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True).endswith("OK")


def test_login_binds_then_authorizes(client, provision):
    key = provision("HAMSTER-7D-XYZ")
    first = client.post("/login", json={"identity": "alice", "license_key": key, "device_id": "dev1"})
    assert first.status_code == 200
    body = first.get_json()
    assert body == {
        "allowed": True,
        "reason": "bound_ok",
        "message": "License activated on this device",
        "expires_at": "2024-01-08",
        "duration_days": 7,
    }

    again = client.post("/login", json={"username": "alice", "licenseKey": key, "hwid": "dev1"})
    assert again.status_code == 200
    assert again.get_json()["reason"] == "login_ok"


def test_login_status_codes(client, provision, clock):
    key = provision("HAMSTER-7D-XYZ")
    client.post("/login", json={"email": "alice", "key": key, "deviceId": "dev1"})

    resp = client.post("/login", json={"email": "alice", "key": key, "deviceId": "dev2"})
    assert resp.status_code == 403
    assert resp.get_json()["reason"] == "device_mismatch"

    resp = client.post("/login", json={"email": "bob", "key": key, "deviceId": "dev1"})
    assert resp.status_code == 403
    assert resp.get_json()["reason"] == "identity_mismatch"

    resp = client.post("/login", json={"email": "alice", "key": "NOPE", "deviceId": "dev1"})
    assert resp.status_code == 404
    assert resp.get_json()["reason"] == "invalid_key"

    clock.set(2024, 1, 8)
    resp = client.post("/login", json={"email": "alice", "key": key, "deviceId": "dev1"})
    assert resp.status_code == 403
    assert resp.get_json()["reason"] == "expired"
    assert resp.get_json()["expires_at"] == "2024-01-08"


def test_login_missing_fields(client):
    resp = client.post("/login", json={"identity": "alice"})
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "missing_fields"
    assert client.post("/login", data="not json").status_code == 400


def test_login_store_outage_is_503(client, store, monkeypatch):
    def boom(*a, **kw):
        raise StoreError("down")

    monkeypatch.setattr(store, "get", boom)
    resp = client.post("/login", json={"identity": "alice", "license_key": "K", "device_id": "dev1"})
    assert resp.status_code == 503
    body = resp.get_json()
    assert body["allowed"] is False
    assert body["reason"] == "store_error"


def test_register_and_login_routes(client, provision):
    key = provision("PLAIN-KEY")
    reg = client.post("/register", json={
        "username": "alice", "password": "pw", "license_key": key, "device_id": "dev1",
    })
    assert reg.status_code == 201
    assert reg.get_json()["reason"] == "registered"

    dup = client.post("/register", json={
        "username": "alice", "password": "pw", "license_key": key, "device_id": "dev1",
    })
    assert dup.status_code == 409

    bad = client.post("/auth/login", json={"username": "alice", "password": "x", "device_id": "dev1"})
    assert bad.status_code == 401
    assert bad.get_json()["reason"] == "bad_password"

    ok = client.post("/auth/login", json={"username": "alice", "password": "pw", "device_id": "dev1"})
    assert ok.status_code == 200
    assert ok.get_json()["license"]["reason"] == "login_ok"


def test_register_with_unknown_key_is_404(client):
    resp = client.post("/register", json={
        "username": "alice", "password": "pw", "license_key": "NOPE", "device_id": "dev1",
    })
    assert resp.status_code == 404
    assert resp.get_json()["reason"] == "license_rejected"


def test_verify_device(client, identity_provider):
    payload = {"uid": "uid-1", "deviceId": "dev1", "email": "a@x.com"}
    assert client.post("/verifyDevice", json=payload).status_code == 200
    assert client.post("/verifyDevice", json=payload).get_json()["reason"] == "authorized"

    resp = client.post("/verifyDevice", json={**payload, "deviceId": "dev2"})
    assert resp.status_code == 403
    assert identity_provider.revoked == ["uid-1"]

    assert client.post("/verifyDevice", json={**payload, "uid": "ghost"}).status_code == 400
    assert client.post("/verifyDevice", json={"uid": "uid-1"}).status_code == 400


def test_verify_device_without_provider(store, clock):
    client = create_app(store=store, clock=clock).test_client()
    resp = client.post("/verifyDevice", json={"uid": "uid-1", "deviceId": "dev1", "email": "a@x.com"})
    assert resp.status_code == 501


# ------------------ Admin API ------------------

def test_admin_requires_key(client):
    assert client.post("/issue", json={"license_key": "K"}).status_code == 401
    assert client.post("/issue", json={"license_key": "K"}, headers={"X-Admin-Key": "bad"}).status_code == 401
    assert client.post("/suspend", json={"license_key": "K"}).status_code == 401
    assert client.get("/admin/logs?license_key=K").status_code == 401


def test_issue_provisions_unbound_license(client, store):
    resp = client.post("/issue", json={"license_key": "HAMSTER-30D-NEW"}, headers=ADMIN)
    assert resp.status_code == 201
    record = store.get(LICENSES, "HAMSTER-30D-NEW")
    assert record == {"active": True, "duration_days": 30}

    again = client.post("/issue", json={"license_key": "HAMSTER-30D-NEW"}, headers=ADMIN)
    assert again.status_code == 409


def test_issue_with_explicit_expiry(client, store):
    resp = client.post("/issue", json={"license_key": "PLAIN", "expires_at": "2024-06-30"}, headers=ADMIN)
    assert resp.status_code == 201
    assert store.get(LICENSES, "PLAIN")["expires_at"] == "2024-06-30"


def test_issue_rejects_bad_fields(client):
    assert client.post("/issue", json={}, headers=ADMIN).status_code == 400
    assert client.post("/issue", json={"license_key": "K", "duration_days": "0"}, headers=ADMIN).status_code == 400
    assert client.post("/issue", json={"license_key": "K", "expires_at": "soon"}, headers=ADMIN).status_code == 400


@pytest.mark.parametrize("days", [True, 1.9, "1.9", "-3", 10**12])
def test_issue_rejects_non_integer_or_huge_duration(client, store, days):
    resp = client.post("/issue", json={"license_key": "PLAIN-D", "duration_days": days}, headers=ADMIN)
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "invalid_field"
    assert store.get(LICENSES, "PLAIN-D") is None


def test_issue_accepts_digit_string_duration(client, store):
    resp = client.post("/issue", json={"license_key": "PLAIN-D", "duration_days": "45"}, headers=ADMIN)
    assert resp.status_code == 201
    assert store.get(LICENSES, "PLAIN-D")["duration_days"] == 45


def test_auth_login_with_user_missing_license_key_is_503(client, store):
    store.upsert(USERS, "bob", {"password_digest": PasswordHasher().hash("pw"),
                                "bound_device_id": "dev1"})
    resp = client.post("/auth/login", json={"username": "bob", "password": "pw", "device_id": "dev1"})
    assert resp.status_code == 503
    assert resp.get_json()["reason"] == "store_error"


def test_suspend_blocks_login(client, provision):
    key = provision("PLAIN-S")
    client.post("/login", json={"identity": "alice", "license_key": key, "device_id": "dev1"})
    assert client.post("/suspend", json={"license_key": key}, headers=ADMIN).status_code == 200
    resp = client.post("/login", json={"identity": "alice", "license_key": key, "device_id": "dev1"})
    assert resp.status_code == 403
    assert resp.get_json()["reason"] == "inactive"
    assert client.post("/suspend", json={"license_key": "NOPE"}, headers=ADMIN).status_code == 404


def test_admin_logs(client, provision):
    key = provision("PLAIN-L")
    client.post("/login", json={"identity": "alice", "license_key": key, "device_id": "dev1"})
    client.post("/login", json={"identity": "alice", "license_key": key, "device_id": "dev2"})
    resp = client.get(f"/admin/logs?license_key={key}", headers=ADMIN)
    assert resp.status_code == 200
    assert [e["type"] for e in resp.get_json()["logs"]] == ["first_activation", "hwid_mismatch"]
