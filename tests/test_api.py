"""HTTP tests for events, guests, gates, passes and check-in."""
from datetime import timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.eventpass import create_app
from app.eventpass.db import session_scope
from app.eventpass.models import Base, User
from app.eventpass.modules.events.models import Partner
from app.eventpass.modules.passes import admin as passes_admin
from app.eventpass.modules.passes.signing import SigningKeys
from app.eventpass.rbac import ensure_roles_and_permissions
from app.eventpass.utils import utcnow


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PASS_SIGNING_SECRET", "test-signing-secret")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        roles = ensure_roles_and_permissions(s)
        acme = Partner(name="Acme")
        globex = Partner(name="Globex")
        s.add_all([acme, globex])
        s.flush()
        accounts = [
            ("owner@example.com", "owner", None),
            ("admin@acme.example", "partner_admin", acme.id),
            ("staff@acme.example", "gate_staff", acme.id),
            ("admin@globex.example", "partner_admin", globex.id),
        ]
        for email, role, partner_id in accounts:
            u = User(email=email, password_hash=generate_password_hash("pw"), is_active=True, partner_id=partner_id)
            u.roles.append(roles[role])
            s.add(u)

    return app.test_client()


def _login(client, email: str) -> dict:
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _create_event(client, headers, **extra) -> dict:
    now = utcnow()
    payload = {
        "name": "Summer Gala",
        "venue": "Pier 4",
        "starts_at": (now - timedelta(hours=1)).isoformat() + "Z",
        "ends_at": (now + timedelta(days=1)).isoformat() + "Z",
        "status": "active",
    }
    payload.update(extra)
    r = client.post("/api/events", json=payload, headers=headers)
    assert r.status_code == 201, r.json
    return r.json["event"]


def _add_guest(client, headers, event_id: int, name: str, guest_type: str = "Regular") -> dict:
    r = client.post(f"/api/events/{event_id}/guests", json={"full_name": name, "type": guest_type}, headers=headers)
    assert r.status_code == 201, r.json
    return r.json["guest"]


def test_requires_login(client):
    assert client.get("/api/events").status_code == 401
    assert client.get("/admin/me").status_code == 401


def test_mutations_require_csrf_token(client):
    _login(client, "admin@acme.example")
    r = client.post("/api/events", json={"name": "No token"})
    assert r.status_code == 400
    assert "CSRF" in r.json["message"]


def test_event_is_scoped_to_partner(client):
    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)
    assert event["status"] == "active"

    r = client.get("/api/events")
    assert [e["id"] for e in r.json["events"]] == [event["id"]]

    _login(client, "admin@globex.example")
    assert client.get(f"/api/events/{event['id']}").status_code == 404
    assert client.get(f"/api/events/{event['id']}/passes").status_code == 404
    assert client.get("/api/events").json["events"] == []

    _login(client, "owner@example.com")
    assert client.get(f"/api/events/{event['id']}").status_code == 200


def test_owner_must_name_partner(client):
    h = _login(client, "owner@example.com")
    r = client.post("/api/events", json={"name": "Orphan"}, headers=h)
    assert r.status_code == 400
    assert any("partner_id" in m for m in r.json["messages"])


def test_event_validation_errors(client):
    h = _login(client, "admin@acme.example")
    r = client.post("/api/events", json={"name": "", "starts_at": "yesterday"}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "Validation Error"
    assert "Name is required." in r.json["messages"]


def test_issue_and_check_in_flow(client, monkeypatch):
    notified = []
    monkeypatch.setattr(passes_admin, "notify_check_in", lambda partner, data: notified.append(data))

    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)
    ada = _add_guest(client, h, event["id"], "Ada", "VIP")
    _add_guest(client, h, event["id"], "Grace")

    r = client.post(f"/api/events/{event['id']}/gates", json={"name": "Main", "zone": "Main"}, headers=h)
    assert r.status_code == 201
    gate = r.json["gate"]
    assert len(gate["access_code"]) == 8

    r = client.post(f"/api/events/{event['id']}/passes", json={}, headers=h)
    assert r.status_code == 201
    assert r.json["requested"] == 2
    assert r.json["generated"] == 2
    passes = {p["guest_id"]: p for p in r.json["passes"]}

    r = client.post(f"/api/events/{event['id']}/passes", json={"guest_id": ada["id"]}, headers=h)
    assert r.status_code == 409
    assert r.json["pass_id"] == passes[ada["id"]]["id"]

    h = _login(client, "staff@acme.example")
    body = {"qr_raw_value": passes[ada["id"]]["qr_payload"], "event_id": event["id"], "gate_id": gate["id"], "device_info": "Gate tablet 1"}
    r = client.post("/api/check-in", json=body, headers=h)
    assert r.status_code == 200
    assert r.json["result"] == "valid"
    assert r.json["guest"]["full_name"] == "Ada"
    assert r.json["guest"]["type"] == "VIP"

    r = client.post("/api/check-in", json=body, headers=h)
    assert r.status_code == 200
    assert r.json["result"] == "already_used"

    r = client.post("/api/check-in", json={**body, "qr_raw_value": "garbage"}, headers=h)
    assert r.json["result"] == "invalid"
    assert "guest" not in r.json

    assert [n["result"] for n in notified] == ["valid", "already_used", "invalid"]

    r = client.get(f"/api/events/{event['id']}/scan-logs?limit=2")
    assert r.status_code == 200
    assert len(r.json["logs"]) == 2
    assert r.json["pagination"] == {"limit": 2, "offset": 0, "has_more": True}
    assert r.json["logs"][0]["result"] == "invalid"

    r = client.get(f"/api/events/{event['id']}/scan-logs?result=valid")
    assert [log["result"] for log in r.json["logs"]] == ["valid"]
    assert r.json["logs"][0]["device_info"]["client"] == "Gate tablet 1"

    assert client.get(f"/api/events/{event['id']}/scan-logs?result=bogus").status_code == 400


def test_check_in_requires_fields(client):
    h = _login(client, "staff@acme.example")
    r = client.post("/api/check-in", json={"event_id": 1}, headers=h)
    assert r.status_code == 400


def test_gate_staff_cannot_issue_passes(client):
    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)

    h = _login(client, "staff@acme.example")
    r = client.post(f"/api/events/{event['id']}/passes", json={}, headers=h)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "invites.generate"


def test_revoke_pass(client):
    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)
    guest = _add_guest(client, h, event["id"], "Ada")
    r = client.post(f"/api/events/{event['id']}/passes", json={"guest_id": guest["id"]}, headers=h)
    p = r.json["passes"][0]

    r = client.post(f"/api/passes/{p['id']}/revoke", json={"reason": "duplicate"}, headers=h)
    assert r.status_code == 200
    assert r.json["pass"]["status"] == "revoked"

    r = client.post(f"/api/passes/{p['id']}/revoke", json={}, headers=h)
    assert r.status_code == 409

    r = client.post("/api/check-in", json={"qr_raw_value": p["qr_payload"], "event_id": event["id"]}, headers=h)
    assert r.json["result"] == "revoked"

    r = client.get(f"/api/events/{event['id']}/passes?status=revoked")
    assert [x["id"] for x in r.json["passes"]] == [p["id"]]


def test_anonymous_passes_endpoint(client):
    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)

    r = client.post(f"/api/events/{event['id']}/anonymous-passes", json={"count": 2, "prefix": "Door"}, headers=h)
    assert r.status_code == 201
    assert [g["full_name"] for g in r.json["guests"]] == ["Door #1", "Door #2"]

    r = client.post(f"/api/events/{event['id']}/anonymous-passes", json={"count": 0}, headers=h)
    assert r.status_code == 400

    r = client.get(f"/api/events/{event['id']}/anonymous-passes")
    assert r.json["stats"]["total"] == 2
    assert r.json["stats"]["unused"] == 2


def test_verify_gate_code(client):
    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)
    draft = _create_event(client, h, name="Later", status="draft")
    code = client.post(f"/api/events/{event['id']}/gates", json={"name": "Main"}, headers=h).json["gate"]["access_code"]
    draft_code = client.post(f"/api/events/{draft['id']}/gates", json={"name": "Main"}, headers=h).json["gate"]["access_code"]

    h = _login(client, "staff@acme.example")
    r = client.post("/api/gates/verify-code", json={"access_code": code.lower()}, headers=h)
    assert r.status_code == 200
    assert r.json["event"]["id"] == event["id"]
    assert "access_code" not in r.json["gate"]

    assert client.post("/api/gates/verify-code", json={"access_code": draft_code}, headers=h).status_code == 404
    assert client.post("/api/gates/verify-code", json={"access_code": "NOPE2345"}, headers=h).status_code == 404

    h = _login(client, "admin@globex.example")
    assert client.post("/api/gates/verify-code", json={"access_code": code}, headers=h).status_code == 404


def test_archive_and_delete_event(client):
    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)

    r = client.patch(f"/api/events/{event['id']}", json={"venue": "Dock 9", "status": "bogus"}, headers=h)
    assert r.status_code == 400
    r = client.patch(f"/api/events/{event['id']}", json={"venue": "Dock 9"}, headers=h)
    assert r.json["event"]["venue"] == "Dock 9"

    r = client.post(f"/api/events/{event['id']}/archive", json={}, headers=h)
    assert r.json["event"]["status"] == "archived"
    assert client.delete(f"/api/events/{event['id']}", headers=h).status_code == 403

    h = _login(client, "owner@example.com")
    assert client.delete(f"/api/events/{event['id']}", headers=h).status_code == 200
    assert client.get(f"/api/events/{event['id']}").status_code == 404


def test_missing_signing_secret_is_a_server_error(client):
    client.application.extensions["pass_signing_keys"] = SigningKeys()
    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)
    _add_guest(client, h, event["id"], "Ada")

    r = client.post(f"/api/events/{event['id']}/passes", json={}, headers=h)
    assert r.status_code == 500
    assert r.json["message"] == "Pass signing is not configured."


def test_accounts_and_partners_admin(client):
    h = _login(client, "owner@example.com")
    r = client.post("/admin/partners", json={"name": "Initech", "webhook_url": "https://initech.example/hook"}, headers=h)
    assert r.status_code == 201
    partner_id = r.json["partner"]["id"]
    assert client.post("/admin/partners", json={"name": "Initech"}, headers=h).status_code == 400

    r = client.post(
        "/admin/accounts",
        json={"email": "Gate@Initech.example", "password": "longenough", "role": "gate_staff", "partner_id": partner_id},
        headers=h,
    )
    assert r.status_code == 201
    assert r.json["account"]["email"] == "gate@initech.example"
    assert r.json["account"]["partner_id"] == partner_id

    r = client.post("/admin/accounts", json={"email": "x@initech.example", "password": "longenough", "role": "organizer"}, headers=h)
    assert r.status_code == 400

    r = client.get("/admin/audit?action=user.create")
    assert len(r.json["events"]) == 1

    h = _login(client, "admin@acme.example")
    emails = [a["email"] for a in client.get("/admin/accounts").json["accounts"]]
    assert emails == ["admin@acme.example", "staff@acme.example"]
    assert client.get("/admin/partners").status_code == 403


def test_import_guests(client):
    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)
    url = f"/api/events/{event['id']}/guests/import"

    rows = [
        {"full_name": "Ada", "email": "ADA@example.com", "type": "VIP"},
        {"full_name": "Grace", "phone": "+1 555 0100"},
        {"full_name": "Hedy", "type": "Media", "notes": "press pit"},
    ]
    r = client.post(url, json={"guests": rows}, headers=h)
    assert r.status_code == 201, r.json
    assert r.json["imported"] == 3
    assert [g["full_name"] for g in r.json["guests"]] == ["Ada", "Grace", "Hedy"]
    assert r.json["guests"][1]["type"] == "Regular"

    r = client.post(url, json={"guests": [{"full_name": "Linus"}, {"full_name": "", "type": "Royalty"}]}, headers=h)
    assert r.status_code == 400
    assert all(m.startswith("Row 2:") for m in r.json["messages"])
    assert len(client.get(f"/api/events/{event['id']}/guests").json["guests"]) == 3

    assert client.post(url, json={"guests": []}, headers=h).status_code == 400
    assert client.post(url, json={"guests": "Ada"}, headers=h).status_code == 400

    r = client.post(f"/api/events/{event['id']}/passes", json={}, headers=h)
    assert r.json["generated"] == 3

    h = _login(client, "admin@globex.example")
    assert client.post(url, json={"guests": rows}, headers=h).status_code == 404
    h = _login(client, "staff@acme.example")
    assert client.post(url, json={"guests": rows}, headers=h).status_code == 403


def test_partner_webhook_settings(client):
    h = _login(client, "admin@acme.example")
    acme_id = client.get("/admin/me").json["user"]["partner_id"]
    url = f"/admin/partners/{acme_id}/webhook"

    body = {"webhook_url": "https://acme.example/hooks", "webhook_secret": "whsec", "webhook_events": ["on_check_in_valid"]}
    r = client.put(url, json=body, headers=h)
    assert r.status_code == 200, r.json
    assert r.json["partner"]["webhook_url"] == "https://acme.example/hooks"
    assert r.json["partner"]["webhook_events"] == ["on_check_in_valid"]
    assert "webhook_secret" not in r.json["partner"]

    assert client.put(url, json={"webhook_url": "ftp://acme.example"}, headers=h).status_code == 400
    assert client.put(url, json={"webhook_url": "https://acme.example", "webhook_events": ["on_party"]}, headers=h).status_code == 400

    h = _login(client, "admin@globex.example")
    assert client.put(url, json=body, headers=h).status_code == 404
    h = _login(client, "staff@acme.example")
    assert client.put(url, json=body, headers=h).status_code == 403

    h = _login(client, "owner@example.com")
    r = client.put(url, json={"webhook_url": ""}, headers=h)
    assert r.status_code == 200
    assert r.json["partner"]["webhook_url"] is None
    assert r.json["partner"]["webhook_events"] == ["on_check_in_valid"]
    assert len(client.get("/admin/audit?action=partner.webhook_update").json["events"]) == 2


def test_partner_webhook_test_delivery(client, monkeypatch):
    from app.eventpass import admin as admin_mod

    calls = []

    def fake_send(url, secret, *, data=None):
        calls.append((url, secret, data))
        return True, 200, "Webhook delivered (HTTP 200)"

    monkeypatch.setattr(admin_mod, "send_test_webhook", fake_send)

    h = _login(client, "admin@acme.example")
    acme_id = client.get("/admin/me").json["user"]["partner_id"]
    url = f"/admin/partners/{acme_id}/webhook/test"

    r = client.post(url, json={}, headers=h)
    assert r.status_code == 400
    assert "webhook_url is required." in r.json["messages"]

    client.put(f"/admin/partners/{acme_id}/webhook", json={"webhook_url": "https://acme.example/hooks", "webhook_secret": "stored"}, headers=h)
    r = client.post(url, json={}, headers=h)
    assert r.json == {"success": True, "status_code": 200, "message": "Webhook delivered (HTTP 200)"}
    r = client.post(url, json={"webhook_url": "https://staging.acme.example/hooks", "webhook_secret": "draft"}, headers=h)
    assert r.status_code == 200
    assert calls == [
        ("https://acme.example/hooks", "stored", {"partner_id": acme_id}),
        ("https://staging.acme.example/hooks", "draft", {"partner_id": acme_id}),
    ]

    assert client.post(url, json={"webhook_url": "mailto:ops@acme.example"}, headers=h).status_code == 400
    h = _login(client, "admin@globex.example")
    assert client.post(url, json={}, headers=h).status_code == 404
    assert len(calls) == 2


def test_verify_pass_does_not_consume(client):
    h = _login(client, "admin@acme.example")
    event = _create_event(client, h)
    guest = _add_guest(client, h, event["id"], "Ada", "VIP")
    p = client.post(f"/api/events/{event['id']}/passes", json={"guest_id": guest["id"]}, headers=h).json["passes"][0]

    h = _login(client, "staff@acme.example")
    body = {"qr_raw_value": p["qr_payload"], "event_id": event["id"]}
    for _ in range(2):
        r = client.post("/api/passes/verify", json=body, headers=h)
        assert r.status_code == 200
        assert r.json["valid"] is True
        assert r.json["pass"]["status"] == "unused"
        assert r.json["pass"]["guest"]["full_name"] == "Ada"
    assert client.get(f"/api/events/{event['id']}/scan-logs").json["logs"] == []

    assert client.post("/api/check-in", json=body, headers=h).json["result"] == "valid"
    r = client.post("/api/passes/verify", json={"qr_raw_value": p["qr_payload"]}, headers=h)
    assert (r.json["valid"], r.json["result"]) == (False, "already_used")

    assert client.post("/api/passes/verify", json={"event_id": event["id"]}, headers=h).status_code == 400
    r = client.post("/api/passes/verify", json={"qr_raw_value": "garbage"}, headers=h)
    assert r.json == {"valid": False, "result": "invalid", "message": "Invalid pass"}

    h = _login(client, "admin@globex.example")
    assert client.post("/api/passes/verify", json=body, headers=h).status_code == 404
    r = client.post("/api/passes/verify", json={"qr_raw_value": p["qr_payload"]}, headers=h)
    assert r.json["valid"] is False
    assert "pass" not in r.json
