import pytest
from werkzeug.security import generate_password_hash

from app.eventpass import create_app
from app.eventpass.db import session_scope
from app.eventpass.models import Base, User
from app.eventpass.rbac import ensure_roles_and_permissions


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PASS_SIGNING_SECRET", "test-signing-secret")

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = ensure_roles_and_permissions(s)
        u = User(email="owner@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(roles["owner"])
        s.add(u)

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_login_and_me(client):
    # Anonymous should be rejected
    r = client.get("/admin/me")
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "owner@example.com", "password": "wrong"})
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "owner@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["role"] == "owner"
    assert r.json["csrf_token"]

    r = client.get("/admin/me")
    assert r.status_code == 200
    assert "check-in.scan" in r.json["permissions"]


def test_logout_ends_session(client):
    r = client.post("/auth/login", json={"email": "owner@example.com", "password": "pw"})
    assert r.status_code == 200
    assert client.post("/auth/logout").status_code == 200
    assert client.get("/admin/me").status_code == 401


def test_unknown_route_is_json_404(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json["error"] == "Not Found"
