import pytest
from werkzeug.security import generate_password_hash

from app.clubadmin import auth, create_app
from app.clubadmin.db import session_scope
from app.clubadmin.models import AuditEvent, Base, Permission, Role, User


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("JOBS_INLINE", "1")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    auth._login_attempts.clear()
    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        p = Permission(key="admin.view", name="Admin: view dashboard")
        r = Role(key="admin", name="Administrator")
        r.permissions.append(p)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True, state="active")
        u.roles.append(r)
        m = User(email="member@example.com", password_hash=generate_password_hash("pw"), is_active=True, state="active")
        banned = User(
            email="suspended@example.com", password_hash=generate_password_hash("pw"), is_active=True, state="suspended"
        )
        s.add_all([p, r, u, m, banned])

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com"):
    return client.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=False)


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_login_and_admin_access(client):
    # Anonymous is sent to the login page
    r = client.get("/admin/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = _login(client)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/")

    r = client.get("/admin/")
    assert r.status_code == 200
    assert b"Dashboard" in r.data


def test_bad_password_is_rejected_and_audited(app, client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "nope"}, follow_redirects=True)
    assert b"Invalid credentials." in r.data
    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").one()
        assert ev.entity_id == "admin@example.com"


def test_suspended_user_cannot_log_in(client):
    r = client.post("/auth/login", data={"email": "suspended@example.com", "password": "pw"}, follow_redirects=True)
    assert b"Invalid credentials." in r.data


def test_member_without_permission_gets_403(client):
    _login(client, "member@example.com")
    r = client.get("/admin/")
    assert r.status_code == 403
    assert b"admin.view" in r.data


def test_post_without_csrf_token_is_rejected(client):
    _login(client)
    r = client.post("/admin/posts/new", data={"title": "Hello"})
    assert r.status_code == 400
    assert b"CSRF token missing or invalid." in r.data


def test_audit_trail_lists_logins(client):
    _login(client)
    r = client.get("/admin/audit?action=auth.login")
    assert r.status_code == 200
    assert b"auth.login" in r.data

    r = client.get("/admin/audit?date_from=not-a-date")
    assert r.status_code == 200
    assert b"Invalid date format" in r.data


def test_logout_clears_session(client):
    _login(client)
    r = client.get("/auth/logout")
    assert r.status_code == 302
    r = client.get("/admin/")
    assert r.status_code == 302
