"""Tests for the members module (/admin/users)."""
import csv
import io
from datetime import datetime, timedelta

import pytest
from cryptography.fernet import Fernet
from werkzeug.datastructures import MultiDict
from werkzeug.security import generate_password_hash

from app.clubadmin import auth, create_app
from app.clubadmin.db import session_scope
from app.clubadmin.models import BackgroundJob, Base, Permission, Role, User
from app.clubadmin.modules.expense_reports.service import save_bank_account
from app.clubadmin.modules.members.models import SignupApplication, Subscription
from app.clubadmin.modules.members.service import InvalidListParams, parse_list_params


def _seed_all_permissions(s):
    perm_keys = [
        ("admin.view", "Admin: view dashboard"),
        ("users.view", "Members: view"),
        ("users.edit", "Members: edit"),
        ("users.review", "Members: review applications"),
        ("users.export", "Members: export CSV"),
        ("bank_accounts.unseal", "Bank accounts: view full numbers"),
    ]
    perms = {}
    for key, name in perm_keys:
        p = Permission(key=key, name=name)
        s.add(p)
        perms[key] = p
    return perms


def _user(email, **kw):
    kw.setdefault("state", "active")
    return User(email=email, password_hash=generate_password_hash("pw"), is_active=True, **kw)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("JOBS_INLINE", "1")
    monkeypatch.setenv("BANK_ACCOUNT_KEY", Fernet.generate_key().decode())
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    auth._login_attempts.clear()
    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = _seed_all_permissions(s)
        admin_role = Role(key="admin", name="Administrator")
        admin_role.permissions.extend(perms.values())
        viewer_role = Role(key="viewer", name="Viewer")
        viewer_role.permissions.extend([perms["admin.view"], perms["users.view"]])

        admin = _user("admin@example.com", first_name="Ada", last_name="Admin", role="admin")
        admin.roles.append(admin_role)
        viewer = _user("viewer@example.com", first_name="Vic", last_name="Viewer")
        viewer.roles.append(viewer_role)

        now = datetime.utcnow()
        single = _user("single@example.com", first_name="Sam", last_name="Single", phone_number="555-0100")
        family = _user("family@example.com", first_name="Fay", last_name="Family")
        pending = _user("pending@example.com", first_name="Pat", last_name="Pending", state="pending_approval")
        gone = _user("gone@example.com", first_name="Gone", last_name="Away", state="deleted")
        s.add_all([admin_role, viewer_role, admin, viewer, single, family, pending, gone])
        s.flush()
        s.add_all(
            [
                Subscription(
                    user_id=single.id,
                    plan_type="single",
                    status="active",
                    current_period_start=now,
                    current_period_end=now + timedelta(days=365),
                ),
                Subscription(
                    user_id=family.id,
                    plan_type="family",
                    status="active",
                    current_period_start=now,
                    current_period_end=now + timedelta(days=365),
                ),
                SignupApplication(user_id=pending.id, membership_type="single", answers={"How did you hear about us?": "A friend"}),
            ]
        )

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com"):
    client.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=True)
    with client.session_transaction() as sess:
        return sess["csrf_token"]


def _user_id(app, email):
    with session_scope(app) as s:
        return s.query(User).filter(User.email == email).one().id


# ---------- list ----------
def test_users_list_requires_auth(client):
    r = client.get("/admin/users")
    assert r.status_code in (302, 403)


def test_users_list_hides_deleted_by_default(client):
    _login(client)
    r = client.get("/admin/users")
    assert r.status_code == 200
    assert b"single@example.com" in r.data
    assert b"gone@example.com" not in r.data

    r = client.get("/admin/users?state=deleted")
    assert b"gone@example.com" in r.data
    assert b"single@example.com" not in r.data


def test_users_list_search_and_membership_filter(client):
    _login(client)
    r = client.get("/admin/users?search=555-0100")
    assert b"single@example.com" in r.data
    assert b"family@example.com" not in r.data

    r = client.get("/admin/users?membership_type=family")
    assert b"family@example.com" in r.data
    assert b"single@example.com" not in r.data

    r = client.get("/admin/users?membership_type=none&state=pending_approval")
    assert b"pending@example.com" in r.data


def test_users_list_invalid_params_redirect_to_unfiltered_list(client):
    _login(client)
    r = client.get("/admin/users?page_size=5000")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/users")

    r = client.get("/admin/users?order_by=password_hash")
    assert r.status_code == 302


def test_parse_list_params():
    params = parse_list_params(
        MultiDict([("page", "2"), ("state", "active"), ("state", "suspended"), ("order_direction", "desc")])
    )
    assert params.page == 2
    assert params.filters["state"] == ["active", "suspended"]
    assert params.order_direction == "desc"

    with pytest.raises(InvalidListParams):
        parse_list_params(MultiDict([("state", "sleeping")]))
    with pytest.raises(InvalidListParams):
        parse_list_params(MultiDict([("page", "zero")]))


# ---------- review ----------
def test_approve_pending_user(app, client):
    token = _login(client)
    uid = _user_id(app, "pending@example.com")
    r = client.get("/admin/users/review")
    assert b"pending@example.com" in r.data
    assert b"A friend" in r.data

    r = client.post(f"/admin/users/{uid}/approve", data={"csrf_token": token}, follow_redirects=True)
    assert b"User was approved and is now a member!" in r.data
    with session_scope(app) as s:
        assert s.get(User, uid).state == "active"
        application = s.query(SignupApplication).filter(SignupApplication.user_id == uid).one()
        assert application.review_outcome == "approved"


def test_deny_pending_user(app, client):
    token = _login(client)
    uid = _user_id(app, "pending@example.com")
    r = client.post(f"/admin/users/{uid}/deny", data={"csrf_token": token}, follow_redirects=True)
    assert b"User application was rejected!" in r.data
    with session_scope(app) as s:
        assert s.get(User, uid).state == "rejected"


def test_approve_non_pending_user_fails(app, client):
    token = _login(client)
    uid = _user_id(app, "single@example.com")
    r = client.post(f"/admin/users/{uid}/approve", data={"csrf_token": token}, follow_redirects=True)
    assert b"Something went wrong" in r.data


# ---------- detail / edit ----------
def test_update_user(app, client):
    token = _login(client)
    uid = _user_id(app, "single@example.com")
    r = client.post(
        f"/admin/users/{uid}",
        data={
            "csrf_token": token,
            "email": "Sam@Example.com",
            "first_name": "Samuel",
            "last_name": "Single",
            "state": "active",
            "role": "member",
            "board_position": "treasurer",
        },
        follow_redirects=True,
    )
    assert b"User updated" in r.data
    with session_scope(app) as s:
        u = s.get(User, uid)
        assert u.email == "sam@example.com"
        assert u.first_name == "Samuel"
        assert u.board_position == "treasurer"


def test_update_user_validation_errors(app, client):
    token = _login(client)
    uid = _user_id(app, "single@example.com")
    r = client.post(
        f"/admin/users/{uid}",
        data={"csrf_token": token, "email": "not-an-email", "first_name": "", "last_name": "Single"},
        follow_redirects=True,
    )
    assert b"Failed to save" in r.data
    with session_scope(app) as s:
        assert s.get(User, uid).email == "single@example.com"


def test_award_lifetime_cancels_subscription(app, client):
    token = _login(client)
    uid = _user_id(app, "single@example.com")
    r = client.post(
        f"/admin/users/{uid}/lifetime",
        data={"csrf_token": token, "has_lifetime": "true", "awarded_at": "2024-05-01"},
        follow_redirects=True,
    )
    assert b"Lifetime membership awarded and active subscription cancelled" in r.data
    with session_scope(app) as s:
        u = s.get(User, uid)
        assert u.lifetime_membership_awarded_at == datetime(2024, 5, 1)
        sub = s.query(Subscription).filter(Subscription.user_id == uid).one()
        assert sub.status == "cancelled"

    r = client.post(
        f"/admin/users/{uid}/lifetime", data={"csrf_token": token, "has_lifetime": "false"}, follow_redirects=True
    )
    assert b"Lifetime membership revoked" in r.data


def test_award_lifetime_invalid_date(app, client):
    token = _login(client)
    uid = _user_id(app, "single@example.com")
    r = client.post(
        f"/admin/users/{uid}/lifetime",
        data={"csrf_token": token, "has_lifetime": "true", "awarded_at": "05/01/2024"},
        follow_redirects=True,
    )
    assert b"Invalid date format" in r.data


def test_change_membership_type(app, client):
    token = _login(client)
    uid = _user_id(app, "single@example.com")
    r = client.post(
        f"/admin/users/{uid}/membership-type",
        data={"csrf_token": token, "membership_type": "family"},
        follow_redirects=True,
    )
    assert b"Membership type changed from Single to Family" in r.data
    with session_scope(app) as s:
        sub = s.query(Subscription).filter(Subscription.user_id == uid).one()
        assert sub.plan_type == "family"

    r = client.post(
        f"/admin/users/{uid}/membership-type",
        data={"csrf_token": token, "membership_type": "platinum"},
        follow_redirects=True,
    )
    assert b"Invalid membership type selected" in r.data

    r = client.post(
        f"/admin/users/{uid}/membership-type", data={"csrf_token": token, "membership_type": ""}, follow_redirects=True
    )
    assert b"Please select a membership type" in r.data


def test_change_membership_type_without_subscription(app, client):
    token = _login(client)
    uid = _user_id(app, "pending@example.com")
    r = client.post(
        f"/admin/users/{uid}/membership-type",
        data={"csrf_token": token, "membership_type": "family"},
        follow_redirects=True,
    )
    assert b"User does not have an active subscription to change" in r.data


def test_update_membership_period(app, client):
    token = _login(client)
    uid = _user_id(app, "family@example.com")
    r = client.post(
        f"/admin/users/{uid}/membership-period",
        data={"csrf_token": token, "period_end_date": "nope"},
        follow_redirects=True,
    )
    assert b"Invalid date format" in r.data

    r = client.post(
        f"/admin/users/{uid}/membership-period",
        data={"csrf_token": token, "period_end_date": "2030-01-31"},
        follow_redirects=True,
    )
    assert b"Membership period updated successfully" in r.data
    with session_scope(app) as s:
        sub = s.query(Subscription).filter(Subscription.user_id == uid).one()
        assert sub.current_period_end == datetime(2030, 1, 31)

    pending_id = _user_id(app, "pending@example.com")
    r = client.post(
        f"/admin/users/{pending_id}/membership-period",
        data={"csrf_token": token, "period_end_date": "2030-01-31"},
        follow_redirects=True,
    )
    assert b"No active subscription found" in r.data


# ---------- bank account unseal ----------
def _add_bank_account(app, email):
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == email).one()
        account = save_bank_account(
            s, u, {"routing_number": "011000015", "account_number": "123456789"}, key=app.config["BANK_ACCOUNT_KEY"]
        )
        return u.id, account.id


def test_treasurer_can_unseal_bank_account(app, client):
    uid, account_id = _add_bank_account(app, "single@example.com")
    token = _login(client)
    r = client.get(f"/admin/users/{uid}")
    assert b"ending in 6789" in r.data
    assert b"123456789" not in r.data

    r = client.post(f"/admin/users/{uid}/bank-account/{account_id}/unseal", data={"csrf_token": token})
    assert r.status_code == 200
    assert b"011000015" in r.data
    assert b"123456789" in r.data


def test_non_treasurer_cannot_unseal(app, client):
    uid, account_id = _add_bank_account(app, "single@example.com")
    token = _login(client, "viewer@example.com")
    r = client.post(
        f"/admin/users/{uid}/bank-account/{account_id}/unseal", data={"csrf_token": token}, follow_redirects=True
    )
    assert b"Unauthorized" in r.data
    assert b"123456789" not in r.data


def test_unseal_wrong_account_not_found(app, client):
    uid, account_id = _add_bank_account(app, "single@example.com")
    other = _user_id(app, "family@example.com")
    token = _login(client)
    r = client.post(
        f"/admin/users/{other}/bank-account/{account_id}/unseal", data={"csrf_token": token}, follow_redirects=True
    )
    assert b"Bank account not found" in r.data


# ---------- export ----------
def test_export_users_csv(app, client, tmp_path):
    token = _login(client)
    r = client.post(
        "/admin/users/export",
        data={"csrf_token": token, "fields": ["email", "first_name"], "only_subscribers": "true"},
    )
    assert r.status_code == 302
    job_id = int(r.headers["Location"].rstrip("/").rsplit("/", 1)[-1])

    r = client.get(f"/admin/users/export/{job_id}/status")
    assert r.json["status"] == "complete"
    assert r.json["done"] is True

    r = client.get(f"/admin/users/export/{job_id}/download")
    assert r.status_code == 200
    rows = list(csv.reader(io.StringIO(r.data.decode("utf-8"))))
    assert rows[0] == ["Email", "First Name"]
    emails = sorted(row[0] for row in rows[1:])
    assert emails == ["family@example.com", "single@example.com"]

    with session_scope(app) as s:
        result_key = s.get(BackgroundJob, job_id).result_key
    assert (tmp_path / "storage" / "exports" / result_key).exists()
    assert not (tmp_path / "storage" / "media").exists()


def test_export_requires_fields(app, client):
    token = _login(client)
    r = client.post("/admin/users/export", data={"csrf_token": token}, follow_redirects=True)
    assert b"Select at least one field to export." in r.data
    with session_scope(app) as s:
        assert s.query(BackgroundJob).count() == 0
