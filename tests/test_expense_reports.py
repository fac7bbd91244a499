import io
from decimal import Decimal

import pytest
from cryptography.fernet import Fernet
from werkzeug.security import generate_password_hash

from app.clubadmin import auth, create_app
from app.clubadmin.db import session_scope
from app.clubadmin.models import Base, Permission, Role, User
from app.clubadmin.modules.expense_reports.models import BankAccount, ExpenseReport
from app.clubadmin.modules.expense_reports.service import (
    decrypt_value,
    receipt_key,
    valid_routing_number_checksum,
    validate_bank_account_payload,
)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("BANK_ACCOUNT_KEY", Fernet.generate_key().decode())
    auth._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        role = Role(key="member", name="Member")
        role.permissions.append(Permission(key="expenses.submit", name="Expense reports: submit"))
        member = User(
            email="member@example.com",
            password_hash=generate_password_hash("pw"),
            is_active=True,
            state="active",
            first_name="Mo",
            last_name="Member",
        )
        member.roles.append(role)
        other = User(
            email="other@example.com", password_hash=generate_password_hash("pw"), is_active=True, state="active"
        )
        other.roles.append(role)
        s.add_all([role, member, other])

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="member@example.com"):
    client.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=True)
    with client.session_transaction() as sess:
        return sess["csrf_token"]


def _report_form(token, **overrides):
    data = {
        "csrf_token": token,
        "purpose": "Cabin work party supplies",
        "reimbursement_method": "check",
        "certification_accepted": "on",
        "expense_items-0-date": "2025-04-12",
        "expense_items-0-vendor": "Hardware Store",
        "expense_items-0-description": "Paint and brushes",
        "expense_items-0-amount": "120.50",
        "expense_items-0-receipt": (io.BytesIO(b"%PDF-1.4 receipt"), "paint receipt.pdf"),
        "expense_items-1-date": "2025-04-12",
        "expense_items-1-vendor": "Grocer",
        "expense_items-1-description": "Lunch",
        "expense_items-1-amount": "$30",
        "expense_items-1-receipt": (io.BytesIO(b"\x89PNG fake"), "lunch.png"),
        "income_items-0-date": "2025-04-13",
        "income_items-0-description": "Leftover lumber sold",
        "income_items-0-amount": "20",
        "mailing_address": "",
    }
    data.update(overrides)
    return data


# ---------- service ----------
def test_routing_number_checksum():
    assert valid_routing_number_checksum("011000015")
    assert valid_routing_number_checksum("021000021")
    assert not valid_routing_number_checksum("123456789")
    assert not valid_routing_number_checksum("12345678")
    assert not valid_routing_number_checksum("01100001a")


def test_validate_bank_account_payload():
    assert validate_bank_account_payload({"routing_number": "011000015", "account_number": "0001234"}) == {}
    errors = validate_bank_account_payload({"routing_number": "123456789", "account_number": "12a4"})
    assert errors["routing_number"] == ["is not a valid US routing number"]
    assert errors["account_number"] == ["must contain only digits"]
    errors = validate_bank_account_payload({"routing_number": "", "account_number": "123"})
    assert errors["routing_number"] == ["can't be blank"]
    assert errors["account_number"] == ["must be at least 4 digits"]


def test_receipt_key_format():
    key = receipt_key("My Receipt.pdf", now=1700000000)
    assert key.startswith("receipts/1700000000_")
    assert key.endswith("_My_Receipt.pdf")
    assert receipt_key("My Receipt.pdf", now=1700000000) != key


# ---------- routes ----------
def test_bank_account_is_encrypted(app, client):
    token = _login(client)
    r = client.post(
        "/expensereport/bank-account",
        data={"csrf_token": token, "routing_number": "011000015", "account_number": "987654321"},
        follow_redirects=True,
    )
    assert b"Bank account added successfully" in r.data
    with session_scope(app) as s:
        account = s.query(BankAccount).one()
        assert account.account_number_last_4 == "4321"
        assert "987654321" not in account.account_number_encrypted
        key = app.config["BANK_ACCOUNT_KEY"]
        assert decrypt_value(account.account_number_encrypted, key) == "987654321"
        assert decrypt_value(account.routing_number_encrypted, key) == "011000015"

    # saving again replaces the single account on file
    client.post(
        "/expensereport/bank-account",
        data={"csrf_token": token, "routing_number": "021000021", "account_number": "11112222"},
    )
    with session_scope(app) as s:
        account = s.query(BankAccount).one()
        assert account.account_number_last_4 == "2222"


def test_bank_account_validation_errors(client):
    token = _login(client)
    r = client.post(
        "/expensereport/bank-account",
        data={"csrf_token": token, "routing_number": "123456789", "account_number": "987654321"},
    )
    assert r.status_code == 400
    assert b"Routing number is not a valid US routing number" in r.data


def test_submit_with_errors_rerenders_form(app, client):
    token = _login(client)
    r = client.post(
        "/expensereport/new",
        data={"csrf_token": token, "purpose": "", "reimbursement_method": "check"},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert b"Please fix the errors below before submitting" in r.data
    assert b"Add at least one expense item" in r.data
    assert b"requires a billing address" in r.data
    with session_scope(app) as s:
        assert s.query(ExpenseReport).count() == 0


def test_submit_requires_receipts_and_certification(client):
    token = _login(client)
    data = _report_form(token, certification_accepted="")
    del data["expense_items-1-receipt"]
    r = client.post("/expensereport/new", data=data, content_type="multipart/form-data")
    assert r.status_code == 400
    assert b"You must accept the certification to submit" in r.data
    assert b"All expense items must have a receipt attached before submission" in r.data


def test_submit_report_by_check_uses_saved_address(app, client, tmp_path):
    token = _login(client)
    r = client.post(
        "/expensereport/address",
        data={"csrf_token": token, "mailing_address": "1 Lake Rd, Clearlake CA"},
        follow_redirects=True,
    )
    assert b"Address saved." in r.data

    r = client.post(
        "/expensereport/new", data=_report_form(token), content_type="multipart/form-data", follow_redirects=True
    )
    assert r.status_code == 200
    assert b"Expense report submitted" in r.data
    assert b"$150.50" in r.data
    assert b"$20.00" in r.data
    assert b"$130.50" in r.data

    with session_scope(app) as s:
        report = s.query(ExpenseReport).one()
        assert report.status == "submitted"
        assert report.submitted_at is not None
        assert report.mailing_address == "1 Lake Rd, Clearlake CA"
        assert len(report.expense_items) == 2
        assert report.expense_items[1].amount == Decimal("30.00")
        receipt = report.expense_items[0].receipt_s3_path
        assert receipt.startswith("receipts/")
        assert receipt.endswith("_paint_receipt.pdf")
        report_id = report.id

    assert (tmp_path / "storage" / "expense" / receipt).exists()
    r = client.get(f"/expensereport/{report_id}/files/{receipt}")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 receipt"


def test_submit_report_by_bank_transfer(app, client):
    token = _login(client)
    r = client.post(
        "/expensereport/new",
        data=_report_form(token, reimbursement_method="bank_transfer"),
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert b"requires a bank account" in r.data

    client.post(
        "/expensereport/bank-account",
        data={"csrf_token": token, "routing_number": "011000015", "account_number": "987654321"},
    )
    with session_scope(app) as s:
        account_id = s.query(BankAccount).one().id
    r = client.post(
        "/expensereport/new",
        data=_report_form(token, reimbursement_method="bank_transfer", bank_account_id=str(account_id)),
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert b"account ending in 4321" in r.data


def test_save_draft_skips_submission_checks(app, client):
    token = _login(client)
    data = _report_form(token, action="save_draft", certification_accepted="")
    del data["expense_items-0-receipt"]
    del data["expense_items-1-receipt"]
    client.post("/expensereport/address", data={"csrf_token": token, "mailing_address": "1 Lake Rd"})
    r = client.post("/expensereport/new", data=data, content_type="multipart/form-data", follow_redirects=True)
    assert b"Expense report saved as draft." in r.data
    with session_scope(app) as s:
        report = s.query(ExpenseReport).one()
        assert report.status == "draft"
        assert report.submitted_at is None


def test_reports_are_private_to_their_owner(app, client):
    token = _login(client)
    client.post("/expensereport/address", data={"csrf_token": token, "mailing_address": "1 Lake Rd"})
    client.post("/expensereport/new", data=_report_form(token), content_type="multipart/form-data")
    with session_scope(app) as s:
        report_id = s.query(ExpenseReport).one().id
    client.get("/auth/logout")

    _login(client, "other@example.com")
    assert client.get(f"/expensereport/{report_id}").status_code == 404
    r = client.get("/expensereport")
    assert b"Cabin work party supplies" not in r.data


def test_submit_rejects_receipt_key_that_was_never_uploaded(app, client):
    token = _login(client)
    client.post("/expensereport/address", data={"csrf_token": token, "mailing_address": "1 Lake Rd"})
    data = _report_form(token, **{"expense_items-0-receipt_s3_path": "receipts/forged-never-uploaded.pdf"})
    del data["expense_items-0-receipt"]
    r = client.post("/expensereport/new", data=data, content_type="multipart/form-data")
    assert r.status_code == 400
    assert b"Receipt for row 1 was not found, please upload it again" in r.data
    assert b"All expense items must have a receipt attached before submission" in r.data
    with session_scope(app) as s:
        assert s.query(ExpenseReport).count() == 0


def test_submit_cannot_attach_another_members_receipt(app, client):
    token = _login(client)
    client.post("/expensereport/address", data={"csrf_token": token, "mailing_address": "1 Lake Rd"})
    client.post("/expensereport/new", data=_report_form(token), content_type="multipart/form-data")
    with session_scope(app) as s:
        victim = s.query(ExpenseReport).one()
        victim_id, victim_key = victim.id, victim.expense_items[0].receipt_s3_path
    client.get("/auth/logout")

    token = _login(client, "other@example.com")
    client.post("/expensereport/address", data={"csrf_token": token, "mailing_address": "2 Pine St"})
    data = _report_form(token, **{"expense_items-0-receipt_s3_path": victim_key})
    del data["expense_items-0-receipt"]
    r = client.post("/expensereport/new", data=data, content_type="multipart/form-data")
    assert r.status_code == 400
    assert b"was not found, please upload it again" in r.data
    with session_scope(app) as s:
        assert s.query(ExpenseReport).count() == 1
    assert client.get(f"/expensereport/{victim_id}/files/{victim_key}").status_code == 404


def test_rejected_submit_keeps_receipts_uploaded_in_this_session(app, client):
    token = _login(client)
    client.post("/expensereport/address", data={"csrf_token": token, "mailing_address": "1 Lake Rd"})
    r = client.post(
        "/expensereport/new", data=_report_form(token, certification_accepted=""), content_type="multipart/form-data"
    )
    assert r.status_code == 400
    with client.session_transaction() as sess:
        first, second = sess["pending_receipts"]["keys"]
    assert first.encode() in r.data

    data = _report_form(
        token, **{"expense_items-0-receipt_s3_path": first, "expense_items-1-receipt_s3_path": second}
    )
    del data["expense_items-0-receipt"]
    del data["expense_items-1-receipt"]
    r = client.post("/expensereport/new", data=data, content_type="multipart/form-data", follow_redirects=True)
    assert b"Expense report submitted" in r.data
    with session_scope(app) as s:
        report = s.query(ExpenseReport).one()
        assert [i.receipt_s3_path for i in report.expense_items] == [first, second]
    with client.session_transaction() as sess:
        assert sess["pending_receipts"]["keys"] == []
