from __future__ import annotations

import logging
import re
import time
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from cryptography.fernet import Fernet, InvalidToken
from werkzeug.utils import secure_filename

from app.clubadmin.audit import record_event
from app.clubadmin.models import User
from app.clubadmin.modules.expense_reports.models import (
    BankAccount,
    ExpenseReport,
    ExpenseReportIncomeItem,
    ExpenseReportItem,
)
from app.clubadmin.money import parse_money, to_cents

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from werkzeug.datastructures import FileStorage

    from app.clubadmin.storage import Storage

logger = logging.getLogger(__name__)

REIMBURSEMENT_METHODS = ("check", "bank_transfer")
REPORT_STATUSES = ("draft", "submitted", "approved", "rejected", "paid")
RECEIPT_EXTENSIONS = frozenset({".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic"})
MAX_RECEIPT_BYTES = 10 * 1024 * 1024

_ABA_WEIGHTS = (3, 7, 1, 3, 7, 1, 3, 7, 1)


class BankAccountError(RuntimeError):
    pass


class ReceiptUploadError(ValueError):
    pass


# ---------- Bank accounts ----------
def valid_routing_number_checksum(routing_number: str) -> bool:
    if not re.fullmatch(r"\d{9}", routing_number or ""):
        return False
    total = sum(int(d) * w for d, w in zip(routing_number, _ABA_WEIGHTS))
    return total % 10 == 0


def validate_bank_account_payload(payload: dict) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    routing = (payload.get("routing_number") or "").strip()
    account = (payload.get("account_number") or "").strip()

    if not routing:
        errors.setdefault("routing_number", []).append("can't be blank")
    elif not re.fullmatch(r"\d{9}", routing):
        errors.setdefault("routing_number", []).append("must be 9 digits")
    elif not valid_routing_number_checksum(routing):
        errors.setdefault("routing_number", []).append("is not a valid US routing number")

    if not account:
        errors.setdefault("account_number", []).append("can't be blank")
    elif len(account) < 4:
        errors.setdefault("account_number", []).append("must be at least 4 digits")
    elif not account.isdigit():
        errors.setdefault("account_number", []).append("must contain only digits")
    return errors


def _fernet(key: str) -> Fernet:
    if not key:
        raise BankAccountError("BANK_ACCOUNT_KEY is not configured")
    return Fernet(key.encode("ascii"))


def encrypt_value(value: str, key: str) -> str:
    return _fernet(key).encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_value(token: str, key: str) -> str:
    try:
        return _fernet(key).decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise BankAccountError("Bank account could not be decrypted") from e


def get_bank_account(s: "Session", user: User) -> BankAccount | None:
    return s.query(BankAccount).filter(BankAccount.user_id == user.id).one_or_none()


def save_bank_account(s: "Session", user: User, payload: dict, *, key: str) -> BankAccount:
    """
    One account per user: saving again replaces the stored numbers.
    Caller validates the payload first.
    """
    routing = (payload.get("routing_number") or "").strip()
    account_number = (payload.get("account_number") or "").strip()
    now = datetime.utcnow()

    account = get_bank_account(s, user)
    action = "bank_account.update"
    if account is None:
        account = BankAccount(user_id=user.id, created_at=now)
        s.add(account)
        action = "bank_account.create"
    account.routing_number_encrypted = encrypt_value(routing, key)
    account.account_number_encrypted = encrypt_value(account_number, key)
    account.account_number_last_4 = account_number[-4:]
    account.updated_at = now
    s.flush()

    record_event(
        s,
        actor=user,
        action=action,
        entity_type="BankAccount",
        entity_id=str(account.id),
        metadata=bank_account_safe(account),
    )
    return account


def bank_account_safe(account: BankAccount) -> dict[str, Any]:
    """Representation without routing/account numbers; safe for logs and JSON."""
    return {
        "id": account.id,
        "user_id": account.user_id,
        "account_number_last_4": account.account_number_last_4,
        "created_at": account.created_at.isoformat() if account.created_at else None,
        "updated_at": account.updated_at.isoformat() if account.updated_at else None,
    }


def decrypted_bank_account(account: BankAccount, *, key: str) -> dict[str, Any]:
    details = bank_account_safe(account)
    details["routing_number"] = decrypt_value(account.routing_number_encrypted, key)
    details["account_number"] = decrypt_value(account.account_number_encrypted, key)
    return details


def get_decrypted_bank_account(s: "Session", bank_account_id: int, user: User, *, key: str) -> dict[str, Any] | None:
    account = s.get(BankAccount, bank_account_id)
    if account is None or account.user_id != user.id:
        return None
    return decrypted_bank_account(account, key=key)


# ---------- Receipts ----------
def receipt_key(filename: str, now: float | None = None) -> str:
    timestamp = int(now if now is not None else time.time())
    name = secure_filename(filename or "") or "receipt"
    return f"receipts/{timestamp}_{uuid.uuid4().hex[:8]}_{name}"


def upload_receipt(storage: "Storage", file: "FileStorage") -> str:
    filename = file.filename or ""
    ext = ("." + filename.rsplit(".", 1)[-1].lower()) if "." in filename else ""
    if ext not in RECEIPT_EXTENSIONS:
        raise ReceiptUploadError(f"{filename or 'File'}: unsupported file type")
    data = file.read()
    if not data:
        raise ReceiptUploadError(f"{filename}: file is empty")
    if len(data) > MAX_RECEIPT_BYTES:
        raise ReceiptUploadError(f"{filename}: file is larger than 10MB")
    key = receipt_key(filename)
    storage.put_bytes(key, data, content_type=file.mimetype or "application/octet-stream")
    logger.info("Uploaded receipt to %s (%s bytes)", key, len(data))
    return key


# ---------- Reports ----------
def _parse_item_date(raw: str | None) -> date | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    return date.fromisoformat(raw)


def _validate_rows(rows: list[dict], kind: str, errors: dict[str, list[str]]) -> None:
    for idx, row in enumerate(rows, start=1):
        label = f"{kind} {idx}"
        try:
            if _parse_item_date(row.get("date")) is None:
                errors.setdefault(kind, []).append(f"{label}: date can't be blank")
        except ValueError:
            errors.setdefault(kind, []).append(f"{label}: Invalid date format")
        if kind == "expense_items" and not (row.get("vendor") or "").strip():
            errors.setdefault(kind, []).append(f"{label}: vendor can't be blank")
        if not (row.get("description") or "").strip():
            errors.setdefault(kind, []).append(f"{label}: description can't be blank")
        try:
            amount = parse_money(row.get("amount"))
            if amount <= 0:
                errors.setdefault(kind, []).append(f"{label}: amount must be positive")
        except ValueError:
            errors.setdefault(kind, []).append(f"{label}: invalid amount format")


def validate_expense_report(
    payload: dict,
    user: User,
    *,
    bank_account: BankAccount | None,
) -> dict[str, list[str]]:
    """
    payload: purpose, reimbursement_method, status, certification_accepted, bank_account_id,
    mailing_address, expense_items (list of dicts), income_items (list of dicts).
    Fills payload["mailing_address"] from the user's saved address for check reimbursements.
    """
    errors: dict[str, list[str]] = {}
    status = payload.get("status") or "submitted"
    method = (payload.get("reimbursement_method") or "").strip()

    if status not in REPORT_STATUSES:
        errors.setdefault("status", []).append("is invalid")
    if not (payload.get("purpose") or "").strip():
        errors.setdefault("purpose", []).append("can't be blank")
    if not method:
        errors.setdefault("reimbursement_method", []).append("can't be blank")
    elif method not in REIMBURSEMENT_METHODS:
        errors.setdefault("reimbursement_method", []).append("is invalid")

    expense_items = payload.get("expense_items") or []
    income_items = payload.get("income_items") or []
    if not expense_items:
        errors.setdefault("expense_items", []).append("Add at least one expense item")
    _validate_rows(expense_items, "expense_items", errors)
    _validate_rows(income_items, "income_items", errors)

    if status == "submitted":
        if not payload.get("certification_accepted"):
            errors.setdefault("certification_accepted", []).append("You must accept the certification to submit")
        if any(not (row.get("receipt_s3_path") or "").strip() for row in expense_items):
            errors.setdefault("expense_items", []).append(
                "All expense items must have a receipt attached before submission"
            )

    if method == "bank_transfer":
        selected = str(payload.get("bank_account_id") or "").strip()
        if not selected:
            if bank_account is None:
                errors.setdefault("reimbursement_method", []).append(
                    "requires a bank account. Please add a bank account in your user settings before submitting."
                )
            else:
                errors.setdefault("bank_account_id", []).append(
                    "must be selected. Please choose a bank account above."
                )
        elif bank_account is None or selected != str(bank_account.id):
            errors.setdefault("bank_account_id", []).append("does not belong to you")
    elif method == "check":
        if not (payload.get("mailing_address") or "").strip():
            if not (user.mailing_address or "").strip():
                errors.setdefault("reimbursement_method", []).append(
                    "requires a billing address. Please add an address in your user settings before submitting."
                )
            else:
                payload["mailing_address"] = user.mailing_address
    return errors


def create_expense_report(s: "Session", payload: dict, user: User) -> ExpenseReport:
    """Caller validates first (validate_expense_report)."""
    now = datetime.utcnow()
    status = payload.get("status") or "submitted"
    method = payload["reimbursement_method"].strip()
    report = ExpenseReport(
        user_id=user.id,
        purpose=payload["purpose"].strip(),
        reimbursement_method=method,
        status=status,
        certification_accepted=bool(payload.get("certification_accepted")),
        bank_account_id=int(payload["bank_account_id"]) if method == "bank_transfer" else None,
        mailing_address=((payload.get("mailing_address") or "").strip() or None) if method == "check" else None,
        created_at=now,
        updated_at=now,
        submitted_at=now if status == "submitted" else None,
    )
    for row in payload.get("expense_items") or []:
        report.expense_items.append(
            ExpenseReportItem(
                date=_parse_item_date(row.get("date")),
                vendor=row["vendor"].strip(),
                description=row["description"].strip(),
                amount=parse_money(row.get("amount")),
                receipt_s3_path=(row.get("receipt_s3_path") or "").strip() or None,
            )
        )
    for row in payload.get("income_items") or []:
        report.income_items.append(
            ExpenseReportIncomeItem(
                date=_parse_item_date(row.get("date")),
                description=row["description"].strip(),
                amount=parse_money(row.get("amount")),
                proof_s3_path=(row.get("proof_s3_path") or "").strip() or None,
            )
        )
    s.add(report)
    s.flush()

    totals = calculate_totals(report)
    record_event(
        s,
        actor=user,
        action=f"expense_report.{'submit' if status == 'submitted' else 'create'}",
        entity_type="ExpenseReport",
        entity_id=str(report.id),
        metadata={
            "status": status,
            "reimbursement_method": method,
            "items": len(report.expense_items),
            "income_items": len(report.income_items),
            "net_total": str(totals["net_total"]),
        },
    )
    return report


def calculate_totals(report: ExpenseReport) -> dict[str, Decimal]:
    expense_total = to_cents(sum((i.amount for i in report.expense_items), Decimal("0")))
    income_total = to_cents(sum((i.amount for i in report.income_items), Decimal("0")))
    return {
        "expense_total": expense_total,
        "income_total": income_total,
        "net_total": expense_total - income_total,
    }


def list_expense_reports(s: "Session", user: User) -> list[ExpenseReport]:
    return (
        s.query(ExpenseReport)
        .filter(ExpenseReport.user_id == user.id)
        .order_by(ExpenseReport.created_at.desc(), ExpenseReport.id.desc())
        .all()
    )


def report_paths(report: ExpenseReport) -> set[str]:
    paths = {i.receipt_s3_path for i in report.expense_items if i.receipt_s3_path}
    paths |= {i.proof_s3_path for i in report.income_items if i.proof_s3_path}
    return paths


def update_mailing_address(s: "Session", user: User, address: str) -> None:
    user.mailing_address = address.strip() or None
    user.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="user.update_address", entity_type="User", entity_id=str(user.id))
