from __future__ import annotations

import mimetypes
import re

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, session, url_for

from app.clubadmin.db import db_session
from app.clubadmin.models import User
from app.clubadmin.modules.expense_reports.models import ExpenseReport
from app.clubadmin.modules.expense_reports.service import (
    BankAccountError,
    ReceiptUploadError,
    calculate_totals,
    create_expense_report,
    get_bank_account,
    list_expense_reports,
    report_paths,
    save_bank_account,
    update_mailing_address,
    upload_receipt,
    validate_bank_account_payload,
    validate_expense_report,
)
from app.clubadmin.rbac import is_treasurer, require_login, require_permission
from app.clubadmin.storage import StorageError, storage_from_config

bp = Blueprint("expense_reports", __name__)

_ROW_KEY = re.compile(r"^(expense_items|income_items)-(\d+)-(\w+)$")
_ROW_FIELDS = {
    "expense_items": ("date", "vendor", "description", "amount"),
    "income_items": ("date", "description", "amount"),
}
# row kind -> (file input suffix, stored key field)
_FILE_FIELDS = {
    "expense_items": ("receipt", "receipt_s3_path"),
    "income_items": ("proof", "proof_s3_path"),
}
# keys this session uploaded that are not yet attached to a saved report
PENDING_RECEIPTS_KEY = "pending_receipts"
MAX_PENDING_RECEIPTS = 20


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _parse_rows(form) -> dict[str, list[dict]]:
    """
    Collect dynamic rows posted as expense_items-<n>-<field> / income_items-<n>-<field>.
    Rows with every field blank are dropped (the "add row" template row).
    """
    rows: dict[str, dict[int, dict]] = {"expense_items": {}, "income_items": {}}
    for key in form.keys():
        m = _ROW_KEY.match(key)
        if not m:
            continue
        kind, idx, name = m.group(1), int(m.group(2)), m.group(3)
        if name in _ROW_FIELDS[kind]:
            rows[kind].setdefault(idx, {})[name] = (form.get(key) or "").strip()
    out: dict[str, list[dict]] = {}
    for kind, by_idx in rows.items():
        out[kind] = []
        for idx in sorted(by_idx):
            row = by_idx[idx]
            row["_index"] = idx
            if any(v for k, v in row.items() if k != "_index"):
                out[kind].append(row)
    return out


def _pending_receipts(user: User) -> list[str]:
    held = session.get(PENDING_RECEIPTS_KEY) or {}
    if held.get("user_id") != user.id:
        return []
    return list(held.get("keys") or [])


def _remember_pending(user: User, keys: list[str]) -> None:
    session[PENDING_RECEIPTS_KEY] = {"user_id": user.id, "keys": keys[-MAX_PENDING_RECEIPTS:]}


def _attach_uploads(rows: dict[str, list[dict]], user: User) -> list[str]:
    """
    Upload receipt/proof files posted alongside rows; returns upload errors.

    A row without a new file may carry the key of a file uploaded by an earlier,
    rejected submit (re-rendered as a hidden field). That key is only kept when this
    session uploaded it and it is still in storage.
    """
    storage = storage_from_config(current_app.config, bucket="expense")
    pending = _pending_receipts(user)
    errors: list[str] = []
    for kind, (field, path_key) in _FILE_FIELDS.items():
        for row in rows[kind]:
            prefix = f"{kind}-{row['_index']}"
            file = request.files.get(f"{prefix}-{field}")
            if file and file.filename:
                try:
                    key = upload_receipt(storage, file)
                except ReceiptUploadError as e:
                    errors.append(str(e))
                    continue
                except StorageError as e:
                    current_app.logger.error("Receipt upload failed: %s", e)
                    errors.append(f"{file.filename}: upload failed")
                    continue
                pending.append(key)
                row[path_key] = key
                continue
            held = (request.form.get(f"{prefix}-{path_key}") or "").strip()
            if not held:
                continue
            if held in pending and storage.exists(held):
                row[path_key] = held
            else:
                current_app.logger.warning("Rejected unknown %s key from user %s: %s", field, user.id, held)
                errors.append(f"{field.capitalize()} for row {row['_index'] + 1} was not found, please upload it again")
    _remember_pending(user, pending)
    return errors


def _release_pending(user: User, rows: dict[str, list[dict]]) -> None:
    used = {row.get(path_key) for kind, (_field, path_key) in _FILE_FIELDS.items() for row in rows[kind]}
    _remember_pending(user, [k for k in _pending_receipts(user) if k not in used])


def _render_form(payload: dict, errors: dict[str, list[str]], status: int = 200):
    s = db_session()
    u = _current_user()
    return (
        render_template(
            "expense_reports/new.html",
            payload=payload,
            errors=errors,
            bank_account=get_bank_account(s, u),
            saved_address=u.mailing_address,
        ),
        status,
    )


@bp.get("")
@require_permission("expenses.submit")
def list_reports():
    s = db_session()
    u = _current_user()
    reports = list_expense_reports(s, u)
    totals = {r.id: calculate_totals(r) for r in reports}
    return render_template("expense_reports/list.html", reports=reports, totals=totals)


@bp.get("/new")
@require_permission("expenses.submit")
def new_report():
    payload = {
        "purpose": "",
        "reimbursement_method": "",
        "expense_items": [{"_index": 0}],
        "income_items": [],
    }
    return _render_form(payload, {})


@bp.post("/new")
@require_permission("expenses.submit")
def submit_report():
    s = db_session()
    u = _current_user()
    rows = _parse_rows(request.form)
    payload = {
        "purpose": (request.form.get("purpose") or "").strip(),
        "reimbursement_method": (request.form.get("reimbursement_method") or "").strip(),
        "status": "draft" if request.form.get("action") == "save_draft" else "submitted",
        "certification_accepted": request.form.get("certification_accepted") in ("on", "true", "1"),
        "bank_account_id": (request.form.get("bank_account_id") or "").strip(),
        "mailing_address": (request.form.get("mailing_address") or "").strip(),
        "expense_items": rows["expense_items"],
        "income_items": rows["income_items"],
    }

    upload_errors = _attach_uploads(rows, u)
    errors = validate_expense_report(payload, u, bank_account=get_bank_account(s, u))
    if upload_errors:
        errors.setdefault("uploads", []).extend(upload_errors)
    if errors:
        flash("Please fix the errors below before submitting", "danger")
        return _render_form(payload, errors, 400)

    report = create_expense_report(s, payload, u)
    s.commit()
    _release_pending(u, rows)
    current_app.logger.info("Expense report %s created (status=%s)", report.id, report.status)
    if report.status == "draft":
        flash("Expense report saved as draft.", "success")
        return redirect(url_for("expense_reports.report_detail", report_id=report.id))
    return redirect(url_for("expense_reports.report_success", report_id=report.id))


def _load_report(report_id: int) -> ExpenseReport:
    s = db_session()
    u = _current_user()
    report = s.get(ExpenseReport, report_id)
    if report is None:
        abort(404)
    if report.user_id != u.id and not is_treasurer(u):
        abort(404)
    return report


@bp.get("/<int:report_id>/success")
@require_permission("expenses.submit")
def report_success(report_id: int):
    report = _load_report(report_id)
    return render_template("expense_reports/success.html", report=report, totals=calculate_totals(report))


@bp.get("/<int:report_id>")
@require_permission("expenses.submit")
def report_detail(report_id: int):
    report = _load_report(report_id)
    return render_template("expense_reports/detail.html", report=report, totals=calculate_totals(report))


@bp.get("/<int:report_id>/files/<path:key>")
@require_permission("expenses.submit")
def report_file(report_id: int, key: str):
    report = _load_report(report_id)
    if key not in report_paths(report):
        abort(404)
    storage = storage_from_config(current_app.config, bucket="expense")
    try:
        fobj = storage.open(key)
    except StorageError:
        abort(404)
    mimetype = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return send_file(fobj, mimetype=mimetype, as_attachment=False, download_name=key.rsplit("/", 1)[-1])


@bp.get("/bank-account")
@require_login
def bank_account_get():
    s = db_session()
    u = _current_user()
    return render_template("expense_reports/bank_account.html", bank_account=get_bank_account(s, u), errors={})


@bp.post("/bank-account")
@require_login
def bank_account_post():
    s = db_session()
    u = _current_user()
    payload = {
        "routing_number": request.form.get("routing_number"),
        "account_number": request.form.get("account_number"),
    }
    errors = validate_bank_account_payload(payload)
    if errors:
        return (
            render_template("expense_reports/bank_account.html", bank_account=get_bank_account(s, u), errors=errors),
            400,
        )
    try:
        save_bank_account(s, u, payload, key=current_app.config.get("BANK_ACCOUNT_KEY") or "")
        s.commit()
    except BankAccountError as e:
        s.rollback()
        current_app.logger.error("Bank account save failed for user %s: %s", u.id, e)
        flash("Failed to save bank account", "danger")
        return redirect(url_for("expense_reports.bank_account_get"))
    flash("Bank account added successfully", "success")
    return redirect(url_for("expense_reports.new_report"))


@bp.post("/address")
@require_login
def address_post():
    s = db_session()
    u = _current_user()
    address = (request.form.get("mailing_address") or "").strip()
    if len(address) > 1000:
        flash("Address is too long.", "danger")
        return redirect(url_for("expense_reports.new_report"))
    update_mailing_address(s, u, address)
    s.commit()
    flash("Address saved.", "success")
    return redirect(url_for("expense_reports.new_report"))
