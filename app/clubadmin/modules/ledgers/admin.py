from __future__ import annotations

import uuid
from datetime import date

from flask import Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, url_for

from app.clubadmin.db import db_session
from app.clubadmin.models import User
from app.clubadmin.modules.ledgers.service import (
    CREDIT_ENTITY_TYPES,
    LedgerError,
    accounts_with_balances,
    add_credit,
    process_refund,
    recent_payments,
    validate_credit_form,
    validate_refund_form,
)
from app.clubadmin.rbac import require_permission

bp = Blueprint("ledgers", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _parse_range() -> tuple[date | None, date | None, bool]:
    """Returns (start, end, ok); bad input leaves the range open."""
    raw_start = (request.args.get("start_date") or "").strip()
    raw_end = (request.args.get("end_date") or "").strip()
    try:
        start = date.fromisoformat(raw_start) if raw_start else None
        end = date.fromisoformat(raw_end) if raw_end else None
    except ValueError:
        return None, None, False
    return start, end, True


def _flash_errors(errors: dict[str, list[str]]) -> None:
    for field, messages in errors.items():
        for message in messages:
            flash(f"{field.replace('_', ' ').capitalize()} {message}", "danger")


@bp.get("/money")
@require_permission("money.view")
def money_index():
    s = db_session()
    start, end, ok = _parse_range()
    if not ok:
        flash("Invalid date format", "danger")
    accounts = accounts_with_balances(s, start, end)
    payments = recent_payments(s, start, end)
    members = (
        s.query(User)
        .filter(User.state != "deleted")
        .order_by(User.last_name.asc(), User.first_name.asc(), User.email.asc())
        .limit(500)
        .all()
    )
    return render_template(
        "admin/money/index.html",
        accounts=accounts,
        payments=payments,
        members=members,
        entity_types=CREDIT_ENTITY_TYPES,
        start_date=start.isoformat() if start else "",
        end_date=end.isoformat() if end else "",
    )


@bp.post("/money/refund")
@require_permission("money.refund")
def money_refund():
    s = db_session()
    u = _current_user()
    payload = {
        "payment_id": request.form.get("payment_id"),
        "amount": request.form.get("amount"),
        "reason": request.form.get("reason"),
    }
    errors, amount = validate_refund_form(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("ledgers.money_index"))

    try:
        payment_id = int(payload["payment_id"])
        process_refund(
            s,
            payment_id=payment_id,
            amount=amount,
            reason=(payload["reason"] or "").strip(),
            external_refund_id=f"admin_refund_{uuid.uuid4().hex}",
            actor=u,
        )
        s.commit()
    except (LedgerError, ValueError) as e:
        s.rollback()
        current_app.logger.warning("Refund failed (payment_id=%s): %s", payload["payment_id"], e)
        flash(f"Failed to process refund: {e}", "danger")
        return redirect(url_for("ledgers.money_index"))

    flash("Refund processed successfully", "success")
    return redirect(url_for("ledgers.money_index"))


@bp.post("/money/credit")
@require_permission("money.credit")
def money_credit():
    s = db_session()
    u = _current_user()
    payload = {
        "user_id": request.form.get("user_id"),
        "amount": request.form.get("amount"),
        "reason": request.form.get("reason"),
        "entity_type": request.form.get("entity_type"),
        "entity_id": request.form.get("entity_id"),
    }
    errors, amount = validate_credit_form(payload)
    if errors:
        _flash_errors(errors)
        return redirect(url_for("ledgers.money_index"))

    try:
        member = s.get(User, int(payload["user_id"]))
        if member is None:
            raise LedgerError("User not found")
        add_credit(
            s,
            user=member,
            amount=amount,
            reason=(payload["reason"] or "").strip(),
            entity_type=(payload["entity_type"] or "").strip() or None,
            entity_id=(payload["entity_id"] or "").strip() or None,
            actor=u,
        )
        s.commit()
    except (LedgerError, ValueError) as e:
        s.rollback()
        current_app.logger.warning("Credit failed (user_id=%s): %s", payload["user_id"], e)
        flash(f"Failed to add credit: {e}", "danger")
        return redirect(url_for("ledgers.money_index"))

    flash("Credit added successfully", "success")
    return redirect(url_for("ledgers.money_index"))


@bp.post("/money/refund/validate")
@require_permission("money.refund")
def money_refund_validate():
    payload = request.get_json(silent=True) or request.form.to_dict()
    if not isinstance(payload, dict):
        return jsonify({"valid": False, "errors": {"payload": ["must be an object"]}}), 422
    errors, _amount = validate_refund_form(payload)
    return jsonify({"valid": not errors, "errors": errors})


@bp.post("/money/credit/validate")
@require_permission("money.credit")
def money_credit_validate():
    payload = request.get_json(silent=True) or request.form.to_dict()
    if not isinstance(payload, dict):
        return jsonify({"valid": False, "errors": {"payload": ["must be an object"]}}), 422
    errors, _amount = validate_credit_form(payload)
    return jsonify({"valid": not errors, "errors": errors})
