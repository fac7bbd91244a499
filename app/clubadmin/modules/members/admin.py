from __future__ import annotations

from datetime import datetime

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, send_file, url_for

from app.clubadmin.audit import record_event
from app.clubadmin.constants import (
    BOARD_POSITION_LABELS,
    BOARD_POSITIONS,
    MEMBERSHIP_PLANS,
    MEMBERSHIP_TYPES,
    USER_EXPORT_FIELDS,
    USER_ROLES,
    USER_STATES,
)
from app.clubadmin.db import db_session
from app.clubadmin.jobs import create_job, job_params, job_status_payload, start_job
from app.clubadmin.models import BackgroundJob, User
from app.clubadmin.modules.expense_reports.service import (
    BankAccountError,
    bank_account_safe,
    get_bank_account,
    get_decrypted_bank_account,
)
from app.clubadmin.modules.ledgers.models import Payment
from app.clubadmin.modules.members.service import (
    InvalidListParams,
    MembershipError,
    active_membership_type,
    approve_user,
    award_lifetime,
    change_membership_type,
    deny_user,
    export_users_csv,
    get_active_subscription,
    latest_application,
    list_paginated_users,
    membership_types_for,
    parse_list_params,
    parse_period_end,
    pending_users,
    revoke_lifetime,
    update_membership_period,
    update_user,
    validate_export_fields,
    validate_user_payload,
)
from app.clubadmin.rbac import is_treasurer, require_permission
from app.clubadmin.storage import StorageError, storage_from_config

bp = Blueprint("members", __name__)

EXPORT_FAILED_MESSAGE = "Failed to export Users to CSV"


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_user(user_id: int) -> User:
    user = db_session().get(User, user_id)
    if user is None:
        abort(404)
    return user


# ---------- List ----------
@bp.get("/users")
@require_permission("users.view")
def users_list():
    s = db_session()
    try:
        params = parse_list_params(request.args)
    except InvalidListParams as e:
        current_app.logger.info("Invalid user list params (%s); showing first page", e)
        return redirect(url_for("members.users_list"))

    search = (request.args.get("search") or "").strip()
    users, meta = list_paginated_users(s, params, search)

    filters_for_urls: dict[str, object] = {
        "search": search,
        "order_by": params.order_by,
        "order_direction": params.order_direction,
        "page_size": params.page_size,
    }
    filters_for_urls.update(params.filters)
    filters_for_urls = {k: v for k, v in filters_for_urls.items() if v}
    prev_url = url_for("members.users_list", page=meta.page - 1, **filters_for_urls) if meta.has_prev else None
    next_url = url_for("members.users_list", page=meta.page + 1, **filters_for_urls) if meta.has_next else None

    def sort_url(field: str) -> str:
        direction = "desc" if params.order_by == field and params.order_direction == "asc" else "asc"
        args = dict(filters_for_urls, order_by=field, order_direction=direction)
        return url_for("members.users_list", **args)

    return render_template(
        "admin/users/list.html",
        users=users,
        meta=meta,
        params=params,
        search=search,
        membership_types=membership_types_for(s, users),
        prev_url=prev_url,
        next_url=next_url,
        sort_url=sort_url,
        pending_count=len(pending_users(s)),
        filter_options={
            "state": USER_STATES,
            "role": USER_ROLES,
            "board_position": BOARD_POSITIONS,
            "membership_type": MEMBERSHIP_TYPES,
        },
        board_position_labels=BOARD_POSITION_LABELS,
        export_fields=USER_EXPORT_FIELDS,
    )


# ---------- Review ----------
@bp.get("/users/review")
@require_permission("users.review")
def users_review():
    s = db_session()
    users = pending_users(s)
    applications = {u.id: latest_application(s, u) for u in users}
    return render_template("admin/users/review.html", users=users, applications=applications)


@bp.post("/users/<int:user_id>/approve")
@require_permission("users.review")
def users_approve(user_id: int):
    s = db_session()
    user = _get_user(user_id)
    try:
        approve_user(s, user, _current_user())
        s.commit()
    except MembershipError as e:
        s.rollback()
        current_app.logger.warning("Approve failed for user %s: %s", user_id, e)
        flash("Something went wrong", "danger")
        return redirect(url_for("members.users_review"))
    flash("User was approved and is now a member!", "success")
    return redirect(url_for("members.users_review"))


@bp.post("/users/<int:user_id>/deny")
@require_permission("users.review")
def users_deny(user_id: int):
    s = db_session()
    user = _get_user(user_id)
    try:
        deny_user(s, user, _current_user())
        s.commit()
    except MembershipError as e:
        s.rollback()
        current_app.logger.warning("Deny failed for user %s: %s", user_id, e)
        flash("Something went wrong", "danger")
        return redirect(url_for("members.users_review"))
    flash("User application was rejected!", "success")
    return redirect(url_for("members.users_review"))


# ---------- Detail ----------
def _render_detail(user: User, *, unsealed_account: dict | None = None, status: int = 200):
    s = db_session()
    bank_account = get_bank_account(s, user)
    payments = (
        s.query(Payment)
        .filter(Payment.user_id == user.id)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .limit(25)
        .all()
    )
    return (
        render_template(
            "admin/users/detail.html",
            user=user,
            application=latest_application(s, user),
            active_subscription=get_active_subscription(s, user),
            membership_type=active_membership_type(s, user),
            membership_plans=MEMBERSHIP_PLANS,
            bank_account=bank_account_safe(bank_account) if bank_account else None,
            unsealed_account=unsealed_account,
            can_unseal=is_treasurer(_current_user()),
            payments=payments,
            states=USER_STATES,
            roles=USER_ROLES,
            board_positions=BOARD_POSITIONS,
            board_position_labels=BOARD_POSITION_LABELS,
        ),
        status,
    )


@bp.get("/users/<int:user_id>")
@require_permission("users.view")
def users_detail(user_id: int):
    return _render_detail(_get_user(user_id))


@bp.post("/users/<int:user_id>")
@require_permission("users.edit")
def users_update(user_id: int):
    s = db_session()
    user = _get_user(user_id)
    payload = {
        "email": request.form.get("email"),
        "first_name": request.form.get("first_name"),
        "last_name": request.form.get("last_name"),
        "phone_number": request.form.get("phone_number"),
        "most_connected_country": request.form.get("most_connected_country"),
        "state": request.form.get("state"),
        "role": request.form.get("role"),
        "board_position": request.form.get("board_position"),
    }
    errors = validate_user_payload(payload)
    email = (payload["email"] or "").strip().lower()
    if not errors and email != user.email:
        if s.query(User.id).filter(User.email == email, User.id != user.id).first():
            errors["email"] = ["has already been taken"]
    if errors:
        details = "; ".join(f"{field} {', '.join(msgs)}" for field, msgs in errors.items())
        flash(f"Failed to save: {details}", "danger")
        return redirect(url_for("members.users_detail", user_id=user.id))
    update_user(s, user, payload, _current_user())
    s.commit()
    flash("User updated", "success")
    return redirect(url_for("members.users_detail", user_id=user.id))


@bp.post("/users/<int:user_id>/lifetime")
@require_permission("users.edit")
def users_lifetime(user_id: int):
    s = db_session()
    user = _get_user(user_id)
    has_lifetime = request.form.get("has_lifetime") in ("true", "on", "1")
    if has_lifetime:
        raw = (request.form.get("awarded_at") or "").strip()
        awarded_at = None
        if raw:
            try:
                awarded_at = parse_period_end(raw)
            except ValueError:
                flash("Invalid date format", "danger")
                return redirect(url_for("members.users_detail", user_id=user.id))
        cancelled = award_lifetime(s, user, _current_user(), awarded_at or datetime.utcnow())
        s.commit()
        if cancelled is not None:
            flash("Lifetime membership awarded and active subscription cancelled", "success")
        else:
            flash("Lifetime membership awarded", "success")
    else:
        revoke_lifetime(s, user, _current_user())
        s.commit()
        flash("Lifetime membership revoked", "success")
    return redirect(url_for("members.users_detail", user_id=user.id))


@bp.post("/users/<int:user_id>/membership-type")
@require_permission("users.edit")
def users_membership_type(user_id: int):
    s = db_session()
    user = _get_user(user_id)
    sub = get_active_subscription(s, user)
    old_type = sub.plan_type if sub else None
    new_type = request.form.get("membership_type")
    try:
        direction = change_membership_type(s, user, new_type, _current_user())
    except MembershipError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("members.users_detail", user_id=user.id))
    if direction is None:
        flash("User is already on that membership plan", "info")
        return redirect(url_for("members.users_detail", user_id=user.id))
    s.commit()
    flash(f"Membership type changed from {old_type.capitalize()} to {new_type.capitalize()}", "success")
    return redirect(url_for("members.users_detail", user_id=user.id))


@bp.post("/users/<int:user_id>/membership-period")
@require_permission("users.edit")
def users_membership_period(user_id: int):
    s = db_session()
    user = _get_user(user_id)
    if get_active_subscription(s, user) is None:
        flash("No active subscription found", "danger")
        return redirect(url_for("members.users_detail", user_id=user.id))
    try:
        period_end = parse_period_end(request.form.get("period_end_date"))
    except ValueError:
        flash("Invalid date format", "danger")
        return redirect(url_for("members.users_detail", user_id=user.id))
    try:
        update_membership_period(s, user, period_end, _current_user())
        s.commit()
    except MembershipError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("members.users_detail", user_id=user.id))
    flash("Membership period updated successfully", "success")
    return redirect(url_for("members.users_detail", user_id=user.id))


@bp.post("/users/<int:user_id>/bank-account/<int:bank_account_id>/unseal")
@require_permission("users.view")
def users_unseal_bank_account(user_id: int, bank_account_id: int):
    """Shows decrypted numbers in this one response only; nothing is kept in the session."""
    s = db_session()
    user = _get_user(user_id)
    actor = _current_user()
    if not is_treasurer(actor):
        flash("Unauthorized", "danger")
        return redirect(url_for("members.users_detail", user_id=user.id))
    try:
        details = get_decrypted_bank_account(
            s, bank_account_id, user, key=current_app.config.get("BANK_ACCOUNT_KEY") or ""
        )
    except BankAccountError as e:
        current_app.logger.error("Bank account unseal failed (bank_account_id=%s): %s", bank_account_id, e)
        details = None
    if details is None:
        flash("Bank account not found", "danger")
        return redirect(url_for("members.users_detail", user_id=user.id))

    record_event(
        s,
        actor=actor,
        action="bank_account.unseal",
        entity_type="BankAccount",
        entity_id=str(bank_account_id),
        metadata={"user_id": user.id},
    )
    s.commit()
    return _render_detail(user, unsealed_account=details)


# ---------- CSV export ----------
@bp.post("/users/export")
@require_permission("users.export")
def users_export():
    s = db_session()
    u = _current_user()
    fields = [f for f in request.form.getlist("fields") if f]
    only_subscribers = request.form.get("only_subscribers") in ("true", "on", "1")
    errors = validate_export_fields(fields)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("members.users_list"))

    # keep the column order of USER_EXPORT_FIELDS
    fields = [f for f in USER_EXPORT_FIELDS if f in fields]
    job = create_job(s, kind="user_export", owner=u, params={"fields": fields, "only_subscribers": only_subscribers})
    s.commit()

    app = current_app._get_current_object()

    def _run(js, job_row, progress):
        params = job_params(job_row)
        data = export_users_csv(js, params["fields"], only_subscribers=params["only_subscribers"], progress=progress)
        key = f"users_{job_row.id}_{datetime.utcnow():%Y%m%d%H%M%S}.csv"
        storage_from_config(app.config, bucket="exports").put_bytes(key, data, content_type="text/csv")
        return key

    start_job(app, job, _run, failure_message=EXPORT_FAILED_MESSAGE)
    return redirect(url_for("members.users_export_status_page", job_id=job.id))


def _get_export_job(job_id: int) -> BackgroundJob:
    s = db_session()
    job = s.get(BackgroundJob, job_id)
    if job is None or job.kind != "user_export":
        abort(404)
    s.refresh(job)
    return job


@bp.get("/users/export/<int:job_id>")
@require_permission("users.export")
def users_export_status_page(job_id: int):
    job = _get_export_job(job_id)
    return render_template("admin/users/export.html", job=job)


@bp.get("/users/export/<int:job_id>/status")
@require_permission("users.export")
def users_export_status(job_id: int):
    job = _get_export_job(job_id)
    payload = job_status_payload(job)
    if job.status == "complete":
        payload["download_url"] = url_for("members.users_export_download", job_id=job.id)
    return jsonify(payload)


@bp.get("/users/export/<int:job_id>/download")
@require_permission("users.export")
def users_export_download(job_id: int):
    job = _get_export_job(job_id)
    if job.status != "complete" or not job.result_key:
        abort(404)
    storage = storage_from_config(current_app.config, bucket="exports")
    try:
        fobj = storage.open(job.result_key)
    except StorageError:
        abort(404)
    filename = f"users_export_{job.created_at:%Y%m%d_%H%M%S}.csv"
    return send_file(fobj, mimetype="text/csv", as_attachment=True, download_name=filename)
