from datetime import date, datetime, time, timedelta

from flask import Blueprint, flash, render_template, request

from app.clubadmin.db import db_session
from app.clubadmin.models import AuditEvent, User
from app.clubadmin.rbac import require_permission

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


@bp.get("/")
@require_permission("admin.view")
def index():
    import os
    from sqlalchemy import func, text

    from app.clubadmin.modules.ledgers.models import Payment
    from app.clubadmin.modules.media.models import Image
    from app.clubadmin.modules.posts.models import Post

    s = db_session()
    status = {
        "env": (os.environ.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "storage_backend": None,
    }
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        status["db_error"] = str(e)
    status["storage_backend"] = (os.environ.get("STORAGE_BACKEND") or "local").strip().lower()

    counts = {
        "pending_approval": s.query(func.count(User.id)).filter(User.state == "pending_approval").scalar() or 0,
        "active_members": s.query(func.count(User.id)).filter(User.state == "active").scalar() or 0,
        "posts": s.query(func.count(Post.id)).filter(Post.state != "deleted").scalar() or 0,
        "images": s.query(func.count(Image.id)).scalar() or 0,
    }
    recent_payments = s.query(Payment).order_by(Payment.payment_date.desc(), Payment.id.desc()).limit(5).all()
    recent_events = s.query(AuditEvent).order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(10).all()
    return render_template(
        "admin/index.html",
        system_status=status,
        counts=counts,
        recent_payments=recent_payments,
        recent_events=recent_events,
    )


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Audit trail (last 200 events) filtered by action, actor email and date range (YYYY-MM-DD).
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("Invalid date format", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("Invalid date format", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        action=action,
        actor_email=actor_email,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
