from __future__ import annotations

import csv
import io
import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import and_, exists, not_, or_

from app.clubadmin.audit import record_event
from app.clubadmin.constants import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    BOARD_POSITIONS,
    MEMBERSHIP_PLANS,
    MEMBERSHIP_TYPES,
    USER_EXPORT_FIELDS,
    USER_ROLES,
    USER_STATES,
)
from app.clubadmin.models import User
from app.clubadmin.modules.members.models import SignupApplication, Subscription

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
SORTABLE_FIELDS = ("email", "first_name", "last_name", "state", "role")
FILTER_FIELDS = {
    "state": USER_STATES,
    "role": USER_ROLES,
    "board_position": BOARD_POSITIONS,
    "membership_type": MEMBERSHIP_TYPES,
}

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class MembershipError(RuntimeError):
    """Membership change that cannot be applied; message is user-facing."""


class InvalidListParams(ValueError):
    pass


@dataclass
class ListParams:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    order_by: str = "email"
    order_direction: str = "asc"
    filters: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class PageMeta:
    page: int
    page_size: int
    total_count: int
    total_pages: int
    has_prev: bool
    has_next: bool


def parse_list_params(args) -> ListParams:
    """
    Build ListParams from request.args (a MultiDict). Raises InvalidListParams.
    Multi-valued filters come in as repeated keys, e.g. ?state=active&state=suspended.
    """
    params = ListParams()
    try:
        params.page = int(args.get("page") or 1)
        params.page_size = int(args.get("page_size") or DEFAULT_PAGE_SIZE)
    except ValueError as e:
        raise InvalidListParams("page and page_size must be integers") from e
    if params.page < 1:
        raise InvalidListParams("page must be at least 1")
    if params.page_size < 1 or params.page_size > MAX_PAGE_SIZE:
        raise InvalidListParams(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

    order_by = (args.get("order_by") or "email").strip()
    if order_by not in SORTABLE_FIELDS:
        raise InvalidListParams(f"cannot sort by {order_by}")
    params.order_by = order_by
    direction = (args.get("order_direction") or "asc").strip().lower()
    if direction not in ("asc", "desc"):
        raise InvalidListParams("order_direction must be asc or desc")
    params.order_direction = direction

    for name, allowed in FILTER_FIELDS.items():
        values = [v.strip() for v in args.getlist(name) if v and v.strip()]
        unknown = [v for v in values if v not in allowed]
        if unknown:
            raise InvalidListParams(f"unknown {name}: {', '.join(unknown)}")
        if values:
            params.filters[name] = values
    return params


def _active_subscription_exists(plan_types: list[str] | None = None):
    cond = and_(
        Subscription.user_id == User.id,
        Subscription.status.in_(sorted(ACTIVE_SUBSCRIPTION_STATUSES)),
    )
    if plan_types:
        cond = and_(cond, Subscription.plan_type.in_(plan_types))
    return exists().where(cond)


def _membership_type_clause(values: list[str]):
    clauses = []
    plans = [v for v in values if v in MEMBERSHIP_PLANS]
    if plans:
        clauses.append(and_(User.lifetime_membership_awarded_at.is_(None), _active_subscription_exists(plans)))
    if "lifetime" in values:
        clauses.append(User.lifetime_membership_awarded_at.isnot(None))
    if "none" in values:
        clauses.append(and_(User.lifetime_membership_awarded_at.is_(None), not_(_active_subscription_exists())))
    return or_(*clauses)


def list_paginated_users(s: "Session", params: ListParams, search: str | None = None) -> tuple[list[User], PageMeta]:
    q = s.query(User)

    states = params.filters.get("state")
    if states:
        q = q.filter(User.state.in_(states))
    else:
        q = q.filter(User.state != "deleted")
    if params.filters.get("role"):
        q = q.filter(User.role.in_(params.filters["role"]))
    if params.filters.get("board_position"):
        q = q.filter(User.board_position.in_(params.filters["board_position"]))
    if params.filters.get("membership_type"):
        q = q.filter(_membership_type_clause(params.filters["membership_type"]))

    search = (search or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            (User.email.ilike(like))
            | (User.first_name.ilike(like))
            | (User.last_name.ilike(like))
            | (User.phone_number.ilike(like))
        )

    total_count = q.count()
    column = getattr(User, params.order_by)
    order = column.desc() if params.order_direction == "desc" else column.asc()
    users = (
        q.order_by(order, User.id.asc())
        .offset((params.page - 1) * params.page_size)
        .limit(params.page_size)
        .all()
    )
    total_pages = max(1, math.ceil(total_count / params.page_size))
    meta = PageMeta(
        page=params.page,
        page_size=params.page_size,
        total_count=total_count,
        total_pages=total_pages,
        has_prev=params.page > 1,
        has_next=params.page < total_pages,
    )
    return users, meta


def get_active_subscription(s: "Session", user: User) -> Subscription | None:
    return (
        s.query(Subscription)
        .filter(
            Subscription.user_id == user.id,
            Subscription.status.in_(sorted(ACTIVE_SUBSCRIPTION_STATUSES)),
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def active_membership_type(s: "Session", user: User) -> str | None:
    """lifetime, single, family, or None."""
    if user.lifetime_membership_awarded_at is not None:
        return "lifetime"
    sub = get_active_subscription(s, user)
    return sub.plan_type if sub else None


def membership_types_for(s: "Session", users: list[User]) -> dict[int, str | None]:
    """Membership type per user id for a page of users (one query for subscriptions)."""
    ids = [u.id for u in users]
    result: dict[int, str | None] = {u.id: ("lifetime" if u.lifetime_membership_awarded_at else None) for u in users}
    if not ids:
        return result
    subs = (
        s.query(Subscription)
        .filter(Subscription.user_id.in_(ids), Subscription.status.in_(sorted(ACTIVE_SUBSCRIPTION_STATUSES)))
        .order_by(Subscription.created_at.asc())
        .all()
    )
    for sub in subs:
        if result.get(sub.user_id) != "lifetime":
            result[sub.user_id] = sub.plan_type
    return result


# ---------- Signup review ----------
def pending_users(s: "Session") -> list[User]:
    return (
        s.query(User)
        .filter(User.state == "pending_approval")
        .order_by(User.created_at.asc(), User.id.asc())
        .all()
    )


def latest_application(s: "Session", user: User) -> SignupApplication | None:
    return (
        s.query(SignupApplication)
        .filter(SignupApplication.user_id == user.id)
        .order_by(SignupApplication.created_at.desc(), SignupApplication.id.desc())
        .first()
    )


def _review(s: "Session", user: User, reviewer: User, *, outcome: str, new_state: str) -> User:
    if user.state != "pending_approval":
        raise MembershipError(f"User is not pending approval (state={user.state})")
    now = datetime.utcnow()
    old_state = user.state
    user.state = new_state
    user.updated_at = now
    application = latest_application(s, user)
    if application is not None:
        application.review_outcome = outcome
        application.reviewed_at = now
        application.reviewed_by_user_id = reviewer.id
    record_event(
        s,
        actor=reviewer,
        action=f"user.{outcome}",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"from": old_state, "to": new_state},
    )
    return user


def approve_user(s: "Session", user: User, reviewer: User) -> User:
    return _review(s, user, reviewer, outcome="approved", new_state="active")


def deny_user(s: "Session", user: User, reviewer: User) -> User:
    return _review(s, user, reviewer, outcome="rejected", new_state="rejected")


# ---------- Profile ----------
def validate_user_payload(payload: dict) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}

    def add(name: str, message: str) -> None:
        errors.setdefault(name, []).append(message)

    email = (payload.get("email") or "").strip()
    if not email:
        add("email", "can't be blank")
    elif not _EMAIL_RE.match(email) or len(email) > 160:
        add("email", "must have the @ sign and no spaces")
    if not (payload.get("first_name") or "").strip():
        add("first_name", "can't be blank")
    if not (payload.get("last_name") or "").strip():
        add("last_name", "can't be blank")
    phone = (payload.get("phone_number") or "").strip()
    if phone and not re.fullmatch(r"\+?[\d\s().-]{7,20}", phone):
        add("phone_number", "is not a valid phone number")
    state = (payload.get("state") or "").strip()
    if state and state not in USER_STATES:
        add("state", "is invalid")
    role = (payload.get("role") or "").strip()
    if role and role not in USER_ROLES:
        add("role", "is invalid")
    board_position = (payload.get("board_position") or "").strip()
    if board_position and board_position not in BOARD_POSITIONS:
        add("board_position", "is invalid")
    return errors


def update_user(s: "Session", user: User, payload: dict, actor: User) -> User:
    changes: dict[str, dict] = {}

    def _set(attr: str, value) -> None:
        old = getattr(user, attr)
        if old != value:
            changes[attr] = {"old": old, "new": value}
            setattr(user, attr, value)

    _set("email", (payload.get("email") or "").strip().lower())
    _set("first_name", (payload.get("first_name") or "").strip())
    _set("last_name", (payload.get("last_name") or "").strip())
    _set("phone_number", (payload.get("phone_number") or "").strip() or None)
    _set("most_connected_country", (payload.get("most_connected_country") or "").strip() or None)
    if (payload.get("state") or "").strip():
        _set("state", payload["state"].strip())
    if (payload.get("role") or "").strip():
        _set("role", payload["role"].strip())
    _set("board_position", (payload.get("board_position") or "").strip() or None)

    if changes:
        user.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="user.update",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"changes": changes},
        )
    return user


# ---------- Memberships ----------
def award_lifetime(s: "Session", user: User, actor: User, awarded_at: datetime | None = None) -> Subscription | None:
    """
    Returns the single/family subscription that was cancelled, if any.
    """
    user.lifetime_membership_awarded_at = awarded_at or datetime.utcnow()
    user.updated_at = datetime.utcnow()
    cancelled = None
    sub = get_active_subscription(s, user)
    if sub is not None and sub.plan_type in MEMBERSHIP_PLANS:
        sub.status = "cancelled"
        sub.cancelled_at = datetime.utcnow()
        sub.updated_at = datetime.utcnow()
        cancelled = sub
    record_event(
        s,
        actor=actor,
        action="membership.lifetime_award",
        entity_type="User",
        entity_id=str(user.id),
        metadata={
            "awarded_at": user.lifetime_membership_awarded_at.isoformat(),
            "cancelled_subscription_id": cancelled.id if cancelled else None,
        },
    )
    return cancelled


def revoke_lifetime(s: "Session", user: User, actor: User) -> None:
    old = user.lifetime_membership_awarded_at
    user.lifetime_membership_awarded_at = None
    user.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="membership.lifetime_revoke",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"previous_awarded_at": old.isoformat() if old else None},
    )


def change_membership_type(s: "Session", user: User, new_type: str | None, actor: User) -> str | None:
    """
    Switch the active subscription's plan. Returns "upgrade" / "downgrade",
    or None when the user is already on that plan.
    """
    sub = get_active_subscription(s, user)
    if sub is None:
        raise MembershipError("User does not have an active subscription to change")
    new_type = (new_type or "").strip()
    if not new_type:
        raise MembershipError("Please select a membership type")
    new_plan = MEMBERSHIP_PLANS.get(new_type)
    if new_plan is None:
        raise MembershipError("Invalid membership type selected")
    if sub.plan_type == new_type:
        return None
    current_plan = MEMBERSHIP_PLANS.get(sub.plan_type)
    if current_plan is None:
        raise MembershipError("Could not determine current membership plan")

    direction = "upgrade" if new_plan["amount"] > current_plan["amount"] else "downgrade"
    old_type = sub.plan_type
    sub.plan_type = new_type
    sub.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="membership.change_type",
        entity_type="Subscription",
        entity_id=str(sub.id),
        metadata={"from": old_type, "to": new_type, "direction": direction, "user_id": user.id},
    )
    return direction


def parse_period_end(raw: str | None) -> datetime:
    """Accepts YYYY-MM-DD or a datetime-local value (YYYY-MM-DDTHH:MM). Raises ValueError."""
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("empty date")
    if "T" in raw:
        return datetime.fromisoformat(raw)
    return datetime.combine(date.fromisoformat(raw), datetime.min.time())


def update_membership_period(s: "Session", user: User, period_end: datetime, actor: User) -> Subscription:
    sub = get_active_subscription(s, user)
    if sub is None:
        raise MembershipError("No active subscription found")
    old_end = sub.current_period_end
    sub.current_period_end = period_end
    sub.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="membership.update_period",
        entity_type="Subscription",
        entity_id=str(sub.id),
        metadata={"from": old_end.isoformat() if old_end else None, "to": period_end.isoformat()},
    )
    return sub


# ---------- CSV export ----------
def validate_export_fields(fields: list[str]) -> list[str]:
    errors = []
    if not fields:
        errors.append("Select at least one field to export.")
    unknown = [f for f in fields if f not in USER_EXPORT_FIELDS]
    if unknown:
        errors.append(f"Unknown export fields: {', '.join(unknown)}")
    return errors


def export_users_csv(
    s: "Session",
    fields: list[str],
    *,
    only_subscribers: bool = False,
    progress: Callable[[int, str | None], None] | None = None,
) -> bytes:
    """
    Render selected user fields as CSV. Reports progress every 100 rows.
    """
    q = s.query(User).filter(User.state != "deleted")
    if only_subscribers:
        q = q.filter(_active_subscription_exists())
    total = q.count()

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([USER_EXPORT_FIELDS[f] for f in fields])
    processed = 0
    for user in q.order_by(User.id.asc()).all():
        writer.writerow(["" if getattr(user, f) is None else getattr(user, f) for f in fields])
        processed += 1
        if progress is not None and processed % 100 == 0:
            progress(int(processed * 100 / total) if total else 100, f"Exported {processed} of {total} users")
    logger.info("User CSV export wrote %s rows (fields=%s only_subscribers=%s)", processed, fields, only_subscribers)
    return buf.getvalue().encode("utf-8")
