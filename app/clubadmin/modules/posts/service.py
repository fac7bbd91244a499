from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import TYPE_CHECKING

from flask import Flask
from markupsafe import Markup, escape
from sqlalchemy import func, or_

from app.clubadmin.audit import record_event
from app.clubadmin.db import session_scope
from app.clubadmin.debounce import Debouncer
from app.clubadmin.models import User
from app.clubadmin.modules.posts.models import Post

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

POSTS_PER_PAGE = 20
SORTABLE_FIELDS = ("title", "state", "published_on", "updated_at", "created_at")
PREVIEW_DEVICES = ("phone", "tablet", "computer")
EDITABLE_FIELDS = ("title", "url_name", "preview_text", "raw_body", "featured_post")
UNTITLED_URL_NAME = "new-untitled-post"

_URL_NAME_RE = re.compile(r"^[0-9a-z-]+$")

autosaver = Debouncer()


def slugify_title(title: str | None) -> str:
    name = re.sub(r"\s+", "-", (title or "").strip().lower())
    name = re.sub(r"[^0-9\-a-z]", "", name)
    return name or UNTITLED_URL_NAME


def count_posts_with_url_name(s: "Session", url_name: str) -> int:
    return (
        s.query(func.count(Post.id))
        .filter(or_(Post.url_name == url_name, Post.url_name.ilike(f"{url_name}-%")))
        .scalar()
        or 0
    )


def title_to_url_name(s: "Session", title: str | None) -> str:
    name = slugify_title(title)
    n = count_posts_with_url_name(s, name)
    if n == 0:
        return name
    return f"{name}-{n + 1}"


def render_body(raw: str | None) -> str | None:
    """Escape the raw body and wrap blank-line separated blocks in paragraphs."""
    if raw is None:
        return None
    blocks = [b.strip() for b in re.split(r"\n\s*\n", raw) if b.strip()]
    return "".join(Markup("<p>{}</p>").format(Markup("<br>").join(escape(b).split("\n"))) for b in blocks)


def list_posts_paginated(
    s: "Session",
    *,
    page: int = 1,
    per_page: int = POSTS_PER_PAGE,
    author_id: int | None = None,
    state: str | None = None,
    order_by: str = "updated_at",
    order_direction: str = "desc",
) -> tuple[list[Post], int]:
    q = s.query(Post).filter(Post.state != "deleted")
    if author_id:
        q = q.filter(Post.user_id == author_id)
    if state:
        q = q.filter(Post.state == state)
    total = q.count()
    column = getattr(Post, order_by if order_by in SORTABLE_FIELDS else "updated_at")
    order = column.asc() if order_direction == "asc" else column.desc()
    posts = q.order_by(order, Post.id.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return posts, max(1, math.ceil(total / per_page))


def get_all_authors(s: "Session") -> list[tuple[int, str]]:
    rows = (
        s.query(User)
        .join(Post, Post.user_id == User.id)
        .distinct()
        .order_by(User.first_name.asc(), User.last_name.asc())
        .all()
    )
    return [(u.id, u.display_name) for u in rows]


def create_post(s: "Session", title: str | None, user: User) -> Post:
    now = datetime.utcnow()
    title = (title or "").strip()
    post = Post(
        title=title,
        url_name=title_to_url_name(s, title),
        state="draft",
        featured_post=False,
        user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(post)
    s.flush()
    record_event(
        s,
        actor=user,
        action="post.create",
        entity_type="Post",
        entity_id=str(post.id),
        metadata={"title": post.title, "url_name": post.url_name},
    )
    return post


def merge_form(post: Post, values: dict) -> dict:
    """Editor payload with title and url_name falling back to the stored post."""
    merged = dict(values)
    merged.setdefault("title", post.title)
    merged.setdefault("url_name", post.url_name)
    return merged


def validate_post_payload(s: "Session", post: Post, payload: dict) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    title = payload.get("title")
    if title is not None and len(str(title)) > 255:
        errors.setdefault("title", []).append("should be at most 255 character(s)")
    url_name = str(payload.get("url_name") or "").strip()
    if not url_name:
        errors.setdefault("url_name", []).append("can't be blank")
    elif not _URL_NAME_RE.match(url_name):
        errors.setdefault("url_name", []).append("may only contain lowercase letters, numbers and dashes")
    else:
        clash = s.query(Post.id).filter(Post.url_name == url_name, Post.id != post.id).first()
        if clash:
            errors.setdefault("url_name", []).append("has already been taken")
    preview = payload.get("preview_text")
    if preview is not None and len(str(preview)) > 500:
        errors.setdefault("preview_text", []).append("should be at most 500 character(s)")
    return errors


def update_post(s: "Session", post: Post, payload: dict, user: User, *, action: str = "post.update") -> Post:
    changes: dict[str, dict] = {}
    for name in EDITABLE_FIELDS:
        if name not in payload:
            continue
        value = payload[name]
        if name == "featured_post":
            value = value in (True, "true", "on", "1")
        elif isinstance(value, str) and name in ("title", "url_name"):
            value = value.strip()
        old = getattr(post, name)
        if old != value:
            changes[name] = {"old": old, "new": value}
            setattr(post, name, value)
    if "raw_body" in changes:
        post.rendered_body = render_body(post.raw_body)
    if changes:
        post.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action=action,
            entity_type="Post",
            entity_id=str(post.id),
            metadata={"fields": sorted(changes)},
        )
    return post


def _set_state(s: "Session", post: Post, user: User, action: str, **fields) -> Post:
    old_state = post.state
    for name, value in fields.items():
        setattr(post, name, value)
    post.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action=action,
        entity_type="Post",
        entity_id=str(post.id),
        metadata={"from": old_state, "to": post.state},
    )
    return post


def publish_post(s: "Session", post: Post, user: User) -> Post:
    return _set_state(s, post, user, "post.publish", state="published", published_on=datetime.utcnow())


def restore_post(s: "Session", post: Post, user: User) -> Post:
    return _set_state(
        s, post, user, "post.restore", state="draft", published_on=None, deleted_on=None, featured_post=False
    )


def delete_post(s: "Session", post: Post, user: User) -> Post:
    return _set_state(
        s, post, user, "post.delete", state="deleted", deleted_on=datetime.utcnow(), published_on=None, featured_post=False
    )


def schedule_autosave(app: Flask, post_id: int, values: dict, user_id: int) -> None:
    """
    Debounced save keyed by post id; the last payload within the window wins.
    """

    def _save() -> None:
        with app.app_context(), session_scope(app) as s:
            post = s.get(Post, post_id)
            user = s.get(User, user_id)
            if post is None or user is None:
                logger.warning("Autosave skipped: post %s or user %s no longer exists", post_id, user_id)
                return
            errors = validate_post_payload(s, post, merge_form(post, values))
            if errors:
                logger.warning("Autosave skipped for post %s: %s", post_id, errors)
                return
            update_post(s, post, values, user, action="post.autosave")

    autosaver.delay(post_id, _save, float(app.config.get("AUTOSAVE_DEBOUNCE_SECONDS") or 0))


def autosave_pending(post_id: int) -> bool:
    return autosaver.is_pending(post_id)
