from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for
from sqlalchemy.exc import SQLAlchemyError

from app.clubadmin.db import db_session
from app.clubadmin.models import User
from app.clubadmin.modules.posts.models import Post
from app.clubadmin.modules.posts.service import (
    EDITABLE_FIELDS,
    POSTS_PER_PAGE,
    PREVIEW_DEVICES,
    autosave_pending,
    create_post,
    delete_post,
    get_all_authors,
    list_posts_paginated,
    merge_form,
    publish_post,
    restore_post,
    schedule_autosave,
    validate_post_payload,
)
from app.clubadmin.rbac import require_permission

bp = Blueprint("posts", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_post(post_id: int) -> Post:
    post = db_session().get(Post, post_id)
    if post is None:
        abort(404)
    return post


@bp.get("/posts")
@require_permission("posts.view")
def posts_list():
    s = db_session()
    try:
        page = max(1, int(request.args.get("page") or 1))
    except ValueError:
        page = 1
    author_raw = (request.args.get("author") or "").strip()
    author_id = int(author_raw) if author_raw.isdigit() else None
    state = (request.args.get("state") or "").strip()
    if state not in ("draft", "published"):
        state = ""
    order_by = (request.args.get("order_by") or "updated_at").strip()
    order_direction = "asc" if request.args.get("order_direction") == "asc" else "desc"

    posts, total_pages = list_posts_paginated(
        s,
        page=page,
        per_page=POSTS_PER_PAGE,
        author_id=author_id,
        state=state or None,
        order_by=order_by,
        order_direction=order_direction,
    )

    filters_for_urls = {
        "author": author_raw,
        "state": state,
        "order_by": order_by,
        "order_direction": order_direction,
    }
    filters_for_urls = {k: v for k, v in filters_for_urls.items() if v}
    prev_url = url_for("posts.posts_list", page=page - 1, **filters_for_urls) if page > 1 else None
    next_url = url_for("posts.posts_list", page=page + 1, **filters_for_urls) if page < total_pages else None

    return render_template(
        "admin/posts/list.html",
        posts=posts,
        authors=get_all_authors(s),
        author_id=author_id,
        state=state,
        order_by=order_by,
        order_direction=order_direction,
        page=page,
        total_pages=total_pages,
        prev_url=prev_url,
        next_url=next_url,
    )


@bp.post("/posts/new")
@require_permission("posts.edit")
def posts_new():
    s = db_session()
    u = _current_user()
    try:
        post = create_post(s, request.form.get("title"), u)
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        current_app.logger.exception("Post create failed")
        flash("Something went wrong try again.", "danger")
        return redirect(url_for("posts.posts_list"))
    return redirect(url_for("posts.post_editor", post_id=post.id))


@bp.get("/posts/<int:post_id>")
@require_permission("posts.view")
def post_editor(post_id: int):
    post = _get_post(post_id)
    device = (request.args.get("device") or "computer").strip()
    if device not in PREVIEW_DEVICES:
        device = "computer"
    return render_template(
        "admin/posts/editor.html",
        post=post,
        preview_device=device,
        preview_devices=PREVIEW_DEVICES,
        saving=autosave_pending(post.id),
        errors={},
    )


@bp.post("/posts/<int:post_id>/update")
@require_permission("posts.edit")
def post_update(post_id: int):
    """
    Autosave endpoint. JSON clients get validation errors back immediately while the
    save itself is debounced per post; plain form posts get a flash and redirect.
    """
    s = db_session()
    u = _current_user()
    post = _get_post(post_id)
    if request.is_json:
        raw = request.get_json(silent=True) or {}
        if isinstance(raw, dict):
            raw = raw.get("post", raw)
        if not isinstance(raw, dict):
            return jsonify({"ok": False, "errors": {"post": ["must be an object"]}, "status": "invalid"}), 422
    else:
        raw = request.form.to_dict()
        if "featured_post" not in raw and "raw_body" in raw:
            raw["featured_post"] = ""
    values = {k: v for k, v in raw.items() if k in EDITABLE_FIELDS}

    errors = validate_post_payload(s, post, merge_form(post, values))
    if not errors:
        schedule_autosave(current_app._get_current_object(), post.id, values, u.id)

    if request.is_json:
        status = "invalid" if errors else ("saving" if autosave_pending(post.id) else "saved")
        return jsonify({"ok": not errors, "errors": errors, "status": status}), (422 if errors else 200)

    if errors:
        for field, messages in errors.items():
            for message in messages:
                flash(f"{field.replace('_', ' ').capitalize()} {message}", "danger")
    else:
        flash("Post saved.", "success")
    return redirect(url_for("posts.post_editor", post_id=post.id))


@bp.get("/posts/<int:post_id>/status")
@require_permission("posts.view")
def post_status(post_id: int):
    s = db_session()
    post = _get_post(post_id)
    s.refresh(post)
    return jsonify(
        {
            "status": "saving" if autosave_pending(post.id) else "saved",
            "state": post.state,
            "title": post.title,
            "url_name": post.url_name,
            "updated_at": post.updated_at.isoformat() if post.updated_at else None,
        }
    )


def _transition(post_id: int, fn, success_message: str):
    s = db_session()
    u = _current_user()
    post = _get_post(post_id)
    try:
        fn(s, post, u)
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        current_app.logger.exception("Post state change failed (post_id=%s)", post_id)
        flash("Something went wrong", "danger")
        return redirect(url_for("posts.post_editor", post_id=post_id))
    flash(success_message, "success")
    return redirect(url_for("posts.post_editor", post_id=post_id))


@bp.post("/posts/<int:post_id>/publish")
@require_permission("posts.publish")
def post_publish(post_id: int):
    return _transition(post_id, publish_post, "The post was published!")


@bp.post("/posts/<int:post_id>/restore")
@require_permission("posts.edit")
def post_restore(post_id: int):
    return _transition(post_id, restore_post, "The post recovered.")


@bp.post("/posts/<int:post_id>/delete")
@require_permission("posts.edit")
def post_delete(post_id: int):
    return _transition(post_id, delete_post, "The post was deleted.")
