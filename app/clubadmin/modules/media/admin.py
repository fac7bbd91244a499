from __future__ import annotations

import mimetypes

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, send_file, url_for

from app.clubadmin.db import db_session
from app.clubadmin.jobs import create_job, job_params, start_job
from app.clubadmin.models import User
from app.clubadmin.modules.media.models import Image
from app.clubadmin.modules.media.service import (
    UploadRejected,
    add_new_image,
    count_images,
    delete_image,
    image_version_path,
    paginate_images,
    process_image,
    resolve_page,
    store_upload,
    update_image,
    upload_key,
    validate_image_payload,
    validate_upload_entries,
)
from app.clubadmin.rbac import require_permission
from app.clubadmin.storage import StorageError, storage_from_config

bp = Blueprint("media", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _per_page() -> int:
    return int(current_app.config.get("MEDIA_PER_PAGE") or 20)


def _page_arg() -> int:
    try:
        return max(1, int(request.args.get("page") or 1))
    except ValueError:
        return 1


def _image_json(image: Image, storage) -> dict:
    thumb = image.thumbnail_path or image.raw_image_path
    return {
        "id": image.id,
        "title": image.title,
        "alt_text": image.alt_text,
        "processing_state": image.processing_state,
        "thumbnail_url": storage.url_for(thumb),
        "detail_url": url_for("media.media_detail", image_id=image.id),
        "created_at": image.created_at.isoformat(),
    }


def _json_entries() -> list[dict] | None:
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return None
    entries = payload.get("entries") or []
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        return None
    return entries


def _enqueue_processing(image: Image, user: User) -> None:
    s = db_session()
    app = current_app._get_current_object()
    job = create_job(s, kind="image_processing", owner=user, params={"image_id": image.id})
    s.commit()

    def _run(js, job_row, progress):
        image_id = job_params(job_row)["image_id"]
        row = js.get(Image, image_id)
        if row is None:
            return None
        process_image(js, storage_from_config(app.config), row)
        return row.optimized_image_path

    start_job(app, job, _run, failure_message="Image processing failed")


@bp.get("/media")
@require_permission("media.view")
def media_index():
    s = db_session()
    gallery = paginate_images(s, _page_arg(), _per_page())
    return render_template(
        "admin/media/index.html",
        gallery=gallery,
        media_count=count_images(s),
        storage=storage_from_config(current_app.config),
        active_image=None,
    )


@bp.get("/media/page")
@require_permission("media.view")
def media_page():
    """
    Infinite scroll step. ?page=<current>&direction=next|prev[&overran=1]
    """
    s = db_session()
    page = resolve_page(
        _page_arg(),
        request.args.get("direction"),
        overran=(request.args.get("overran") or "") in ("1", "true"),
    )
    gallery = paginate_images(s, page, _per_page())
    storage = storage_from_config(current_app.config)
    return jsonify(
        {
            "page": gallery.page,
            "per_page": gallery.per_page,
            "end_of_timeline": gallery.end_of_timeline,
            "images": [_image_json(i, storage) for i in gallery.images],
        }
    )


@bp.post("/media/upload")
@require_permission("media.upload")
def media_upload():
    s = db_session()
    u = _current_user()
    files = [f for f in request.files.getlist("media_uploads") if f and f.filename]
    errors = validate_upload_entries([f.filename for f in files])
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("media.media_index"))

    storage = storage_from_config(current_app.config)
    created: list[Image] = []
    for f in files:
        try:
            key = store_upload(storage, f.filename, f.read(), f.mimetype)
        except UploadRejected as e:
            flash(str(e), "danger")
            continue
        except StorageError as e:
            current_app.logger.error("Media upload failed for %s: %s", f.filename, e)
            flash(f"{f.filename}: upload failed", "danger")
            continue
        image = add_new_image(
            s,
            raw_key=key,
            user=u,
            upload_data={"uploader": "server", "key": key, "client_name": f.filename, "content_type": f.mimetype},
        )
        created.append(image)
    s.commit()

    for image in created:
        _enqueue_processing(image, u)
    if created:
        flash(f"Uploaded {len(created)} image(s).", "success")
    return redirect(url_for("media.media_index"))


@bp.post("/media/presign")
@require_permission("media.upload")
def media_presign():
    entries = _json_entries()
    if entries is None:
        return jsonify({"ok": False, "errors": ["Expected a JSON object with an entries list"]}), 422
    names = [str(e.get("client_name") or "") for e in entries]
    errors = validate_upload_entries(names)
    if errors:
        return jsonify({"ok": False, "errors": errors}), 422
    storage = storage_from_config(current_app.config)
    uploads = []
    for entry, name in zip(entries, names):
        key = upload_key(name)
        signed = storage.presigned_post(key, content_type=entry.get("content_type") or None)
        uploads.append({"client_name": name, "key": key, "uploader": "S3", **signed})
    return jsonify({"ok": True, "uploads": uploads})


@bp.post("/media/confirm")
@require_permission("media.upload")
def media_confirm():
    """Record images the browser uploaded straight to the bucket."""
    s = db_session()
    u = _current_user()
    entries = _json_entries()
    if entries is None:
        return jsonify({"ok": False, "errors": ["Expected a JSON object with an entries list"]}), 422
    errors = validate_upload_entries([str(e.get("client_name") or "") for e in entries])
    for e in entries:
        key = str(e.get("key") or "")
        if not key.startswith("public/") or ".." in key:
            errors.append(f"{key}: invalid upload key")
    if errors:
        return jsonify({"ok": False, "errors": errors}), 422

    created = [
        add_new_image(s, raw_key=str(e["key"]), user=u, upload_data={"uploader": "S3", **e})
        for e in entries
    ]
    s.commit()
    for image in created:
        _enqueue_processing(image, u)
    return jsonify({"ok": True, "ids": [i.id for i in created]})


@bp.get("/media/<int:image_id>")
@require_permission("media.view")
def media_detail(image_id: int):
    s = db_session()
    image = s.get(Image, image_id)
    if image is None:
        abort(404)
    version = request.args.get("version") or "optimized"
    if version not in ("thumbnail", "optimized", "raw"):
        version = "thumbnail"
    storage = storage_from_config(current_app.config)
    path = image_version_path(image, version) or image.raw_image_path
    return render_template(
        "admin/media/index.html",
        gallery=paginate_images(s, 1, _per_page()),
        media_count=count_images(s),
        storage=storage,
        active_image=image,
        selected_version=version,
        selected_url=storage.url_for(path),
        errors={},
    )


@bp.post("/media/<int:image_id>")
@require_permission("media.edit")
def media_update(image_id: int):
    s = db_session()
    u = _current_user()
    image = s.get(Image, image_id)
    if image is None:
        abort(404)
    payload = {
        "title": request.form.get("title"),
        "alt_text": request.form.get("alt_text"),
        "caption": request.form.get("caption"),
    }
    errors = validate_image_payload(payload)
    if errors:
        for field, messages in errors.items():
            for message in messages:
                flash(f"{field.replace('_', ' ').capitalize()} {message}", "danger")
        return redirect(url_for("media.media_detail", image_id=image.id))
    update_image(s, image, payload, u)
    s.commit()
    flash("Image updated.", "success")
    return redirect(url_for("media.media_index"))


@bp.post("/media/<int:image_id>/validate")
@require_permission("media.edit")
def media_validate(image_id: int):
    payload = request.get_json(silent=True) or request.form.to_dict()
    if not isinstance(payload, dict):
        return jsonify({"valid": False, "errors": {"payload": ["must be an object"]}}), 422
    errors = validate_image_payload(payload)
    return jsonify({"valid": not errors, "errors": errors})


@bp.post("/media/<int:image_id>/delete")
@require_permission("media.edit")
def media_delete(image_id: int):
    s = db_session()
    u = _current_user()
    image = s.get(Image, image_id)
    if image is None:
        abort(404)
    try:
        delete_image(s, storage_from_config(current_app.config), image, u)
    except StorageError as e:
        current_app.logger.warning("Stored files for image %s could not be removed: %s", image_id, e)
    s.commit()
    flash("Image deleted.", "success")
    return redirect(url_for("media.media_index"))


@bp.get("/media/files/<path:key>")
@require_permission("media.view")
def media_file(key: str):
    """Serves locally stored images (LocalStorage.url_for points here)."""
    if not key.startswith("public/") or ".." in key:
        abort(404)
    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(key)
    except StorageError:
        abort(404)
    return send_file(fobj, mimetype=mimetypes.guess_type(key)[0] or "application/octet-stream")
