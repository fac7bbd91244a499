import io
import re

import pytest
from PIL import Image as PILImage
from werkzeug.security import generate_password_hash

from app.clubadmin import auth, create_app
from app.clubadmin.db import session_scope
from app.clubadmin.models import BackgroundJob, Base, Permission, Role, User
from app.clubadmin.modules.media.models import Image
from app.clubadmin.modules.media.service import (
    process_image_bytes,
    resolve_page,
    upload_key,
    validate_upload_entries,
)


def _png_bytes(size=(1200, 800), color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    PILImage.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("JOBS_INLINE", "1")
    monkeypatch.setenv("MEDIA_PER_PAGE", "2")
    auth._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        role = Role(key="editor", name="Editor")
        for key in ("admin.view", "media.view", "media.upload", "media.edit"):
            role.permissions.append(Permission(key=key, name=key))
        editor = User(
            email="editor@example.com", password_hash=generate_password_hash("pw"), is_active=True, state="active"
        )
        editor.roles.append(role)
        s.add_all([role, editor])

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client):
    client.post("/auth/login", data={"email": "editor@example.com", "password": "pw"}, follow_redirects=True)
    with client.session_transaction() as sess:
        return sess["csrf_token"]


def _upload(client, token, *files):
    return client.post(
        "/admin/media/upload",
        data={"csrf_token": token, "media_uploads": [(io.BytesIO(data), name) for name, data in files]},
        content_type="multipart/form-data",
        follow_redirects=True,
    )


# ---------- service ----------
def test_resolve_page():
    assert resolve_page(1, "next") == 2
    assert resolve_page(3, "prev") == 2
    assert resolve_page(1, "prev") == 1
    assert resolve_page(5, "prev", overran=True) == 1
    assert resolve_page(4, None) == 4


def test_validate_upload_entries():
    assert validate_upload_entries(["a.jpg", "b.PNG"]) == []
    assert validate_upload_entries([]) == ["Select at least one image to upload"]
    errors = validate_upload_entries(["notes.pdf"])
    assert errors == ["notes.pdf: You have selected an unacceptable file type"]
    errors = validate_upload_entries([f"{i}.jpg" for i in range(11)])
    assert "You have selected too many files" in errors


def test_upload_key_is_sanitized_and_unique():
    key = upload_key("../../etc/My Photo.jpg")
    assert re.fullmatch(r"public/[0-9a-f]{8}_etc_My_Photo.jpg", key)
    assert upload_key("a.png") != upload_key("a.png")


def test_process_image_bytes_makes_thumbnail():
    result = process_image_bytes(_png_bytes((1200, 800)), ".png")
    assert (result["width"], result["height"]) == (1200, 800)
    assert result["content_type"] == "image/png"
    with PILImage.open(io.BytesIO(result["thumbnail"])) as thumb:
        assert max(thumb.size) == 500


# ---------- routes ----------
def test_upload_processes_image(app, client, tmp_path):
    token = _login(client)
    r = _upload(client, token, ("cabin.png", _png_bytes()))
    assert b"Uploaded 1 image(s)." in r.data

    with session_scope(app) as s:
        image = s.query(Image).one()
        assert image.raw_image_path.startswith("public/")
        assert image.raw_image_path.endswith("_cabin.png")
        assert image.processing_state == "completed"
        assert image.width == 1200
        assert image.thumbnail_path.startswith(f"public/thumbnails/{image.id}_")
        assert image.thumbnail_path.endswith("_cabin.png")
        job = s.query(BackgroundJob).one()
        assert job.kind == "image_processing"
        assert job.status == "complete"
        image_id = image.id
        thumbnail_path = image.thumbnail_path

    assert (tmp_path / "storage" / "media" / thumbnail_path).exists()
    r = client.get(f"/admin/media/files/{thumbnail_path}")
    assert r.status_code == 200
    assert r.mimetype == "image/png"

    r = client.get(f"/admin/media/{image_id}")
    assert r.status_code == 200


def test_upload_rejects_bad_extension(app, client):
    token = _login(client)
    r = _upload(client, token, ("notes.txt", b"hello"))
    assert b"notes.txt: You have selected an unacceptable file type" in r.data
    with session_scope(app) as s:
        assert s.query(Image).count() == 0


def test_unreadable_image_is_marked_failed(app, client):
    token = _login(client)
    _upload(client, token, ("broken.jpg", b"not really a jpeg"))
    with session_scope(app) as s:
        image = s.query(Image).one()
        assert image.processing_state == "failed"
        assert s.query(BackgroundJob).one().status == "failed"


def test_gallery_page_json(app, client):
    token = _login(client)
    for name in ("a.png", "b.png", "c.png"):
        _upload(client, token, (name, _png_bytes((40, 40))))

    r = client.get("/admin/media/page?page=1&direction=next")
    assert r.status_code == 200
    assert r.json["page"] == 2
    assert len(r.json["images"]) == 1
    assert r.json["end_of_timeline"] is True

    r = client.get("/admin/media/page?page=2&direction=prev")
    assert r.json["page"] == 1
    assert len(r.json["images"]) == 2
    assert r.json["images"][0]["thumbnail_url"].startswith("/admin/media/files/public/thumbnails/")


def test_update_and_delete_image(app, client, tmp_path):
    token = _login(client)
    _upload(client, token, ("dock.png", _png_bytes((64, 64))))
    with session_scope(app) as s:
        image = s.query(Image).one()
        image_id, raw_key = image.id, image.raw_image_path

    r = client.post(
        f"/admin/media/{image_id}",
        data={"csrf_token": token, "title": "The dock", "alt_text": "Wooden dock at sunset", "caption": ""},
        follow_redirects=True,
    )
    assert b"Image updated." in r.data
    with session_scope(app) as s:
        image = s.get(Image, image_id)
        assert image.title == "The dock"
        assert image.caption is None

    r = client.post(
        f"/admin/media/{image_id}", data={"csrf_token": token, "title": "x" * 300}, follow_redirects=True
    )
    assert b"Title should be at most 255 character(s)" in r.data

    r = client.post(f"/admin/media/{image_id}/delete", data={"csrf_token": token}, follow_redirects=True)
    assert b"Image deleted." in r.data
    with session_scope(app) as s:
        assert s.get(Image, image_id) is None
    assert not (tmp_path / "storage" / "media" / raw_key).exists()


def test_presign_and_confirm(app, client, tmp_path):
    token = _login(client)
    r = client.post(
        "/admin/media/presign",
        json={"entries": [{"client_name": "lake view.jpg", "content_type": "image/jpeg"}]},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 200
    upload = r.json["uploads"][0]
    assert upload["key"].startswith("public/")
    assert upload["key"].endswith("_lake_view.jpg")
    assert upload["local"] is True

    r = client.post(
        "/admin/media/presign",
        json={"entries": [{"client_name": "clip.mov"}]},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 422

    # the browser would have put the object in the bucket already
    target = tmp_path / "storage" / "media" / upload["key"]
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(_png_bytes((30, 20)))
    r = client.post(
        "/admin/media/confirm",
        json={"entries": [{"client_name": "lake view.jpg", "key": upload["key"]}]},
        headers={"X-CSRF-Token": token},
    )
    assert r.json["ok"] is True
    with session_scope(app) as s:
        image = s.get(Image, r.json["ids"][0])
        assert image.upload_data["uploader"] == "S3"
        assert image.processing_state == "completed"
        assert image.optimized_image_path.endswith(".jpg")

    r = client.post(
        "/admin/media/confirm",
        json={"entries": [{"client_name": "x.jpg", "key": "private/../x.jpg"}]},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 422


def test_validate_image_metadata(client):
    token = _login(client)
    r = client.post("/admin/media/1/validate", json={"alt_text": "y" * 256}, headers={"X-CSRF-Token": token})
    assert r.json["valid"] is False
    assert r.json["errors"]["alt_text"] == ["should be at most 255 character(s)"]


def test_media_files_only_serves_public_gallery_keys(client, tmp_path):
    _login(client)
    secrets = {
        tmp_path / "storage" / "expense" / "receipts" / "123_abcd_secret.pdf": b"%PDF secret receipt",
        tmp_path / "storage" / "exports" / "users_1_x.csv": b"Email\nvip@example.com\n",
        tmp_path / "storage" / "media" / "private" / "notes.png": b"not public",
    }
    for path, data in secrets.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    for key in (
        "expense/receipts/123_abcd_secret.pdf",
        "exports/users_1_x.csv",
        "private/notes.png",
        "public/../../expense/receipts/123_abcd_secret.pdf",
    ):
        r = client.get(f"/admin/media/files/{key}")
        assert r.status_code == 404, key
        assert b"secret" not in r.data


def test_deleting_image_keeps_raw_file_of_same_named_upload(app, client, tmp_path):
    token = _login(client)
    _upload(client, token, ("a.png", _png_bytes((40, 40))))
    _upload(client, token, ("a.png", _png_bytes((40, 40))))
    with session_scope(app) as s:
        first, second = s.query(Image).order_by(Image.id).all()
        assert first.raw_image_path != second.raw_image_path
        first_id, second_raw = first.id, second.raw_image_path

    client.post(f"/admin/media/{first_id}/delete", data={"csrf_token": token})
    assert (tmp_path / "storage" / "media" / second_raw).exists()


def test_deleting_image_keeps_raw_file_still_referenced(app, client, tmp_path):
    token = _login(client)
    target = tmp_path / "storage" / "media" / "public" / "shared_dock.png"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(_png_bytes((30, 20)))
    entry = {"client_name": "dock.png", "key": "public/shared_dock.png"}
    r = client.post("/admin/media/confirm", json={"entries": [entry, entry]}, headers={"X-CSRF-Token": token})
    first_id, second_id = r.json["ids"]

    client.post(f"/admin/media/{first_id}/delete", data={"csrf_token": token})
    assert target.exists()
    client.post(f"/admin/media/{second_id}/delete", data={"csrf_token": token})
    assert not target.exists()


def test_malformed_json_bodies_are_rejected(client):
    token = _login(client)
    headers = {"X-CSRF-Token": token}
    for url, body in (
        ("/admin/media/presign", [1, 2]),
        ("/admin/media/presign", {"entries": ["a.jpg"]}),
        ("/admin/media/confirm", {"entries": {"client_name": "a.jpg"}}),
    ):
        r = client.post(url, json=body, headers=headers)
        assert r.status_code == 422, (url, body)
        assert r.json["ok"] is False

    r = client.post("/admin/media/1/validate", json=["alt_text"], headers=headers)
    assert r.status_code == 422
    assert r.json["valid"] is False
