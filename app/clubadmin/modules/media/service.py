from __future__ import annotations

import io
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from PIL import Image as PILImage
from PIL import ImageOps, UnidentifiedImageError
from werkzeug.utils import secure_filename

from app.clubadmin.audit import record_event
from app.clubadmin.constants import IMAGE_EXTENSIONS, IMAGE_VERSIONS, MAX_UPLOAD_ENTRIES, THUMBNAIL_SIZE
from app.clubadmin.models import User
from app.clubadmin.modules.media.models import Image

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.clubadmin.storage import Storage

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024

# extension -> (Pillow format, content type) for processed copies
_OUTPUT_FORMATS = {
    ".jpg": ("JPEG", "image/jpeg"),
    ".jpeg": ("JPEG", "image/jpeg"),
    ".png": ("PNG", "image/png"),
    ".gif": ("PNG", "image/png"),
    ".webp": ("WEBP", "image/webp"),
}


class ImageProcessingError(RuntimeError):
    pass


class UploadRejected(ValueError):
    pass


@dataclass
class GalleryPage:
    images: list[Image]
    page: int
    per_page: int
    end_of_timeline: bool


def list_images(s: "Session", offset: int, limit: int) -> list[Image]:
    return (
        s.query(Image)
        .order_by(Image.created_at.desc(), Image.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )


def count_images(s: "Session") -> int:
    return s.query(Image).count()


def paginate_images(s: "Session", page: int, per_page: int) -> GalleryPage:
    page = max(1, page)
    images = list_images(s, (page - 1) * per_page, per_page)
    return GalleryPage(images=images, page=page, per_page=per_page, end_of_timeline=len(images) < per_page)


def resolve_page(current: int, direction: str | None, overran: bool = False) -> int:
    """
    Page to load for an infinite-scroll step: "next" advances, "prev" steps back
    (never below 1), and an overrun on prev jumps back to the first page.
    """
    current = max(1, current)
    if direction == "next":
        return current + 1
    if direction == "prev":
        if overran:
            return 1
        return current - 1 if current > 1 else current
    return current


def upload_key(client_name: str) -> str:
    return f"public/{uuid.uuid4().hex[:8]}_{secure_filename(client_name) or 'upload'}"


def extension_of(name: str) -> str:
    return os.path.splitext(name or "")[1].lower()


def validate_upload_entries(names: list[str]) -> list[str]:
    errors: list[str] = []
    if not names:
        errors.append("Select at least one image to upload")
    if len(names) > MAX_UPLOAD_ENTRIES:
        errors.append("You have selected too many files")
    for name in names:
        if extension_of(name) not in IMAGE_EXTENSIONS:
            errors.append(f"{name}: You have selected an unacceptable file type")
    return errors


def add_new_image(s: "Session", *, raw_key: str, user: User, upload_data: dict[str, Any]) -> Image:
    now = datetime.utcnow()
    image = Image(
        raw_image_path=raw_key,
        processing_state="unprocessed",
        upload_data=upload_data,
        user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(image)
    s.flush()
    record_event(
        s,
        actor=user,
        action="media.upload",
        entity_type="Image",
        entity_id=str(image.id),
        metadata={"key": raw_key},
    )
    return image


def store_upload(storage: "Storage", client_name: str, data: bytes, content_type: str | None) -> str:
    if not data:
        raise UploadRejected(f"{client_name}: file is empty")
    if len(data) > MAX_IMAGE_BYTES:
        raise UploadRejected(f"{client_name}: Too large")
    key = upload_key(client_name)
    storage.put_bytes(key, data, content_type=content_type)
    return key


def validate_image_payload(payload: dict) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for name, limit in (("title", 255), ("alt_text", 255), ("caption", 2000)):
        value = payload.get(name)
        if value is not None and len(str(value)) > limit:
            errors.setdefault(name, []).append(f"should be at most {limit} character(s)")
    return errors


def update_image(s: "Session", image: Image, payload: dict, user: User) -> Image:
    changes: dict[str, dict] = {}
    for name in ("title", "alt_text", "caption"):
        if name not in payload:
            continue
        value = (payload.get(name) or "").strip() or None
        if getattr(image, name) != value:
            changes[name] = {"old": getattr(image, name), "new": value}
            setattr(image, name, value)
    if changes:
        image.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="media.update",
            entity_type="Image",
            entity_id=str(image.id),
            metadata={"changes": changes},
        )
    return image


def delete_image(s: "Session", storage: "Storage", image: Image, user: User) -> None:
    keys = [k for k in (image.optimized_image_path, image.thumbnail_path) if k]
    shared = (
        s.query(Image).filter(Image.raw_image_path == image.raw_image_path, Image.id != image.id).count()
    )
    if image.raw_image_path and not shared:
        keys.insert(0, image.raw_image_path)
    image_id = image.id
    s.delete(image)
    record_event(
        s,
        actor=user,
        action="media.delete",
        entity_type="Image",
        entity_id=str(image_id),
        metadata={"keys": keys},
    )
    for key in keys:
        storage.delete(key)


def image_version_path(image: Image, version: str | None) -> str | None:
    if version not in IMAGE_VERSIONS:
        version = "thumbnail"
    if version == "optimized":
        return image.optimized_image_path
    if version == "raw":
        return image.raw_image_path
    return image.thumbnail_path


def _strip_metadata(img: PILImage.Image) -> PILImage.Image:
    # Bake EXIF orientation into pixels, then rebuild from pixel data so no metadata survives.
    img = ImageOps.exif_transpose(img)
    mode = "RGBA" if img.mode in ("RGBA", "LA", "P", "PA") else "RGB"
    img = img.convert(mode)
    return PILImage.frombytes(mode, img.size, img.tobytes())


def _encode(img: PILImage.Image, fmt: str, **params) -> bytes:
    if fmt == "JPEG" and img.mode != "RGB":
        img = img.convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format=fmt, **params)
    return buf.getvalue()


def process_image_bytes(data: bytes, ext: str) -> dict[str, Any]:
    """
    Returns optimized and thumbnail bytes plus original width/height.
    Raises ImageProcessingError for unreadable input.
    """
    fmt, content_type = _OUTPUT_FORMATS.get(ext, ("JPEG", "image/jpeg"))
    try:
        with PILImage.open(io.BytesIO(data)) as parsed:
            width, height = parsed.size
            clean = _strip_metadata(parsed)
    except (UnidentifiedImageError, OSError) as e:
        raise ImageProcessingError(f"Cannot read image: {e}") from e

    save_params: dict[str, Any] = {"optimize": True}
    if fmt in ("JPEG", "WEBP"):
        save_params["quality"] = 85
    optimized = _encode(clean, fmt, **save_params)

    thumb = clean.copy()
    thumb.thumbnail((THUMBNAIL_SIZE, THUMBNAIL_SIZE))
    thumbnail = _encode(thumb, fmt, **save_params)
    return {
        "optimized": optimized,
        "thumbnail": thumbnail,
        "width": width,
        "height": height,
        "content_type": content_type,
        "ext": ".jpg" if fmt == "JPEG" else f".{fmt.lower()}",
    }


def process_image(s: "Session", storage: "Storage", image: Image) -> Image:
    """Runs in the image processing job; marks the image failed on error."""
    image.processing_state = "processing"
    s.commit()
    try:
        with storage.open(image.raw_image_path) as fobj:
            data = fobj.read()
        result = process_image_bytes(data, extension_of(image.raw_image_path))
        stem = os.path.splitext(os.path.basename(image.raw_image_path))[0]
        optimized_key = f"public/optimized/{image.id}_{stem}{result['ext']}"
        thumbnail_key = f"public/thumbnails/{image.id}_{stem}{result['ext']}"
        storage.put_bytes(optimized_key, result["optimized"], content_type=result["content_type"])
        storage.put_bytes(thumbnail_key, result["thumbnail"], content_type=result["content_type"])
    except Exception as e:
        logger.exception("Image %s processing failed", image.id)
        image.processing_state = "failed"
        image.updated_at = datetime.utcnow()
        s.commit()
        raise ImageProcessingError(f"Image {image.id} could not be processed") from e

    image.optimized_image_path = optimized_key
    image.thumbnail_path = thumbnail_key
    image.width = result["width"]
    image.height = result["height"]
    image.processing_state = "completed"
    image.updated_at = datetime.utcnow()
    s.commit()
    logger.info("Image %s processed (%sx%s)", image.id, image.width, image.height)
    return image
