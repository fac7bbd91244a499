from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO


class StorageError(RuntimeError):
    pass


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def url_for(self, key: str) -> str:
        raise NotImplementedError

    def presigned_post(
        self,
        key: str,
        *,
        content_type: str | None = None,
        max_bytes: int = 10 * 1024 * 1024,
        expires_in: int = 3600,
    ) -> dict:
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path
    # URL prefix under which the app serves stored files
    url_prefix: str = "/admin/media/files"

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        if ".." in Path(safe_key).parts:
            raise StorageError(f"Invalid storage key: {key}")
        return self.root / safe_key

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        if not p.exists():
            raise StorageError(f"Missing object: {key}")
        return p.open("rb")

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        p = self._path(key)
        if p.exists():
            p.unlink()

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix}/{key.lstrip('/')}"

    def presigned_post(
        self,
        key: str,
        *,
        content_type: str | None = None,
        max_bytes: int = 10 * 1024 * 1024,
        expires_in: int = 3600,
    ) -> dict:
        # No direct-to-bucket uploads locally: the browser posts to the server instead.
        return {"url": "/admin/media/upload", "fields": {"key": key}, "local": True}


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    public_url: str = ""

    def _client(self):
        import boto3

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)

    def open(self, key: str) -> BinaryIO:
        obj = self._client().get_object(Bucket=self.bucket, Key=key)
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def delete(self, key: str) -> None:
        self._client().delete_object(Bucket=self.bucket, Key=key)

    def url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key.lstrip('/')}"
        host = self.endpoint or f"s3.{self.region}.amazonaws.com"
        return f"https://{self.bucket}.{host}/{key.lstrip('/')}"

    def presigned_post(
        self,
        key: str,
        *,
        content_type: str | None = None,
        max_bytes: int = 10 * 1024 * 1024,
        expires_in: int = 3600,
    ) -> dict:
        fields: dict[str, str] = {"acl": "public-read"}
        conditions: list = [{"acl": "public-read"}, ["content-length-range", 0, max_bytes]]
        if content_type:
            fields["Content-Type"] = content_type
            conditions.append({"Content-Type": content_type})
        post = self._client().generate_presigned_post(
            Bucket=self.bucket,
            Key=key,
            Fields=fields,
            Conditions=conditions,
            ExpiresIn=expires_in,
        )
        return {"url": post["url"], "fields": post["fields"], "local": False}


def storage_from_config(config: dict, *, bucket: str = "media") -> Storage:
    """
    bucket="media" is the public gallery bucket. bucket="expense" holds receipts and
    bucket="exports" holds generated CSVs; both are private and never served by the media route.
    """
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        bucket_key = "S3_BUCKET" if bucket == "media" else "S3_EXPENSE_BUCKET"
        name = (config.get(bucket_key) or config.get("S3_BUCKET") or "").strip()
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "us-west-1").strip(),
            bucket=name,
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            public_url=(config.get("S3_PUBLIC_URL") or "").strip() if bucket == "media" else "",
        )
    root = Path(os.getcwd()) / "storage"
    if bucket == "expense":
        return LocalStorage(root=root / "expense", url_prefix="/expensereport/files")
    if bucket == "exports":
        return LocalStorage(root=root / "exports", url_prefix="")
    return LocalStorage(root=root / "media")
