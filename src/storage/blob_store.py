"""Blob storage backends for generated artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
import hashlib
import hmac
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import quote, urlencode

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from src.core.config import get_settings
from src.staging.errors import StorageError


_DEV_SIGNING_KEY = "snapstage-dev-blob-signing-key"


@dataclass(frozen=True)
class SignedUrl:
    url: str
    expires_at: datetime


class BlobStore(Protocol):
    backend_name: str

    def upload(self, content: bytes, path: str, content_type: str) -> str:
        raise NotImplementedError

    def signed_url(self, path: str, ttl_seconds: int) -> SignedUrl:
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError


def build_artifact_path(*, user_id: str, request_id: str, kind: str, job_id: str, extension: str) -> str:
    return f"{user_id}/{request_id}/{kind}-{job_id}.{extension.lstrip('.')}"


def _validate_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    if not normalized or any(part in {"", ".", ".."} for part in normalized.split("/")):
        raise StorageError(f"blob_path_invalid path={path}")
    return normalized


class FilesystemBlobStore(BlobStore):
    """Stores blobs on local disk and signs URLs served by the /blobs route."""

    backend_name = "filesystem"

    def __init__(self, *, root: str, signing_key: str, public_base_url: str = "") -> None:
        self._root = Path(root).resolve()
        self._signing_key = signing_key.encode("utf-8")
        self._public_base_url = public_base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self._root / _validate_path(path)).resolve()
        if self._root not in target.parents:
            raise StorageError(f"blob_path_invalid path={path}")
        return target

    def _sign(self, path: str, expires: int) -> str:
        message = f"{_validate_path(path)}:{expires}".encode("utf-8")
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def upload(self, content: bytes, path: str, content_type: str) -> str:
        del content_type
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise StorageError(f"blob_upload_failed path={path} detail={exc}") from exc
        return _validate_path(path)

    def signed_url(self, path: str, ttl_seconds: int) -> SignedUrl:
        normalized = _validate_path(path)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        expires = int(expires_at.timestamp())
        query = urlencode({"expires": expires, "signature": self._sign(normalized, expires)})
        url = f"{self._public_base_url}/blobs/{quote(normalized)}?{query}"
        return SignedUrl(url=url, expires_at=datetime.fromtimestamp(expires, tz=timezone.utc))

    def verify(self, path: str, *, expires: int, signature: str, now: Optional[datetime] = None) -> bool:
        reference = now or datetime.now(timezone.utc)
        if expires < int(reference.timestamp()):
            return False
        try:
            expected = self._sign(path, expires)
        except StorageError:
            return False
        return hmac.compare_digest(expected, signature or "")

    def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise StorageError(f"blob_not_found path={path}") from exc
        except OSError as exc:
            raise StorageError(f"blob_read_failed path={path} detail={exc}") from exc

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"blob_delete_failed path={path} detail={exc}") from exc


class S3BlobStore(BlobStore):
    backend_name = "s3"

    def __init__(self, *, bucket: str, client: Any) -> None:
        self._bucket = bucket
        self._client = client

    def upload(self, content: bytes, path: str, content_type: str) -> str:
        key = _validate_path(path)
        try:
            self._client.put_object(Bucket=self._bucket, Key=key, Body=content, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"blob_upload_failed path={key} detail={exc}") from exc
        return key

    def signed_url(self, path: str, ttl_seconds: int) -> SignedUrl:
        key = _validate_path(path)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        try:
            url = self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"blob_sign_failed path={key} detail={exc}") from exc
        return SignedUrl(url=url, expires_at=expires_at)

    def delete(self, path: str) -> None:
        key = _validate_path(path)
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"blob_delete_failed path={key} detail={exc}") from exc


def _build_s3_client() -> Any:
    settings = get_settings()
    kwargs: dict[str, Any] = {"region_name": settings.s3_region}
    if settings.s3_access_key_id and settings.s3_secret_access_key:
        kwargs["aws_access_key_id"] = settings.s3_access_key_id
        kwargs["aws_secret_access_key"] = settings.s3_secret_access_key
    if settings.s3_endpoint_url:
        kwargs["endpoint_url"] = settings.s3_endpoint_url
    return boto3.client("s3", **kwargs)


@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    settings = get_settings()
    backend = settings.blob_backend.strip().lower()
    if backend == "s3":
        return S3BlobStore(bucket=settings.s3_bucket, client=_build_s3_client())
    return FilesystemBlobStore(
        root=settings.blob_storage_path,
        signing_key=settings.secret_key or _DEV_SIGNING_KEY,
        public_base_url=settings.app_public_base_url,
    )


def reset_blob_store_cache() -> None:
    get_blob_store.cache_clear()
