# app/services/storage.py
import errno
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from app.aws.s3_errors import classify_s3_error
from app.core.errors import ErrorCategory, UploadError, storage_error, validation_error
from app.core.settings import Settings
from app.infra.s3_client import make_s3_client

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BlobStat:
    key: str
    size: int
    content_type: str
    etag: Optional[str] = None


# =========================
# Abstracte BlobStore
# =========================
class BlobStore(ABC):
    """Key-addressed object storage. Alle fouten komen eruit als UploadError."""

    @abstractmethod
    def ensure_bucket(self) -> None:
        ...

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str, metadata: Optional[Dict[str, str]] = None) -> None:
        ...

    @abstractmethod
    def get(self, key: str, length: Optional[int] = None) -> bytes:
        """Lees het object; met ``length`` alleen de eerste N bytes."""

    @abstractmethod
    def stat(self, key: str) -> BlobStat:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        ...


def _check_key(key: str) -> None:
    # basis path-validaties om traversal/misbruik te voorkomen
    if not key or key.startswith("/") or key.endswith("/") or ".." in key or "\\" in key:
        raise validation_error(f"Invalid object key: {key!r}", code="bad_key")


# =========================
# Local Storage
# =========================
class LocalBlobStore(BlobStore):
    """Lokale bestandsopslag (dev/test)."""

    def __init__(self, base_path: str, bucket: str = "images"):
        self.bucket = bucket
        self.base_path = Path(base_path)

    def _full_path(self, key: str) -> Path:
        _check_key(key)
        return self.base_path / self.bucket / key

    def _os_error(self, exc: OSError, op: str, key: str) -> UploadError:
        if isinstance(exc, FileNotFoundError):
            return storage_error(f"Object not found: {key}", code="not_found", details={"key": key})
        if isinstance(exc, PermissionError):
            return UploadError(
                f"Local {op} denied: {key}",
                ErrorCategory.storage,
                retryable=False,
                code="permission",
                suggestions=["Check LOCAL_STORAGE_ROOT permissions"],
                details={"key": key},
            )
        if exc.errno in (errno.ENOSPC, errno.EDQUOT):
            return UploadError(
                "Local storage is full",
                ErrorCategory.storage,
                retryable=False,
                code="quota",
                suggestions=["Free up disk space", "Contact administrator"],
                details={"key": key},
            )
        return storage_error(f"Local {op} failed: {exc}", code="io", details={"key": key})

    def ensure_bucket(self) -> None:
        try:
            (self.base_path / self.bucket).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise self._os_error(e, "ensure_bucket", "") from e

    def put(self, key: str, data: bytes, content_type: str, metadata: Optional[Dict[str, str]] = None) -> None:
        path = self._full_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise self._os_error(e, "put", key) from e
        logger.debug("blob_put", backend="local", key=key, size=len(data))

    def get(self, key: str, length: Optional[int] = None) -> bytes:
        path = self._full_path(key)
        try:
            with open(path, "rb") as f:
                return f.read() if length is None else f.read(length)
        except OSError as e:
            raise self._os_error(e, "get", key) from e

    def stat(self, key: str) -> BlobStat:
        path = self._full_path(key)
        try:
            st = path.stat()
        except OSError as e:
            raise self._os_error(e, "stat", key) from e
        ctype, _ = mimetypes.guess_type(str(path))
        return BlobStat(key=key, size=st.st_size, content_type=ctype or "application/octet-stream")

    def remove(self, key: str) -> None:
        path = self._full_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise self._os_error(e, "remove", key) from e
        logger.info("blob_removed", backend="local", key=key)


# =========================
# S3 Storage
# =========================
class S3BlobStore(BlobStore):
    """S3/MinIO implementatie."""

    def __init__(self, bucket: str, region: str, client):
        self.bucket = bucket
        self.region = region
        self.s3_client = client

    def ensure_bucket(self) -> None:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket)
            return
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise classify_s3_error(e, op="head_bucket") from e
        except BotoCoreError as e:
            raise classify_s3_error(e, op="head_bucket") from e

        kwargs = {"Bucket": self.bucket}
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            self.s3_client.create_bucket(**kwargs)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                raise classify_s3_error(e, op="create_bucket") from e
        except BotoCoreError as e:
            raise classify_s3_error(e, op="create_bucket") from e
        logger.info("bucket_created", bucket=self.bucket)

    def put(self, key: str, data: bytes, content_type: str, metadata: Optional[Dict[str, str]] = None) -> None:
        _check_key(key)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, op="put", key=key) from e
        logger.debug("blob_put", backend="s3", key=key, size=len(data))

    def get(self, key: str, length: Optional[int] = None) -> bytes:
        _check_key(key)
        kwargs = {"Bucket": self.bucket, "Key": key}
        if length is not None:
            if length <= 0:
                return b""
            kwargs["Range"] = f"bytes=0-{length - 1}"
        try:
            resp = self.s3_client.get_object(**kwargs)
            return resp["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, op="get", key=key) from e

    def stat(self, key: str) -> BlobStat:
        _check_key(key)
        try:
            head = self.s3_client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, op="stat", key=key) from e
        return BlobStat(
            key=key,
            size=int(head.get("ContentLength", 0) or 0),
            content_type=head.get("ContentType") or "application/octet-stream",
            etag=(head.get("ETag") or "").strip('"') or None,  # S3 geeft quotes terug
        )

    def remove(self, key: str) -> None:
        _check_key(key)
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, op="remove", key=key) from e
        logger.info("blob_removed", backend="s3", key=key)


# =========================
# Factory
# =========================
def get_blob_store(settings: Settings) -> BlobStore:
    backend = settings.STORAGE_BACKEND.lower()
    if backend == "s3":
        if not settings.S3_BUCKET:
            raise ValueError("S3_BUCKET is vereist voor S3 storage")
        return S3BlobStore(settings.S3_BUCKET, settings.S3_REGION, client=make_s3_client(settings))
    if backend == "local":
        return LocalBlobStore(settings.LOCAL_STORAGE_ROOT, bucket=settings.S3_BUCKET)
    raise ValueError(f"Onbekende storage backend: {backend}")
