# app/services/storage_writer.py
import re
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

from app.core.errors import UploadError, is_retryable, storage_error
from app.core.settings import Settings
from app.infra.retry import retry_on
from app.observability.metrics import storage_write_counter
from app.services.storage import BlobStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WriteResult:
    key: str
    size: int
    content_type: str
    attempts: int


def new_object_key(extension: str) -> str:
    # <uuid>.<ext>; de bestandsnaam van de client komt nooit in de key
    ext = re.sub(r"[^a-z0-9]", "", (extension or "").lower()) or "bin"
    return f"{uuid.uuid4().hex}.{ext}"


class StorageWriter:
    def __init__(
        self,
        store: BlobStore,
        *,
        attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_cap: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.attempts = attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep
        self._bucket_ready = False
        self._bucket_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, store: BlobStore) -> "StorageWriter":
        return cls(
            store,
            attempts=settings.storage_write_attempts,
            backoff_base=settings.storage_backoff_base_sec,
            backoff_cap=settings.storage_backoff_cap_sec,
        )

    def ensure_bucket(self) -> None:
        with self._bucket_lock:
            if not self._bucket_ready:
                self.store.ensure_bucket()
                self._bucket_ready = True

    def write(
        self, data: bytes, content_type: str, extension: str, metadata: Optional[Dict[str, str]] = None
    ) -> WriteResult:
        self.ensure_bucket()
        key = new_object_key(extension)
        tries = {"n": 1}

        def _on_retry(attempt: int, exc: Exception, delay: float) -> None:
            tries["n"] = attempt + 1
            storage_write_counter.labels(result="retry").inc()
            logger.warning("storage_write_retry", key=key, attempt=attempt, delay_sec=round(delay, 2), error=repr(exc))

        try:
            retry_on(
                lambda: self.store.put(key, data, content_type, metadata),
                attempts=self.attempts,
                base=self.backoff_base,
                factor=2.0,
                cap=self.backoff_cap,
                is_retryable=is_retryable,
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except UploadError as exc:
            storage_write_counter.labels(result="error").inc()
            logger.error("storage_write_failed", key=key, attempts=tries["n"], code=exc.code, retryable=exc.retryable)
            self.discard(key)
            if not exc.retryable:
                raise
            raise storage_error(
                f"Storage write failed after {tries['n']} attempts",
                code="write_exhausted",
                retry_after=60,
                suggestions=["Wait a minute and upload again"],
                details={"key": key, "cause": exc.code},
            ) from exc

        storage_write_counter.labels(result="success").inc()
        logger.info("storage_write_ok", key=key, size=len(data), attempts=tries["n"])
        return WriteResult(key=key, size=len(data), content_type=content_type, attempts=tries["n"])

    def discard(self, key: str) -> bool:
        """Best-effort verwijderen van een (deels) geschreven object."""
        try:
            self.store.remove(key)
        except UploadError as exc:
            logger.error("blob_discard_failed", key=key, code=exc.code, error=exc.message)
            return False
        return True
