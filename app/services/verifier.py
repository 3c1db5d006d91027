# app/services/verifier.py
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from app.core.errors import UploadError, is_retryable, storage_error
from app.core.settings import Settings
from app.infra.retry import retry_on
from app.observability.metrics import verify_counter
from app.services.storage import BlobStat, BlobStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    key: str
    size: int
    expected_size: int
    attempts: int
    etag: Optional[str] = None


class Verifier:
    """Read-back na de write: stat + gedeeltelijke read, met eigen retry."""

    def __init__(
        self,
        store: BlobStore,
        *,
        attempts: int = 4,
        backoff_base: float = 0.25,
        backoff_cap: float = 2.0,
        read_bytes: int = 1024,
        tolerance_ratio: float = 0.001,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.attempts = attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.read_bytes = read_bytes
        self.tolerance_ratio = tolerance_ratio
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, store: BlobStore) -> "Verifier":
        return cls(
            store,
            attempts=settings.verify_attempts,
            backoff_base=settings.verify_backoff_base_sec,
            backoff_cap=settings.verify_backoff_cap_sec,
            read_bytes=settings.verify_read_bytes,
            tolerance_ratio=settings.verify_size_tolerance_ratio,
        )

    def tolerance(self, expected_size: int) -> int:
        return int(expected_size * self.tolerance_ratio)

    def _check(self, key: str, expected_size: int) -> BlobStat:
        stat = self.store.stat(key)
        if abs(stat.size - expected_size) > self.tolerance(expected_size):
            raise storage_error(
                f"Stored size {stat.size} differs from expected {expected_size}",
                code="size_mismatch",
                details={"key": key, "observed": stat.size, "expected": expected_size},
            )
        want = min(self.read_bytes, expected_size)
        head = self.store.get(key, length=want)
        if len(head) != want:
            raise storage_error(
                f"Partial read returned {len(head)} of {want} bytes",
                code="short_read",
                details={"key": key},
            )
        return stat

    def verify(self, key: str, expected_size: int) -> VerificationResult:
        tries = {"n": 1}

        def _on_retry(attempt: int, exc: Exception, delay: float) -> None:
            tries["n"] = attempt + 1
            verify_counter.labels(result="retry").inc()
            logger.info("verify_retry", key=key, attempt=attempt, delay_sec=round(delay, 2), error=repr(exc))

        try:
            stat = retry_on(
                lambda: self._check(key, expected_size),
                attempts=self.attempts,
                base=self.backoff_base,
                factor=2.0,
                cap=self.backoff_cap,
                is_retryable=is_retryable,
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except UploadError as exc:
            verify_counter.labels(result="error").inc()
            logger.error("verify_failed", key=key, attempts=tries["n"], code=exc.code)
            try:
                self.store.remove(key)
            except UploadError as rm_exc:
                logger.error("blob_discard_failed", key=key, code=rm_exc.code, error=rm_exc.message)
            raise storage_error(
                "Upload could not be verified in storage",
                code="verification_failed",
                retry_after=30,
                suggestions=["Upload the file again"],
                details={"key": key, "cause": exc.code},
            ) from exc

        verify_counter.labels(result="success").inc()
        logger.info("verify_ok", key=key, size=stat.size, attempts=tries["n"])
        return VerificationResult(
            key=key, size=stat.size, expected_size=expected_size, attempts=tries["n"], etag=stat.etag
        )
