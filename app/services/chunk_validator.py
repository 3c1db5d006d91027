# app/services/chunk_validator.py
from typing import Optional

from app.core.errors import ErrorCategory, Severity, UploadError, validation_error
from app.core.settings import Settings
from app.infra.memory import MemoryPressure, MemoryStats

REDUCE_CHUNK_SIZE = "reduce_chunk_size"


class ChunkValidator:
    def __init__(
        self,
        *,
        min_bytes: int,
        max_bytes: int,
        max_total_chunks: int,
        headroom_ratio: float,
        min_adaptive_bytes: int,
    ):
        if min_bytes < 1 or max_bytes < min_bytes:
            raise ValueError("invalid chunk bounds")
        self.min_bytes = min_bytes
        self.max_bytes = max_bytes
        self.max_total_chunks = max_total_chunks
        self.headroom_ratio = headroom_ratio
        self.min_adaptive_bytes = min(min_adaptive_bytes, max_bytes)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChunkValidator":
        return cls(
            min_bytes=settings.chunk_min_bytes,
            max_bytes=settings.chunk_max_bytes,
            max_total_chunks=settings.max_total_chunks,
            headroom_ratio=settings.adaptive_headroom_ratio,
            min_adaptive_bytes=settings.adaptive_min_chunk_bytes,
        )

    def check_bounds(self, chunk_index: int, total_chunks: int, size: int) -> None:
        """Harde grenzen; een fout hier is nooit retryable."""
        if total_chunks < 1 or total_chunks > self.max_total_chunks:
            raise validation_error(
                f"total_chunks must be between 1 and {self.max_total_chunks}, got {total_chunks}",
                code="bad_total_chunks",
                suggestions=["Use larger chunks so the file fits in fewer parts"],
            )
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise validation_error(
                f"chunk_index {chunk_index} out of range 0..{total_chunks - 1}",
                code="bad_chunk_index",
            )
        if size < self.min_bytes or size > self.max_bytes:
            raise validation_error(
                f"chunk size {size} outside [{self.min_bytes}, {self.max_bytes}]",
                code="bad_chunk_size",
                suggestions=[f"Send chunks of at most {self.max_bytes} bytes"],
            )

    def optimal_chunk_size(self, stats: MemoryStats) -> Optional[int]:
        """Aanbevolen chunkgrootte onder druk; None als er geen druk is."""
        if not stats.under_pressure:
            return None
        size = int(stats.available_bytes * self.headroom_ratio)
        if stats.pressure == MemoryPressure.critical:
            size //= 2
        return max(self.min_adaptive_bytes, min(size, self.max_bytes))

    def backpressure(self, size: int, limit: int, stats: MemoryStats) -> Optional[UploadError]:
        """Retourneert een retryable fout als de chunk groter is dan de toegestane grootte."""
        if size <= limit:
            return None
        return UploadError(
            f"Chunk of {size} bytes exceeds {limit} bytes allowed under {stats.pressure.value} memory pressure",
            ErrorCategory.size_limit,
            retryable=True,
            severity=Severity.low,
            code="chunk_too_large",
            suggested_chunk_size=limit,
            suggested_action=REDUCE_CHUNK_SIZE,
            suggestions=[f"Resend this part in chunks of at most {limit} bytes"],
        )
