# app/services/assembler.py
from typing import List, Mapping, Optional

from app.core.errors import ErrorCategory, UploadError


def missing_indices(chunks: Mapping[int, bytes], total_chunks: int) -> List[int]:
    return [i for i in range(total_chunks) if i not in chunks]


def assemble_chunks(chunks: Mapping[int, bytes], total_chunks: int, expected_size: Optional[int] = None) -> bytes:
    """Concatenate chunks 0..total_chunks-1 in index order.

    A missing index is a retryable validation error. When ``expected_size`` is
    given (the sizes recorded when each chunk was accepted), a buffer of any
    other length is a retryable processing error. Never returns a partial
    buffer.
    """
    missing = missing_indices(chunks, total_chunks)
    if missing:
        raise UploadError(
            f"Missing {len(missing)} chunk(s) during assembly",
            ErrorCategory.validation,
            retryable=True,
            code="missing_chunks",
            suggestions=["Re-upload the missing chunks"],
            details={"missing_chunks": missing},
        )

    buffer = b"".join(chunks[i] for i in range(total_chunks))
    if expected_size is not None and len(buffer) != expected_size:
        raise UploadError(
            f"Assembled length {len(buffer)} != expected {expected_size}",
            ErrorCategory.processing,
            retryable=True,
            code="assembly_length_mismatch",
            suggestions=["Restart the upload"],
            details={"assembled_size": len(buffer), "expected_size": expected_size},
        )
    return buffer
