# app/core/errors.py
"""
Error taxonomy for the upload pipeline.

Every failure is classified where it is raised: category, retryability and
remediation travel on the exception itself. Nothing downstream looks at
message text.
"""
from __future__ import annotations

import enum
from typing import Any, Dict, List, Optional


class ErrorCategory(str, enum.Enum):
    validation = "validation"
    size_limit = "size_limit"
    memory = "memory"
    format = "format"
    storage = "storage"
    processing = "processing"
    timeout = "timeout"


class Severity(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


# HTTP status per category (see app.main exception handler)
HTTP_STATUS = {
    ErrorCategory.validation: 400,
    ErrorCategory.format: 415,
    ErrorCategory.size_limit: 413,
    ErrorCategory.processing: 422,
    ErrorCategory.memory: 503,
    ErrorCategory.storage: 503,
    ErrorCategory.timeout: 504,
}


class UploadError(Exception):
    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        retryable: bool,
        suggestions: Optional[List[str]] = None,
        severity: Severity = Severity.medium,
        code: Optional[str] = None,
        retry_after: Optional[int] = None,
        suggested_chunk_size: Optional[int] = None,
        suggested_action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.retryable = retryable
        self.suggestions = list(suggestions or [])
        self.severity = severity
        self.code = code
        self.retry_after = retry_after
        self.suggested_chunk_size = suggested_chunk_size
        self.suggested_action = suggested_action
        self.details = dict(details or {})

    @property
    def http_status(self) -> int:
        return HTTP_STATUS.get(self.category, 500)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "type": "UploadError",
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "severity": self.severity.value,
            "suggestions": self.suggestions,
        }
        if self.code:
            body["code"] = self.code
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        if self.suggested_chunk_size is not None:
            body["suggested_chunk_size"] = self.suggested_chunk_size
        if self.suggested_action:
            body["suggested_action"] = self.suggested_action
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return (
            f"UploadError({self.message!r}, category={self.category.value}, "
            f"retryable={self.retryable}, code={self.code})"
        )


class AuthError(Exception):
    """Raised by the auth validator; rendered as 401."""


def is_retryable(exc: Exception) -> bool:
    return isinstance(exc, UploadError) and exc.retryable


def validation_error(message: str, *, code: Optional[str] = None, retryable: bool = False, **kw) -> UploadError:
    return UploadError(message, ErrorCategory.validation, retryable=retryable, code=code, **kw)


def storage_error(message: str, *, code: Optional[str] = None, retryable: bool = True, **kw) -> UploadError:
    return UploadError(message, ErrorCategory.storage, retryable=retryable, code=code, **kw)
