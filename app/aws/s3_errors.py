# app/aws/s3_errors.py
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from app.core.errors import ErrorCategory, UploadError, storage_error

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_TRANSIENT_CODES = {
    "SlowDown", "Throttling", "RequestTimeout",
    "InternalError", "ServiceUnavailable", "InternalServerError",
}
_PERMISSION_CODES = {"AccessDenied", "AllAccessDisabled", "InvalidAccessKeyId", "SignatureDoesNotMatch"}
_QUOTA_CODES = {"QuotaExceeded", "EntityTooLarge", "XMinioStorageFull", "XMinioAdminBucketQuotaExceeded"}


def classify_s3_error(exc: Exception, *, op: str, key: str = "") -> UploadError:
    """Vertaal boto-fouten naar een geclassificeerde UploadError."""
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return storage_error(
            f"S3 {op} failed: {type(exc).__name__}",
            code="network",
            retry_after=30,
            suggestions=["Wait a moment and try again", "Check storage connectivity"],
            details={"key": key},
        )

    if not isinstance(exc, ClientError):
        return storage_error(
            f"S3 {op} failed: {exc!r}",
            code="unknown",
            suggestions=["Try uploading again in a few moments"],
            details={"key": key},
        )

    err = exc.response.get("Error", {}) or {}
    meta = exc.response.get("ResponseMetadata", {}) or {}
    code = str(err.get("Code", ""))
    http_status = int(meta.get("HTTPStatusCode", 500) or 500)
    details = {"key": key, "aws_code": code, "aws_http": http_status, "aws_request_id": meta.get("RequestId")}

    if code in _NOT_FOUND_CODES:
        # kan een read-after-write race zijn; kort opnieuw proberen
        return storage_error(f"Object not found: {key}", code="not_found", details=details)
    if code in _PERMISSION_CODES or http_status == 403:
        return UploadError(
            f"S3 {op} denied ({code})",
            ErrorCategory.storage,
            retryable=False,
            code="permission",
            suggestions=["Check the bucket policy (s3:PutObject/GetObject/DeleteObject)", "Contact administrator"],
            details=details,
        )
    if code in _QUOTA_CODES:
        return UploadError(
            f"S3 {op} rejected: storage quota ({code})",
            ErrorCategory.storage,
            retryable=False,
            code="quota",
            suggestions=["Free up storage space", "Contact administrator"],
            details=details,
        )
    if code in _TRANSIENT_CODES or 500 <= http_status < 600:
        return storage_error(
            f"S3 {op} failed transiently ({code or http_status})",
            code="transient",
            retry_after=30,
            suggestions=["Wait a moment and try again"],
            details=details,
        )
    return UploadError(
        f"S3 {op} failed ({code or http_status})",
        ErrorCategory.storage,
        retryable=False,
        code="rejected",
        suggestions=["Contact support if the problem persists"],
        details=details,
    )
