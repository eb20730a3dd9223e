"""Error taxonomy for the redaction service.

Every error raised on purpose by the pipeline, the storage layer or the job
store derives from ``RedactionError``, which carries a machine-readable code
and the HTTP status the API answers with.
"""

from typing import Any, Optional

import pydantic


class RedactionError(Exception):
    """Base exception for all application-specific errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self, trace_id: Optional[str] = None) -> dict:
        body = {"code": self.code, "message": self.message, "trace_id": trace_id}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(RedactionError):
    """Malformed or out-of-range request data."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidRegion(ValidationError):
    """A region that has no area once resolved against the image."""

    code = "INVALID_REGION"


class LimitExceeded(RedactionError):
    """Payload bytes, pixel count or region count above the configured ceiling."""

    code = "LIMIT_EXCEEDED"
    status_code = 413


class UnsupportedMedia(RedactionError):
    code = "UNSUPPORTED_MEDIA"
    status_code = 415


class StorageError(RedactionError):
    """Object storage failure.

    ``code`` is one of OBJECT_NOT_FOUND, ACCESS_DENIED, BUCKET_NOT_FOUND or
    STORAGE_ERROR, each with its own HTTP-equivalent status.
    """

    OBJECT_NOT_FOUND = "OBJECT_NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    BUCKET_NOT_FOUND = "BUCKET_NOT_FOUND"
    STORAGE_ERROR = "STORAGE_ERROR"

    _STATUS = {
        OBJECT_NOT_FOUND: 404,
        ACCESS_DENIED: 403,
        BUCKET_NOT_FOUND: 404,
        STORAGE_ERROR: 500,
    }

    code = STORAGE_ERROR
    status_code = 500

    def __init__(self, message: str, code: str = STORAGE_ERROR, details: Any = None):
        super().__init__(message, code=code, status_code=self._STATUS.get(code, 500), details=details)

    @classmethod
    def not_found(cls, bucket: str, key: str) -> "StorageError":
        return cls(f"Object not found: {bucket}/{key}", cls.OBJECT_NOT_FOUND)

    @classmethod
    def bucket_not_found(cls, bucket: str) -> "StorageError":
        return cls(f"Bucket not found: {bucket}", cls.BUCKET_NOT_FOUND)

    @classmethod
    def access_denied(cls, bucket: str, key: str) -> "StorageError":
        return cls(f"Access denied to {bucket}/{key}", cls.ACCESS_DENIED)


class PipelineError(RedactionError):
    """Decode, composite or encode failure."""

    code = "PIPELINE_ERROR"
    status_code = 500


class InternalError(RedactionError):
    code = "INTERNAL_ERROR"
    status_code = 500


class JobNotFound(RedactionError):
    code = "JOB_NOT_FOUND"
    status_code = 404


class InvalidTransition(InternalError):
    """A job item was asked to move backwards in its state machine."""


def normalize_error(exc: BaseException) -> RedactionError:
    """Convert any exception into a RedactionError."""
    if isinstance(exc, RedactionError):
        return exc
    if isinstance(exc, pydantic.ValidationError):
        return ValidationError(
            "Invalid request format",
            details=exc.errors(include_url=False, include_context=False, include_input=False),
        )
    return InternalError(str(exc) or exc.__class__.__name__)
