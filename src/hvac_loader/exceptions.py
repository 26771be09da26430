# src/hvac_loader/exceptions.py

"""
Shared custom exceptions for the HVAC Loader service.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- HvacLoaderError (base)
  - RetryableError (the whole object can be re-driven)
    - SinkError
    - IngestionCancelledError
  - NonRetryableError (re-driving will not help)
    - MalformedEnvelopeError
    - ConfigurationError
  - TransportError (stream open/read failures)
    - S3ThrottlingError (retryable)
    - S3TimeoutError (retryable)
    - S3ConnectionError (retryable)
    - S3ObjectNotFoundError (non-retryable)
    - S3AccessDeniedError (non-retryable)
"""

from typing import Any, Dict, Optional


class HvacLoaderError(Exception):
    """Base exception for all HVAC Loader service errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}  # Copy context to prevent mutation
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": isinstance(self, RetryableError),
        }


class RetryableError(HvacLoaderError):
    """Base class for errors where re-driving the object may succeed."""

    pass


class NonRetryableError(HvacLoaderError):
    """Base class for errors that should not be retried."""

    pass


# === Transport (object store) Errors ===


class TransportError(HvacLoaderError):
    """Raised when the source stream cannot be opened or read."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "TRANSPORT_ERROR")
        super().__init__(message, **kwargs)


class S3ObjectNotFoundError(TransportError, NonRetryableError):
    """Raised when a requested S3 object does not exist."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"S3 object not found: s3://{bucket}/{key}"
        context = dict(kwargs.pop("context", None) or {})
        context.update({"bucket": bucket, "key": key})
        super().__init__(message, error_code="S3_OBJECT_NOT_FOUND", context=context, **kwargs)


class S3AccessDeniedError(TransportError, NonRetryableError):
    """Raised when access is denied to an S3 object."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"Access denied to S3 object: s3://{bucket}/{key}"
        context = dict(kwargs.pop("context", None) or {})
        context.update({"bucket": bucket, "key": key})
        super().__init__(message, error_code="S3_ACCESS_DENIED", context=context, **kwargs)


class S3ThrottlingError(TransportError, RetryableError):
    """Raised when S3 operations are being throttled."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation throttled: {operation}"
        context = dict(kwargs.pop("context", None) or {})
        context["operation"] = operation
        super().__init__(message, error_code="S3_THROTTLING", context=context, **kwargs)


class S3TimeoutError(TransportError, RetryableError):
    """Raised when S3 operations time out or the connection drops."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation timed out: {operation}"
        context = dict(kwargs.pop("context", None) or {})
        context["operation"] = operation
        kwargs.setdefault("error_code", "S3_TIMEOUT")
        super().__init__(message, context=context, **kwargs)


class S3ConnectionError(TransportError, RetryableError):
    """Raised when the connection to S3 fails or drops mid-transfer."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "S3_CONNECTION_ERROR")
        super().__init__(message, **kwargs)


# === Pipeline Errors ===


class MalformedEnvelopeError(NonRetryableError):
    """Raised when the source is not wrapped in a well-formed JSON array."""

    def __init__(self, reason: str, **kwargs):
        message = f"Malformed JSON array envelope: {reason}"
        context = dict(kwargs.pop("context", None) or {})
        context["reason"] = reason
        super().__init__(message, error_code="MALFORMED_ENVELOPE", context=context, **kwargs)


class SinkError(RetryableError):
    """Raised when the storage sink fails to insert a batch."""

    def __init__(self, partition_id: str, reason: str, **kwargs):
        message = f"Failed to insert batch into partition '{partition_id}': {reason}"
        context = dict(kwargs.pop("context", None) or {})
        context.update({"partition_id": partition_id, "reason": reason})
        kwargs.setdefault("error_code", "SINK_INSERT_FAILED")
        super().__init__(message, context=context, **kwargs)
        self.partition_id = partition_id


class IngestionCancelledError(RetryableError):
    """Raised when an ingestion is cancelled or runs out of time."""

    def __init__(self, reason: str, **kwargs):
        message = f"Ingestion cancelled: {reason}"
        context = dict(kwargs.pop("context", None) or {})
        context["reason"] = reason
        super().__init__(message, error_code="INGESTION_CANCELLED", context=context, **kwargs)


# === Configuration Errors ===


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Utility Functions ===


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, HvacLoaderError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False,  # Unknown errors default to non-retryable
        }
