"""
Error taxonomy for the ingestion pipeline.

Every failure a run can end with is one of these classes, so callers can
branch on the category (re-login, retry later, fix config, investigate).
"""

from typing import Any, Dict, Optional


class UsageIngestError(Exception):
    """Base exception for all ingestion failures."""

    code = "UNEXPECTED"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(UsageIngestError, ValueError):
    """Raised for invalid configuration, e.g. a missing encryption key."""

    code = "VALIDATION_ERROR"


class AuthExpiredError(UsageIngestError):
    """Raised when the stored credential is missing, invalid or expired."""

    code = "AUTH_EXPIRED"


class SessionAuthenticationError(UsageIngestError):
    """Raised when a stored credential fails AES-GCM authentication."""

    code = "AUTH_FAILED"


class TransientError(UsageIngestError):
    """Raised for timeouts, network failures and upstream server errors."""

    code = "TRANSIENT"
    retryable = True


class InfrastructureError(UsageIngestError):
    """Raised when storage is unavailable."""

    code = "INFRASTRUCTURE"
    retryable = True


class UnexpectedError(UsageIngestError):
    """Raised for logic errors and anything that could not be classified."""

    code = "UNEXPECTED"


class NormalizationError(UnexpectedError):
    """Raised when a raw payload is not structurally a sequence of rows."""

    code = "NORMALIZE_ERROR"


class SessionFormatError(UnexpectedError):
    """Raised when a credential file cannot be decoded."""

    code = "SESSION_FORMAT"


def describe_error(error: BaseException) -> Dict[str, Any]:
    """Build a sanitized description of an error for untrusted callers.

    Only the classification and the top-level message are exposed; causes,
    tracebacks and details stay internal.

    Args:
        error: Any exception raised by the pipeline

    Returns:
        Mapping with code, message and retryable flag
    """
    if isinstance(error, UsageIngestError):
        return {
            "code": error.code,
            "message": error.message,
            "retryable": error.retryable,
        }
    return {
        "code": UnexpectedError.code,
        "message": "unexpected internal error",
        "retryable": False,
    }
