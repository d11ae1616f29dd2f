"""Service error hierarchy for generation, upscale and account operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors (kind + message + optional hint)
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation, rejected jobs)

Every ServiceError renders to the structured caller-facing shape via to_dict().
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for all service errors."""

    kind: str = "service_error"
    status_code: int = 500

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> dict[str, Any]:
        """Structured representation returned to API callers."""
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.hint:
            payload["hint"] = self.hint
        return payload


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Result not yet available
    """

    kind = "transient_error"
    status_code = 503


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Backend rejected the job
    """

    kind = "permanent_error"


class ValidationError(PermanentError):
    """Bad caller input (empty prompt, out-of-range variant index)."""

    kind = "validation_error"
    status_code = 400


class AuthError(PermanentError):
    """Invalid or blocked credential, or quota exceeded."""

    kind = "auth_error"
    status_code = 401

    def __init__(self, message: str, hint: Optional[str] = None, status_code: int = 401):
        super().__init__(message, hint)
        self.status_code = status_code


class NotFoundError(PermanentError):
    """Requested task, record or account does not exist (or is not visible to caller)."""

    kind = "not_found"
    status_code = 404


# Backend (Discord / Midjourney) errors
class BackendSubmissionError(PermanentError):
    """The generation call failed. Terminal for the task; never auto-retried."""

    kind = "backend_submission_error"
    status_code = 502


class BackendTransientError(TransientError):
    """A single network call to the backend failed (transport error or 5xx)."""

    kind = "backend_transient_error"


class RateLimitedError(TransientError):
    """Backend answered 429."""

    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after: float = 1.0, hint: Optional[str] = None):
        super().__init__(message, hint)
        self.retry_after = retry_after


# Upscale-specific errors
class ProtocolMismatchError(PermanentError):
    """Every candidate interaction token was rejected by the backend."""

    kind = "protocol_mismatch"
    status_code = 502


class UpscaleTimeoutError(TransientError):
    """Upscale was accepted but no result message appeared within the poll budget."""

    kind = "upscale_timeout"
    status_code = 504


class EligibilityExpiredError(PermanentError):
    """Source message is older than the backend's interaction validity window."""

    kind = "eligibility_expired"
    status_code = 410
