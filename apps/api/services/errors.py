"""Domain errors raised by the pipeline services.

Each error carries the HTTP status and machine-readable ``code`` the API
renders, so services never build HTTP responses themselves.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(PipelineError):
    status_code = 400
    code = "VALIDATION_ERROR"


class SessionNotFound(PipelineError):
    status_code = 400
    code = "SESSION_NOT_FOUND"


class SessionInactive(PipelineError):
    status_code = 400
    code = "SESSION_INACTIVE"


class SessionExpired(PipelineError):
    status_code = 400
    code = "SESSION_EXPIRED"


class LedgerInvariantViolation(PipelineError):
    """A ledger operation would have broken the non-negative balance rule."""

    status_code = 409
    code = "LEDGER_INVARIANT"


class InsufficientCredits(LedgerInvariantViolation):
    status_code = 402
    code = "NO_CREDITS"


class NotFound(PipelineError):
    status_code = 404
    code = "NOT_FOUND"


class Unauthorized(PipelineError):
    status_code = 401
    code = "UNAUTHORIZED"


class JobNotCancelable(PipelineError):
    status_code = 409
    code = "JOB_NOT_CANCELABLE"


class ArtifactNotReady(PipelineError):
    status_code = 409
    code = "ARTIFACT_NOT_READY"


class UploadTooLarge(PipelineError):
    status_code = 413
    code = "UPLOAD_TOO_LARGE"


class QueueUnavailable(PipelineError):
    status_code = 503
    code = "QUEUE_UNAVAILABLE"


class RateLimited(PipelineError):
    status_code = 429
    code = "RATE_LIMITED"


class PipelineFailure(Exception):
    """The tailoring step failed. Recorded on the job, never returned to a caller."""
