"""
Error taxonomy for the generation orchestration layer.

Two families live here:

  Typed outcomes (pydantic models), returned to the caller and never raised:
    ValidationFailed           field-scoped input errors, fix = change the input
    QuotaExceeded              tier limits hit, fix = wait or upgrade
    InsufficientFunds          balance below the estimated price
    SubmissionFailed           the job service kept failing, retry budget spent

  Exceptions, raised for transport and deployment faults:
    JobServiceError            non-2xx from the job service
    JobServiceValidationError  structured 4xx field errors from the server
    SubmissionError            submit gave up (budget or wall-clock ceiling)
    PollFetchError             a poll tick could not fetch a consistent snapshot
    ConfigurationError         programming / deployment defect (fatal)
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


# ── Typed outcomes ───────────────────────────────────────────────────────────

class FieldError(BaseModel):
    """A single validation problem, pinned to the offending input field."""
    field: str
    message: str


class ValidationFailed(BaseModel):
    kind: Literal["validation_failed"] = "validation_failed"
    engine_id: str
    errors: list[FieldError] = Field(default_factory=list)

    def fields(self) -> list[str]:
        return [e.field for e in self.errors]


class QuotaExceeded(BaseModel):
    kind: Literal["quota_exceeded"] = "quota_exceeded"
    limit: str  # quantity | queue | resources | availability
    message: str
    requested: Optional[int] = None
    allowed: Optional[int] = None


class InsufficientFunds(BaseModel):
    kind: Literal["insufficient_funds"] = "insufficient_funds"
    required: float
    available: float
    message: str = "You don't have enough funds to perform this action."


class SubmissionFailed(BaseModel):
    kind: Literal["submission_failed"] = "submission_failed"
    message: str
    status_code: Optional[int] = None
    attempts: int = 0


# ── Exceptions ───────────────────────────────────────────────────────────────

class JobServiceError(Exception):
    """
    Non-2xx response (or transport failure) from the external job service.

    Attributes:
        status_code: HTTP status, None for transport-level failures.
        body:        Truncated response body for debugging.
        retryable:   True for 5xx / 429 / timeouts.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body[:500]
        self.retryable = retryable


class JobServiceValidationError(JobServiceError):
    """The server rejected the payload with field-level errors."""

    def __init__(self, message: str, errors: list[FieldError], status_code: int = 422, body: str = ""):
        super().__init__(message, status_code=status_code, body=body, retryable=False)
        self.errors = errors


class SubmissionError(Exception):
    """Submission gave up; carries the last underlying cause."""

    def __init__(self, message: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.attempts = attempts
        self.cause = cause

    @property
    def status_code(self) -> Optional[int]:
        return getattr(self.cause, "status_code", None)

    def to_result(self) -> SubmissionFailed:
        return SubmissionFailed(
            message=self.message,
            status_code=self.status_code,
            attempts=self.attempts,
        )


class PollFetchError(Exception):
    """A poll tick failed part-way; its partial pages are discarded."""

    def __init__(self, message: str, pages_fetched: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.pages_fetched = pages_fetched
        self.cause = cause


class ConfigurationError(Exception):
    """Deployment or programming defect. Never shown to a user as their fault."""


class UnknownEngineError(ConfigurationError):
    def __init__(self, engine_id: str):
        super().__init__(f"Unknown engine: {engine_id}")
        self.engine_id = engine_id
