"""Generation workflow orchestration: validate, price, submit and track engine jobs."""

from .engines import ENGINES, get_engine, validate_registry
from .errors import (
    ConfigurationError,
    FieldError,
    InsufficientFunds,
    QuotaExceeded,
    SubmissionFailed,
    UnknownEngineError,
    ValidationFailed,
)
from .models import SubmittedWorkflow, UserGenerationLimits, WorkflowStatus
from .quota import Admit, Reject
from .session import GenerationSession, SessionManager
from .validator import prepare

__all__ = [
    "ENGINES",
    "Admit",
    "ConfigurationError",
    "FieldError",
    "GenerationSession",
    "InsufficientFunds",
    "QuotaExceeded",
    "Reject",
    "SessionManager",
    "SubmissionFailed",
    "SubmittedWorkflow",
    "UnknownEngineError",
    "UserGenerationLimits",
    "ValidationFailed",
    "WorkflowStatus",
    "get_engine",
    "prepare",
    "validate_registry",
]
