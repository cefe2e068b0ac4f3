"""
Pydantic models and enums for the generation orchestration layer.

Wire format is camelCase (the job service and the UI both speak it); Python
attributes are snake_case. Raw status spellings coming back from the job
service are folded into the enums below at parse time.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Workflow tags ────────────────────────────────────────────────────────────

WORKFLOW_TAG_GENERATION = "gen"
ENGINE_TAG_PREFIX = "engine:"
PROCESS_TAG_PREFIX = "process:"
USER_TAG_PREFIX = "user:"


# ── Enums ────────────────────────────────────────────────────────────────────

class Process(str, Enum):
    TXT2IMG = "txt2img"
    IMG2IMG = "img2img"
    TXT2VID = "txt2vid"
    IMG2VID = "img2vid"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class WorkflowStatus(str, Enum):
    UNASSIGNED = "unassigned"
    PREPARING = "preparing"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


TERMINAL_STATUSES = frozenset({
    WorkflowStatus.SUCCEEDED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELED,
})

_STATUS_RANK = {
    WorkflowStatus.UNASSIGNED: 0,
    WorkflowStatus.PREPARING: 1,
    WorkflowStatus.SCHEDULED: 2,
    WorkflowStatus.PROCESSING: 3,
    WorkflowStatus.SUCCEEDED: 4,
    WorkflowStatus.FAILED: 4,
    WorkflowStatus.CANCELED: 4,
}


def can_transition(old: WorkflowStatus, new: WorkflowStatus) -> bool:
    """
    Forward-only state machine:

        unassigned -> preparing -> scheduled -> processing -> succeeded
                                            \\-> failed
        any non-terminal -> canceled
    """
    if old == new:
        return True
    if old.is_terminal:
        return False
    return new.rank > old.rank


class ImageStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# The job service has shipped "unassignend" in the wild
_WORKFLOW_STATUS_ALIASES = {
    "unassignend": "unassigned",
    "cancelled": "canceled",
    "expired": "failed",
}

_IMAGE_STATUS_MAP = {
    "unassigned": ImageStatus.QUEUED,
    "unassignend": ImageStatus.QUEUED,
    "preparing": ImageStatus.QUEUED,
    "scheduled": ImageStatus.QUEUED,
    "queued": ImageStatus.QUEUED,
    "processing": ImageStatus.PROCESSING,
    "succeeded": ImageStatus.SUCCEEDED,
    "failed": ImageStatus.FAILED,
    "canceled": ImageStatus.FAILED,
    "cancelled": ImageStatus.FAILED,
    "expired": ImageStatus.FAILED,
}


def normalize_workflow_status(raw: Any) -> Any:
    if isinstance(raw, str):
        value = raw.strip().lower()
        return _WORKFLOW_STATUS_ALIASES.get(value, value)
    return raw


def normalize_image_status(raw: Any) -> Any:
    if isinstance(raw, str):
        return _IMAGE_STATUS_MAP.get(raw.strip().lower(), raw)
    return raw


# ── Requests ─────────────────────────────────────────────────────────────────

class ResourceRef(CamelModel):
    """A referenced model/resource version with its blend strength."""
    id: int
    strength: float = Field(1.0, ge=-1, le=2)
    air: Optional[str] = None


class GenerationRequest(CamelModel):
    engine_id: str
    raw_input: dict[str, Any] = Field(default_factory=dict)
    resources: list[ResourceRef] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Workflows ────────────────────────────────────────────────────────────────

class StepImage(CamelModel):
    id: str
    status: ImageStatus = ImageStatus.QUEUED
    url: Optional[str] = None
    completed_at: Optional[datetime] = None
    blocked_reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_status(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if data.get("available") is True:
                data["status"] = ImageStatus.SUCCEEDED.value
            elif "status" in data:
                data["status"] = normalize_image_status(data["status"])
        return data


class WorkflowStep(CamelModel):
    step_id: str = Field(
        "0",
        validation_alias=AliasChoices("stepId", "step_id", "name"),
        serialization_alias="stepId",
    )
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    images: list[StepImage] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class NormalizedProgress(CamelModel):
    complete: int = 0
    processing: int = 0
    quantity: int = 0
    aggregate_status: WorkflowStatus = WorkflowStatus.UNASSIGNED


class SubmittedWorkflow(CamelModel):
    id: str
    engine_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    steps: list[WorkflowStep] = Field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.UNASSIGNED
    cost: Optional[float] = None
    progress: NormalizedProgress = Field(default_factory=NormalizedProgress)

    @field_validator("status", mode="before")
    @classmethod
    def _fold_status(cls, value: Any) -> Any:
        return normalize_workflow_status(value)

    @field_validator("cost", mode="before")
    @classmethod
    def _cost_total(cls, value: Any) -> Any:
        # The service reports cost either as a number or as {"total": n, ...}
        if isinstance(value, dict):
            return value.get("total")
        return value

    @model_validator(mode="after")
    def _engine_from_tags(self) -> "SubmittedWorkflow":
        if not self.engine_id:
            for tag in self.tags:
                if tag.startswith(ENGINE_TAG_PREFIX):
                    self.engine_id = tag[len(ENGINE_TAG_PREFIX):]
                    break
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# ── Limits ───────────────────────────────────────────────────────────────────

class UserGenerationLimits(CamelModel):
    """Read-only tier limits supplied by the limits collaborator."""
    tier: str = "free"
    queue_capacity: int = 4
    per_request_quantity_cap: int = 4
    per_request_resource_cap: int = 9
    available: bool = True
    message: Optional[str] = None
