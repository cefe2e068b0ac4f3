"""
Progress aggregation for polled workflows.

All functions are pure and order-independent: the same set of images in any
order yields the same NormalizedProgress.
"""

from datetime import datetime, timezone
from typing import Iterable

from .models import ImageStatus, NormalizedProgress, StepImage, SubmittedWorkflow, WorkflowStatus, WorkflowStep

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def all_images(workflow: SubmittedWorkflow) -> list[StepImage]:
    return [image for step in workflow.steps for image in step.images]


def requested_outputs(step: WorkflowStep) -> int:
    quantity = step.params.get("quantity")
    if isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0:
        return quantity
    return 1


def _completed_key(image: StepImage):
    completed = image.completed_at
    if completed is not None and completed.tzinfo is None:
        completed = completed.replace(tzinfo=timezone.utc)
    # Incomplete first, then newest first, ties by id
    return (completed is not None, _negate(completed), image.id)


def _negate(value):
    if value is None:
        return 0.0
    return -(value - _EPOCH).total_seconds()


def order_images(images: Iterable[StepImage]) -> list[StepImage]:
    return sorted(images, key=_completed_key)


def aggregate_status(workflow_status: WorkflowStatus, images: Iterable[StepImage]) -> WorkflowStatus:
    if any(image.status == ImageStatus.PROCESSING for image in images):
        return WorkflowStatus.PROCESSING
    return workflow_status


def normalize_progress(workflow: SubmittedWorkflow) -> NormalizedProgress:
    images = all_images(workflow)
    return NormalizedProgress(
        complete=sum(1 for image in images if image.status == ImageStatus.SUCCEEDED),
        processing=sum(1 for image in images if image.status == ImageStatus.PROCESSING),
        quantity=sum(requested_outputs(step) for step in workflow.steps),
        aggregate_status=aggregate_status(workflow.status, images),
    )


def with_progress(workflow: SubmittedWorkflow) -> SubmittedWorkflow:
    """Copy of the workflow with ordered images and recomputed progress."""
    steps = [step.model_copy(update={"images": order_images(step.images)}) for step in workflow.steps]
    updated = workflow.model_copy(update={"steps": steps})
    updated.progress = normalize_progress(updated)
    return updated
