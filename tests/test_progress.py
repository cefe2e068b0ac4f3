"""Tests for progress aggregation."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from genflow.models import ImageStatus, StepImage, SubmittedWorkflow, WorkflowStatus
from genflow.progress import normalize_progress, order_images, with_progress

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _workflow(**data) -> SubmittedWorkflow:
    data.setdefault("id", "wf-1")
    return SubmittedWorkflow.model_validate(data)


def test_two_steps_one_processing() -> None:
    """2 steps x 1 image: one succeeded, one processing."""
    workflow = _workflow(
        status="processing",
        steps=[
            {"name": "a", "images": [{"id": "i1", "status": "succeeded", "url": "https://img/1.png"}]},
            {"name": "b", "images": [{"id": "i2", "status": "processing"}]},
        ],
    )
    progress = normalize_progress(workflow)
    assert progress.aggregate_status == WorkflowStatus.PROCESSING
    assert progress.complete == 1
    assert progress.processing == 1
    assert progress.quantity == 2


def test_quantity_from_step_params() -> None:
    workflow = _workflow(steps=[{"params": {"quantity": 4}}, {"params": {}}])
    assert normalize_progress(workflow).quantity == 5


def test_aggregate_status_verbatim_without_processing_images() -> None:
    workflow = _workflow(status="scheduled", steps=[{"images": [{"id": "i1", "status": "scheduled"}]}])
    progress = normalize_progress(workflow)
    assert progress.aggregate_status == WorkflowStatus.SCHEDULED
    assert progress.complete == 0 and progress.processing == 0


def test_raw_status_spellings_folded() -> None:
    workflow = _workflow(
        status="unassignend",
        steps=[{"images": [
            {"id": "a", "status": "preparing"},
            {"id": "b", "status": "expired"},
            {"id": "c", "available": True},
        ]}],
    )
    assert workflow.status == WorkflowStatus.UNASSIGNED
    assert [img.status for img in workflow.steps[0].images] == [
        ImageStatus.QUEUED, ImageStatus.FAILED, ImageStatus.SUCCEEDED,
    ]


def test_cost_total_and_engine_from_tags() -> None:
    workflow = _workflow(cost={"total": 12, "base": 10}, tags=["gen", "engine:wan"])
    assert workflow.cost == 12
    assert workflow.engine_id == "wan"


def test_order_images_incomplete_first_then_newest() -> None:
    images = [
        StepImage(id="old", status="succeeded", completed_at=T0),
        StepImage(id="pending-b", status="processing"),
        StepImage(id="new", status="succeeded", completed_at=T0 + timedelta(minutes=5)),
        StepImage(id="pending-a", status="queued"),
        StepImage(id="tie-b", status="succeeded", completed_at=T0),
    ]
    assert [img.id for img in order_images(images)] == ["pending-a", "pending-b", "new", "old", "tie-b"]


def test_progress_independent_of_image_order() -> None:
    images = [
        {"id": f"i{n}", "status": status, "completedAt": (T0 + timedelta(seconds=n)).isoformat()}
        for n, status in enumerate(["succeeded", "processing", "failed", "succeeded", "queued", "succeeded"])
    ]
    baseline = with_progress(_workflow(status="processing", steps=[{"images": images}]))
    rng = random.Random(7)
    for _ in range(10):
        shuffled = images[:]
        rng.shuffle(shuffled)
        result = with_progress(_workflow(status="processing", steps=[{"images": shuffled}]))
        assert result.progress == baseline.progress
        assert [i.id for i in result.steps[0].images] == [i.id for i in baseline.steps[0].images]
