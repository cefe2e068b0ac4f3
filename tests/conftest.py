"""Shared pytest fixtures for genflow tests."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import pytest

from genflow import metrics
from genflow.billing import InMemoryBilling
from genflow.job_client import JobServiceClient
from genflow.limits import StaticLimitsProvider
from genflow.session import GenerationSession

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def no_sleep(delay: float) -> None:
    return None


class FakeJobService:
    """
    In-memory stand-in for the job service, served through httpx.MockTransport.

    `submit_failures` is consumed one entry per non-what-if POST /jobs: an
    httpx.Response is returned as-is, an exception is raised (transport error).
    """

    def __init__(self) -> None:
        self.jobs: dict[str, str] = {}
        self.workflows: dict[str, dict[str, Any]] = {}
        self.submit_calls = 0
        self.idempotency_keys: list[str] = []
        self.cancel_calls: list[str] = []
        self.submit_failures: list[Any] = []
        self.query_failures: list[Any] = []
        self.what_if_cost: Any = {"total": 4.0}
        self.what_if_status: Optional[int] = None
        self.cancel_status: Optional[int] = None
        self.page_size = 50

    def add_workflow(self, workflow: dict[str, Any]) -> dict[str, Any]:
        workflow.setdefault("createdAt", (BASE_TIME + timedelta(seconds=len(self.workflows))).isoformat())
        workflow.setdefault("tags", [])
        workflow.setdefault("steps", [])
        self.workflows[workflow["id"]] = workflow
        return workflow

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/jobs":
            body = json.loads(request.content)
            if body.get("whatIf"):
                if self.what_if_status:
                    return httpx.Response(self.what_if_status, text="what-if unavailable")
                return httpx.Response(200, json={"cost": self.what_if_cost})
            return self._submit(request, body)

        if request.method == "GET" and path == "/workflows":
            if self.query_failures:
                failure = self.query_failures.pop(0)
                if isinstance(failure, Exception):
                    raise failure
                return failure
            return self._query(request)

        if request.method == "POST" and path.startswith("/jobs/") and path.endswith("/cancel"):
            workflow_id = path.split("/")[2]
            self.cancel_calls.append(workflow_id)
            if self.cancel_status:
                return httpx.Response(self.cancel_status, text="cancel failed")
            if workflow_id in self.workflows:
                self.workflows[workflow_id]["status"] = "canceled"
            return httpx.Response(200, json={"ok": True})

        return httpx.Response(404, json={"error": "not found"})

    def _submit(self, request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
        self.submit_calls += 1
        self.idempotency_keys.append(request.headers.get("Idempotency-Key", ""))
        if self.submit_failures:
            failure = self.submit_failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure

        key = body["idempotencyKey"]
        if key not in self.jobs:
            workflow_id = f"wf-{len(self.jobs) + 1}"
            self.jobs[key] = workflow_id
            self.add_workflow({
                "id": workflow_id,
                "tags": body["tags"],
                "status": "unassignend",
                "steps": [{
                    "name": "0",
                    "params": body["engineInput"],
                    "metadata": body["metadata"],
                    "images": [],
                }],
            })
        return httpx.Response(200, json={"workflowId": self.jobs[key]})

    def _query(self, request: httpx.Request) -> httpx.Response:
        tags = [t for t in request.url.params.get("tags", "").split(",") if t]
        cursor = int(request.url.params.get("cursor") or 0)
        matching = [
            wf for wf in self.workflows.values()
            if all(tag in wf.get("tags", []) for tag in tags)
        ]
        page = matching[cursor:cursor + self.page_size]
        next_cursor = str(cursor + self.page_size) if cursor + self.page_size < len(matching) else None
        return httpx.Response(200, json={"items": page, "nextCursor": next_cursor})


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def job_service() -> FakeJobService:
    return FakeJobService()


@pytest.fixture
def job_client(job_service: FakeJobService) -> JobServiceClient:
    return JobServiceClient(
        base_url="https://jobs.test",
        token="test-token",
        transport=httpx.MockTransport(job_service.handler),
        base_delay=0.0,
        sleep=no_sleep,
    )


@pytest.fixture
def billing() -> InMemoryBilling:
    return InMemoryBilling(default_balance=1000.0)


@pytest.fixture
def limits_provider() -> StaticLimitsProvider:
    return StaticLimitsProvider()


@pytest.fixture
def session(job_client, limits_provider, billing) -> GenerationSession:
    return GenerationSession("user-1", job_client, limits_provider, billing, missing_grace=60.0)
