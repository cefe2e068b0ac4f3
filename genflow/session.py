"""
GenerationSession: one user's generation context.

Owns the workflow tracker and its poll loop, and runs the submit pipeline:

    prepare (validate + normalize)
      -> admission + price (QuotaEstimator)
      -> reserve funds
      -> submit to the job service (idempotent, retried)
      -> insert into the tracker as `unassigned`

SessionManager hands out one session per user and tears them all down on
shutdown.
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union
from uuid import uuid4

from . import metrics
from .engines import EngineDefinition, EngineParams, get_engine
from .errors import (
    InsufficientFunds,
    JobServiceError,
    JobServiceValidationError,
    SubmissionError,
    SubmissionFailed,
    ValidationFailed,
)
from .models import (
    ENGINE_TAG_PREFIX,
    PROCESS_TAG_PREFIX,
    USER_TAG_PREFIX,
    WORKFLOW_TAG_GENERATION,
    GenerationRequest,
    ResourceRef,
    SubmittedWorkflow,
    UserGenerationLimits,
    WorkflowStatus,
    WorkflowStep,
)
from .poller import WorkflowPoller
from .quota import Admit, QuotaEstimator, Reject
from .tracker import WorkflowTracker
from .validator import prepare

logger = logging.getLogger(__name__)

SESSION_IDLE_TTL = float(os.environ.get("GENFLOW_SESSION_IDLE_TTL", "1800"))
SESSION_SWEEP_INTERVAL = float(os.environ.get("GENFLOW_SESSION_SWEEP_INTERVAL", "60"))

SubmitResult = Union[SubmittedWorkflow, ValidationFailed, Reject, SubmissionFailed]
WhatIfResult = Union[Admit, Reject, ValidationFailed, SubmissionFailed]


def workflow_tags(engine_id: str, params: EngineParams, user_id: str) -> list[str]:
    return [
        WORKFLOW_TAG_GENERATION,
        f"{ENGINE_TAG_PREFIX}{engine_id}",
        f"{PROCESS_TAG_PREFIX}{params.process.value}",
        f"{USER_TAG_PREFIX}{user_id}",
    ]


class GenerationSession:
    def __init__(
        self,
        user_id: str,
        job_client,
        limits_provider,
        billing,
        registry: Optional[dict[str, EngineDefinition]] = None,
        tracker: Optional[WorkflowTracker] = None,
        **poller_options,
    ):
        self.user_id = user_id
        self.job_client = job_client
        self.limits_provider = limits_provider
        self.billing = billing
        self.registry = registry
        self.tracker = tracker or WorkflowTracker()
        self.tags = [WORKFLOW_TAG_GENERATION, f"{USER_TAG_PREFIX}{user_id}"]
        self.poller = WorkflowPoller(job_client, self.tracker, self.tags, **poller_options)
        self.estimator = QuotaEstimator(job_client, billing)
        self._cancelling: set[str] = set()
        self._in_flight = 0
        self._closed = False

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        self.poller.start()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.poller.stop()
        self.tracker.clear()
        logger.info(f"Session closed for user {self.user_id}")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        """A submit holds a queue slot and has not finished yet."""
        return self._in_flight > 0

    # ── Reads ────────────────────────────────────────────────────────────────

    @property
    def stale(self) -> bool:
        """True after several failed poll ticks in a row: status may be stale."""
        return self.poller.stale

    def workflows(self) -> list[SubmittedWorkflow]:
        return self.tracker.snapshot()

    def get_workflow(self, workflow_id: str) -> Optional[SubmittedWorkflow]:
        return self.tracker.get(workflow_id)

    def subscribe(self, on_update: Callable[[list[SubmittedWorkflow]], None]) -> Callable[[], None]:
        return self.tracker.subscribe(on_update)

    # ── Submit ───────────────────────────────────────────────────────────────

    def _engine(self, engine_id: str) -> EngineDefinition:
        return get_engine(engine_id, self.registry)

    def queue_depth(self) -> int:
        """Tracked active workflows plus submits that hold a queue slot but are not tracked yet."""
        return self.tracker.queue_depth() + self._in_flight

    @staticmethod
    def _with_resources(raw_input: Optional[dict], resources: Optional[list]) -> Optional[dict]:
        if not resources or (raw_input is not None and not isinstance(raw_input, dict)):
            return raw_input
        data = dict(raw_input or {})
        data["resources"] = [
            r.model_dump(by_alias=True, exclude_none=True) if isinstance(r, ResourceRef) else r
            for r in resources
        ]
        return data

    async def _estimate(
        self,
        engine: EngineDefinition,
        params: EngineParams,
        engine_input: dict,
        tags: list[str],
        limits: UserGenerationLimits,
        queue_depth: int,
    ) -> Union[Admit, Reject]:
        return await self.estimator.estimate(
            user_id=self.user_id,
            limits=limits,
            queue_depth=queue_depth,
            quantity=engine.requested_quantity(params),
            resource_count=len(params.resources),
            step_type=engine.step_type,
            engine_input=engine_input,
            engine_id=engine.engine_id,
            tags=tags,
        )

    async def what_if(
        self,
        engine_id: str,
        raw_input: Optional[dict],
        resources: Optional[list] = None,
    ) -> WhatIfResult:
        """Dry run: validation, admission and price, nothing committed."""
        engine = self._engine(engine_id)
        params = prepare(engine_id, self._with_resources(raw_input, resources), self.registry)
        if isinstance(params, ValidationFailed):
            return params
        engine_input = engine.to_engine_input(params)
        tags = workflow_tags(engine_id, params, self.user_id)
        limits = await self.limits_provider.get_limits(self.user_id)
        try:
            return await self._estimate(engine, params, engine_input, tags, limits, self.queue_depth())
        except JobServiceValidationError as e:
            return ValidationFailed(engine_id=engine_id, errors=e.errors)
        except JobServiceError as e:
            logger.error(f"What-if failed for user {self.user_id} ({engine_id}): {e.message}")
            metrics.record_error("what_if", e.message, str(e.status_code), self.user_id)
            return SubmissionFailed(message=e.message, status_code=e.status_code, attempts=1)

    async def submit(
        self,
        engine_id: str,
        raw_input: Optional[dict],
        resources: Optional[list] = None,
    ) -> SubmitResult:
        engine = self._engine(engine_id)

        params = prepare(engine_id, self._with_resources(raw_input, resources), self.registry)
        if isinstance(params, ValidationFailed):
            metrics.record_submission(engine_id, "validation_failed")
            return params
        request = GenerationRequest(engine_id=engine_id, raw_input=raw_input or {}, resources=params.resources)
        limits = await self.limits_provider.get_limits(self.user_id)

        # Depth is read and the slot claimed with no await in between
        queue_depth = self.queue_depth()
        self._in_flight += 1
        # Once a slot is claimed the commit runs to completion even if the caller is cancelled
        commit = asyncio.ensure_future(self._commit(request, engine, params, limits, queue_depth))
        return await asyncio.shield(commit)

    async def _commit(
        self,
        request: GenerationRequest,
        engine: EngineDefinition,
        params: EngineParams,
        limits: UserGenerationLimits,
        queue_depth: int,
    ) -> SubmitResult:
        engine_id = request.engine_id
        try:
            engine_input = engine.to_engine_input(params)
            metadata = engine.to_display_metadata(params)
            tags = workflow_tags(engine_id, params, self.user_id)

            try:
                decision = await self._estimate(engine, params, engine_input, tags, limits, queue_depth)
            except JobServiceValidationError as e:
                metrics.record_submission(engine_id, "validation_failed")
                return ValidationFailed(engine_id=engine_id, errors=e.errors)
            except JobServiceError as e:
                metrics.record_submission(engine_id, "submission_failed")
                metrics.record_error("what_if", e.message, str(e.status_code), self.user_id)
                return SubmissionFailed(message=e.message, status_code=e.status_code, attempts=1)

            if isinstance(decision, Reject):
                metrics.record_submission(engine_id, decision.reason.kind)
                return decision

            cost = decision.cost
            if not await self.billing.reserve_funds(self.user_id, cost):
                balance = await self.billing.get_balance(self.user_id)
                metrics.record_submission(engine_id, "insufficient_funds")
                return Reject(reason=InsufficientFunds(required=cost, available=balance))

            idempotency_key = str(uuid4())
            try:
                workflow_id = await self.job_client.submit(
                    engine.step_type, engine_input, tags, metadata, idempotency_key
                )
            except JobServiceValidationError as e:
                await self.billing.release_funds(self.user_id, cost)
                logger.info(f"Job service rejected {engine_id} input for user {self.user_id}: {[err.field for err in e.errors]}")
                metrics.record_submission(engine_id, "validation_failed")
                return ValidationFailed(engine_id=engine_id, errors=e.errors)
            except SubmissionError as e:
                await self.billing.release_funds(self.user_id, cost)
                logger.error(f"Submission failed for user {self.user_id} ({engine_id}): {e.message}")
                metrics.record_submission(engine_id, "submission_failed")
                metrics.record_error("submit", e.message, str(e.status_code), self.user_id)
                return e.to_result()
            except Exception as e:
                await self.billing.release_funds(self.user_id, cost)
                logger.exception(f"Unexpected error submitting {engine_id} for user {self.user_id}")
                metrics.record_submission(engine_id, "submission_failed")
                metrics.record_error("submit", str(e), type(e).__name__, self.user_id)
                return SubmissionFailed(message=f"Unexpected submission error: {e}", attempts=1)

            workflow = SubmittedWorkflow(
                id=workflow_id,
                engine_id=engine_id,
                tags=tags,
                status=WorkflowStatus.UNASSIGNED,
                cost=cost,
                steps=[WorkflowStep(step_id="0", params=engine_input, metadata=metadata)],
            )
            workflow = self.tracker.insert(workflow)
        finally:
            self._in_flight -= 1
        self.poller.wake()

        duration_ms = (datetime.now(timezone.utc) - request.requested_at).total_seconds() * 1000
        metrics.record_submission(engine_id, "submitted", duration_ms)
        logger.info(f"Submitted {engine_id} workflow {workflow_id} for user {self.user_id} (cost={cost})")
        return workflow

    # ── Cancel / remove ──────────────────────────────────────────────────────

    async def cancel(self, workflow_id: str) -> Optional[SubmittedWorkflow]:
        """
        Optimistically cancel. The local entry flips to `canceled` at once;
        the job service call runs at most once at a time per workflow. A
        failed call is corrected by the next poll tick. None if unknown.
        """
        workflow = self.tracker.get(workflow_id)
        if workflow is None:
            return None
        if workflow_id in self._cancelling or workflow.is_terminal:
            return workflow

        self.tracker.mark_canceled(workflow_id)
        self._cancelling.add(workflow_id)
        try:
            ok = await self.job_client.cancel(workflow_id)
            if not ok:
                logger.warning(f"Job service declined cancel for workflow {workflow_id}")
        except JobServiceError as e:
            logger.warning(f"Cancel call failed for workflow {workflow_id}: {e.message}. Next poll will reconcile")
            metrics.record_error("cancel", e.message, str(e.status_code), self.user_id)
        finally:
            self._cancelling.discard(workflow_id)
        return self.tracker.get(workflow_id)

    def remove(self, workflow_id: str) -> bool:
        """Drop a terminal workflow from the local view. False for active or unknown ones."""
        removed = self.tracker.remove(workflow_id)
        if removed:
            logger.info(f"Removed workflow {workflow_id} for user {self.user_id}")
        return removed


class SessionManager:
    """
    One GenerationSession per user, created on first use.

    Sessions nobody has touched for `idle_ttl` seconds are closed by
    `evict_idle`, which the reaper task runs every `sweep_interval` seconds.
    A session with a submit still in flight is never evicted.
    """

    def __init__(
        self,
        job_client,
        limits_provider,
        billing,
        registry: Optional[dict[str, EngineDefinition]] = None,
        autostart: bool = True,
        idle_ttl: float = SESSION_IDLE_TTL,
        sweep_interval: float = SESSION_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        **poller_options: Any,
    ):
        self.job_client = job_client
        self.limits_provider = limits_provider
        self.billing = billing
        self.registry = registry
        self.autostart = autostart
        self.idle_ttl = idle_ttl
        self.sweep_interval = sweep_interval
        self.poller_options = poller_options
        self._clock = clock
        self._sessions: dict[str, GenerationSession] = {}
        self._last_access: dict[str, float] = {}
        self._reaper: Optional[asyncio.Task] = None

    def get(self, user_id: str) -> GenerationSession:
        session = self._sessions.get(user_id)
        if session is None:
            session = GenerationSession(
                user_id,
                self.job_client,
                self.limits_provider,
                self.billing,
                registry=self.registry,
                **self.poller_options,
            )
            self._sessions[user_id] = session
            if self.autostart:
                session.start()
            metrics.set_gauge("active_sessions", len(self._sessions))
            logger.info(f"Session opened for user {user_id}")
        self._last_access[user_id] = self._clock()
        return session

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def tracked_workflows(self) -> int:
        return sum(len(session.tracker) for session in self._sessions.values())

    async def close(self, user_id: str) -> bool:
        session = self._sessions.pop(user_id, None)
        self._last_access.pop(user_id, None)
        if session is None:
            return False
        await session.close()
        metrics.set_gauge("active_sessions", len(self._sessions))
        return True

    async def close_all(self) -> None:
        await self.stop_reaper()
        for user_id in list(self._sessions):
            await self.close(user_id)

    # ── Idle eviction ────────────────────────────────────────────────────────

    async def evict_idle(self) -> list[str]:
        """Close sessions idle for longer than `idle_ttl`. Returns the evicted user ids."""
        now = self._clock()
        idle = [
            user_id
            for user_id, session in self._sessions.items()
            if now - self._last_access.get(user_id, now) > self.idle_ttl and not session.busy
        ]
        for user_id in idle:
            logger.info(f"Evicting session for user {user_id} after {self.idle_ttl:.0f}s idle")
            await self.close(user_id)
        if idle:
            metrics.inc_counter("sessions_evicted", len(idle))
        return idle

    async def _reap(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.evict_idle()
            except Exception:
                logger.exception("Idle session sweep failed")

    def start_reaper(self) -> None:
        if self._reaper is not None and not self._reaper.done():
            return
        self._reaper = asyncio.create_task(self._reap())

    async def stop_reaper(self) -> None:
        task, self._reaper = self._reaper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
