"""
Background poll loop for a session's workflows.

One tick = fetch every page for the session's tags, parse, then hand the
whole batch to the tracker. Pages are collected locally first; if any page
fails the tick is dropped so the tracker never sees a half listing.
"""

import asyncio
import logging
import os
from typing import Optional

from pydantic import ValidationError

from . import metrics
from .errors import JobServiceError, PollFetchError
from .models import SubmittedWorkflow
from .tracker import WorkflowTracker

logger = logging.getLogger(__name__)

POLL_MAX_PAGES = int(os.environ.get("GENFLOW_POLL_MAX_PAGES", "10"))
MISSING_GRACE = float(os.environ.get("GENFLOW_MISSING_GRACE", "60"))
POLL_INTERVAL = float(os.environ.get("GENFLOW_POLL_INTERVAL", "3"))
POLL_IDLE_INTERVAL = float(os.environ.get("GENFLOW_POLL_IDLE_INTERVAL", "15"))
POLL_MAX_INTERVAL = float(os.environ.get("GENFLOW_POLL_MAX_INTERVAL", "60"))
STALE_AFTER = int(os.environ.get("GENFLOW_STALE_AFTER", "3"))


class WorkflowPoller:
    def __init__(
        self,
        job_client,
        tracker: WorkflowTracker,
        tags: list[str],
        max_pages: int = POLL_MAX_PAGES,
        missing_grace: float = MISSING_GRACE,
        interval: float = POLL_INTERVAL,
        idle_interval: float = POLL_IDLE_INTERVAL,
        max_interval: float = POLL_MAX_INTERVAL,
        stale_after: int = STALE_AFTER,
    ):
        self.job_client = job_client
        self.tracker = tracker
        self.tags = tags
        self.max_pages = max_pages
        self.missing_grace = missing_grace
        self.interval = interval
        self.idle_interval = idle_interval
        self.max_interval = max_interval
        self.stale_after = stale_after
        self.consecutive_failures = 0
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()

    @property
    def stale(self) -> bool:
        return self.consecutive_failures >= self.stale_after

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Fetch ────────────────────────────────────────────────────────────────

    async def fetch_all(self) -> tuple[list[SubmittedWorkflow], bool, set[str]]:
        """
        All pages for this session's tags.

        Returns (workflows, complete, unparsed_ids); complete is False when the
        page cap cut the listing short. unparsed_ids are ids of listed items
        that failed to parse: still present on the server, so never missing.
        Raises PollFetchError on any failure.
        """
        items: list[dict] = []
        cursor: Optional[str] = None
        pages = 0
        complete = False
        while pages < self.max_pages:
            try:
                page, cursor = await self.job_client.query_workflows(self.tags, cursor)
            except JobServiceError as e:
                raise PollFetchError(f"Workflow query failed on page {pages + 1}: {e.message}", pages, e) from e
            pages += 1
            items.extend(page)
            if not cursor:
                complete = True
                break

        workflows: list[SubmittedWorkflow] = []
        unparsed_ids: set[str] = set()
        for item in items:
            try:
                workflows.append(SubmittedWorkflow.model_validate(item))
            except ValidationError as e:
                item_id = item.get("id") if isinstance(item, dict) else None
                if item_id is not None:
                    unparsed_ids.add(str(item_id))
                logger.warning(f"Skipping unparseable workflow {item_id if item_id is not None else item!r}: {e}")
        if not complete:
            logger.info(f"Workflow listing capped at {self.max_pages} pages, skipping missing-workflow check")
        return workflows, complete, unparsed_ids

    async def tick(self) -> bool:
        """One poll. Returns True when the tracker was updated from a full fetch."""
        seq, started_at = self.tracker.begin_tick()
        try:
            workflows, complete, unparsed_ids = await self.fetch_all()
        except PollFetchError as e:
            self.consecutive_failures += 1
            metrics.record_poll(success=False)
            metrics.record_error("poll", str(e))
            logger.warning(f"Poll tick {seq} failed ({self.consecutive_failures} in a row): {e}")
            if self.consecutive_failures == self.stale_after:
                logger.warning(f"Workflow status may be stale for tags {self.tags}")
            return False

        self.tracker.apply_tick(seq, workflows, started_at, complete, self.missing_grace, present_ids=unparsed_ids)
        if self.consecutive_failures:
            logger.info(f"Poll recovered after {self.consecutive_failures} failed ticks")
        self.consecutive_failures = 0
        metrics.record_poll(success=True)
        return True

    # ── Loop ─────────────────────────────────────────────────────────────────

    def next_delay(self) -> float:
        if self.consecutive_failures:
            return min(self.interval * (2 ** self.consecutive_failures), self.max_interval)
        if self.tracker.active():
            return self.interval
        return self.idle_interval

    def wake(self) -> None:
        """Cut the current sleep short (e.g. right after a submit)."""
        self._wake.set()

    async def run(self) -> None:
        while True:
            self._wake.clear()
            try:
                await self.tick()
            except Exception:
                self.consecutive_failures += 1
                logger.exception(f"Unexpected error in poll loop for tags {self.tags}")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run())
        logger.info(f"Poller started for tags {self.tags}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Poller stopped for tags {self.tags}")
