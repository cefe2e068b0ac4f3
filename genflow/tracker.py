"""
WorkflowTracker: the session's view of its workflows.

The job service is the source of truth; every poll tick overwrites entries.
The only local writes are:
  - insert after a successful submit (status unassigned)
  - optimistic cancel (status canceled until a later tick says otherwise)
  - remove (terminal entries only; the id is tombstoned)

Every write carries the tick sequence number it came from. A tick that began
earlier never overwrites data from a tick that began later, and within a tick
the server's `updatedAt` breaks ties. Status only moves forward; backward
reports are dropped and logged.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .models import SubmittedWorkflow, WorkflowStatus, can_transition
from .progress import with_progress

logger = logging.getLogger(__name__)

Subscriber = Callable[[list[SubmittedWorkflow]], None]


@dataclass
class TrackedEntry:
    workflow: SubmittedWorkflow
    seq: int
    last_seen_at: float
    inserted_at: float
    confirmed_terminal: bool = False
    cancel_seq: Optional[int] = None
    marked_missing: bool = False


class WorkflowTracker:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, TrackedEntry] = {}
        self._tombstones: set[str] = set()
        self._subscribers: list[Subscriber] = []
        self._seq = 0

    # ── Reads ────────────────────────────────────────────────────────────────

    @property
    def seq(self) -> int:
        return self._seq

    def get(self, workflow_id: str) -> Optional[SubmittedWorkflow]:
        entry = self._entries.get(workflow_id)
        return entry.workflow if entry else None

    def snapshot(self) -> list[SubmittedWorkflow]:
        """Newest first."""
        return sorted(
            (entry.workflow for entry in self._entries.values()),
            key=lambda wf: (wf.created_at, wf.id),
            reverse=True,
        )

    def active(self) -> list[SubmittedWorkflow]:
        return [entry.workflow for entry in self._entries.values() if not entry.workflow.is_terminal]

    def queue_depth(self) -> int:
        return len(self.active())

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ── Subscribers ──────────────────────────────────────────────────────────

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Workflow subscriber raised")

    # ── Local writes ─────────────────────────────────────────────────────────

    def insert(self, workflow: SubmittedWorkflow) -> SubmittedWorkflow:
        """Add a just-submitted workflow. Server data already present wins."""
        if workflow.id in self._entries or workflow.id in self._tombstones:
            return self._entries[workflow.id].workflow if workflow.id in self._entries else workflow
        now = self._clock()
        workflow = with_progress(workflow)
        self._entries[workflow.id] = TrackedEntry(
            workflow=workflow,
            seq=self._seq,
            last_seen_at=now,
            inserted_at=now,
        )
        self._notify()
        return workflow

    def mark_canceled(self, workflow_id: str) -> Optional[SubmittedWorkflow]:
        """Optimistic cancel. Returns the entry (unchanged if already terminal), None if unknown."""
        entry = self._entries.get(workflow_id)
        if entry is None:
            return None
        if entry.workflow.is_terminal:
            return entry.workflow
        entry.workflow = with_progress(entry.workflow.model_copy(update={"status": WorkflowStatus.CANCELED}))
        entry.cancel_seq = self._seq
        self._notify()
        return entry.workflow

    def remove(self, workflow_id: str) -> bool:
        entry = self._entries.get(workflow_id)
        if entry is None or not entry.workflow.is_terminal:
            return False
        del self._entries[workflow_id]
        self._tombstones.add(workflow_id)
        self._notify()
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._tombstones.clear()
        self._subscribers.clear()

    # ── Poll ticks ───────────────────────────────────────────────────────────

    def begin_tick(self) -> tuple[int, float]:
        """Allocate a sequence number for a tick about to fetch. Returns (seq, started_at)."""
        self._seq += 1
        return self._seq, self._clock()

    def apply_tick(
        self,
        seq: int,
        workflows: Iterable[SubmittedWorkflow],
        started_at: float,
        complete: bool,
        missing_grace: float,
        present_ids: Iterable[str] = (),
    ) -> int:
        """
        Apply a fully fetched tick. When the listing was complete (not
        page-capped), tracked active workflows it did not contain are marked
        failed once they have been unseen for `missing_grace` seconds.
        `present_ids` are listed ids whose payload could not be parsed; their
        entries keep their current state and count as seen.
        Returns the number of entries that changed.
        """
        changed = 0
        seen: set[str] = set()
        now = self._clock()

        for workflow_id in present_ids:
            seen.add(workflow_id)
            entry = self._entries.get(workflow_id)
            if entry is not None:
                entry.last_seen_at = now

        for workflow in workflows:
            seen.add(workflow.id)
            if self._apply_one(seq, workflow, now):
                changed += 1

        if complete:
            changed += self._mark_missing(seen, started_at, now, missing_grace)

        if changed:
            self._notify()
        return changed

    def _apply_one(self, seq: int, incoming: SubmittedWorkflow, now: float) -> bool:
        if incoming.id in self._tombstones:
            return False

        entry = self._entries.get(incoming.id)
        if entry is None:
            self._entries[incoming.id] = TrackedEntry(
                workflow=with_progress(incoming),
                seq=seq,
                last_seen_at=now,
                inserted_at=now,
                confirmed_terminal=incoming.is_terminal,
            )
            return True

        if seq < entry.seq:
            return False
        current = entry.workflow
        if (
            seq == entry.seq
            and entry.cancel_seq is None
            and current.updated_at is not None
            and incoming.updated_at is not None
            and incoming.updated_at < current.updated_at
        ):
            return False

        entry.last_seen_at = now

        if entry.cancel_seq is not None:
            if seq <= entry.cancel_seq:
                # Fetched before the cancel was issued
                return False
            entry.cancel_seq = None
        elif entry.marked_missing:
            entry.marked_missing = False
        elif entry.confirmed_terminal:
            if incoming.status != current.status:
                logger.warning(
                    f"Ignoring {current.status.value} -> {incoming.status.value} for terminal workflow {incoming.id}"
                )
            return False
        elif not can_transition(current.status, incoming.status):
            logger.warning(
                f"Ignoring backward transition {current.status.value} -> {incoming.status.value} "
                f"for workflow {incoming.id}"
            )
            incoming = incoming.model_copy(update={"status": current.status})

        entry.workflow = with_progress(incoming)
        entry.seq = seq
        entry.confirmed_terminal = entry.workflow.is_terminal
        return True

    def _mark_missing(self, seen: set[str], started_at: float, now: float, grace: float) -> int:
        changed = 0
        for workflow_id, entry in self._entries.items():
            if workflow_id in seen or entry.workflow.is_terminal:
                continue
            if entry.inserted_at >= started_at:
                continue
            if now - entry.last_seen_at < grace:
                continue
            logger.warning(
                f"Workflow {workflow_id} missing from job service for {now - entry.last_seen_at:.0f}s, marking failed"
            )
            entry.workflow = with_progress(entry.workflow.model_copy(update={"status": WorkflowStatus.FAILED}))
            entry.marked_missing = True
            changed += 1
        return changed
