"""
Job queue and registry.

Holds every piece of mutable orchestrator state: the FIFO of pending jobs,
the running jobs keyed by target, targets marked for cancellation, finished
results and the pause flag. Only the orchestrator that owns an instance
mutates it.
"""

from __future__ import annotations

import time
from typing import Any, Iterable, Mapping
from uuid import uuid4

from docharvest.core.backends.base import ContextHandle
from docharvest.core.config.models import JobStatus

from .jobs import ActiveJob, Job

# Persisted state keys
QUEUE_KEY = "batch_queue"
ACTIVE_KEY = "active_jobs"
RESULTS_KEY = "processed_results"
BUSY_KEY = "is_processing"
PAUSED_KEY = "is_paused"

STATE_KEYS = (QUEUE_KEY, ACTIVE_KEY, RESULTS_KEY, BUSY_KEY, PAUSED_KEY)


def new_request_id() -> str:
    return f"batch-{int(time.time() * 1000)}-{uuid4().hex[:8]}"


class JobRegistry:
    """Pending queue, active registry, cancellation marks and results."""

    def __init__(self) -> None:
        self.pending: list[Job] = []
        self.active: dict[str, ActiveJob] = {}
        self.cancelled: set[str] = set()
        self.results: list[Job] = []
        self.paused = False
        self.busy = False
        self._request_index: dict[str, str] = {}

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def is_busy(self) -> bool:
        return bool(self.active) or bool(self.pending)

    def is_queued(self, target: str) -> bool:
        return any(job.target == target for job in self.pending)

    def is_known(self, target: str) -> bool:
        """Target is pending or running."""
        return target in self.active or self.is_queued(target)

    def is_cancelled(self, entry: ActiveJob) -> bool:
        return self.paused or entry.cancelled or entry.target in self.cancelled

    def current(self) -> ActiveJob | None:
        """First running job, in start order."""
        return next(iter(self.active.values()), None)

    def stored_bytes(self) -> int:
        return sum(job.result_size for job in self.results)

    def find_result(self, target: str) -> Job | None:
        for job in reversed(self.results):
            if job.target == target:
                return job
        return None

    def results_for(self, targets: Iterable[str]) -> list[Job]:
        wanted = set(targets)
        return [job for job in self.results if job.target in wanted]

    def target_for_request(self, request_id: str) -> str | None:
        return self._request_index.get(request_id)

    # -------------------------------------------------------------------------
    # Queue mutation
    # -------------------------------------------------------------------------

    def enqueue(self, jobs: Iterable[Job]) -> list[Job]:
        """Append jobs whose target is neither pending nor running.

        Returns the jobs actually added.
        """
        added: list[Job] = []
        for job in jobs:
            if self.is_known(job.target):
                continue
            job.status = JobStatus.PENDING
            self.pending.append(job)
            added.append(job)
        return added

    def claim_next(self) -> ActiveJob | None:
        """Pop the oldest pending job and register it as running."""
        if not self.pending:
            return None
        job = self.pending.pop(0)
        job.status = JobStatus.PROCESSING
        entry = ActiveJob(job=job, request_id=new_request_id())
        self.active[job.target] = entry
        self._request_index[entry.request_id] = job.target
        return entry

    def attach_handle(self, entry: ActiveJob, handle: ContextHandle | None) -> None:
        entry.handle = handle

    def release(self, entry: ActiveJob) -> None:
        """Drop a finished job from the registry.

        A newer run of the same target (re-enqueued after clear/delete)
        is left untouched.
        """
        self._request_index.pop(entry.request_id, None)
        if self.active.get(entry.target) is entry:
            del self.active[entry.target]
            self.cancelled.discard(entry.target)

    def record(self, job: Job) -> None:
        self.results.append(job)

    # -------------------------------------------------------------------------
    # Cancellation / removal
    # -------------------------------------------------------------------------

    def cancel(self, target: str) -> ContextHandle | None:
        """Mark a running target cancelled; returns its handle for teardown."""
        entry = self.active.get(target)
        if entry is None:
            return None
        entry.cancelled = True
        self.cancelled.add(target)
        return entry.handle

    def cancel_all(self) -> list[ContextHandle]:
        """Mark every running job cancelled. Pending jobs are untouched."""
        handles = []
        for target in list(self.active):
            handle = self.cancel(target)
            if handle is not None:
                handles.append(handle)
        return handles

    def remove(self, target: str) -> list[Job]:
        """Remove a target from pending and results; returns removed results."""
        removed = [job for job in self.results if job.target == target]
        self.results = [job for job in self.results if job.target != target]
        self.pending = [job for job in self.pending if job.target != target]
        return removed

    def take_failed(self, targets: Iterable[str] | None = None) -> list[Job]:
        """Remove failed results (optionally limited to ``targets``) and return them."""
        wanted = set(targets) if targets is not None else None

        def matches(job: Job) -> bool:
            return job.status == JobStatus.FAILED and (wanted is None or job.target in wanted)

        failed = [job for job in self.results if matches(job)]
        if not failed:
            return []
        failed_targets = {job.target for job in failed}
        # Retrying replaces every result for the target, not only the failed one
        self.results = [job for job in self.results if job.target not in failed_targets]
        return failed

    def clear(self) -> list[Job]:
        """Empty queue, registry and results; returns the dropped results."""
        dropped = self.results
        self.results = []
        self.pending = []
        self.active.clear()
        self.cancelled.clear()
        self._request_index.clear()
        return dropped

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def sync(self) -> bool:
        """Refresh the derived busy flag; returns True if it changed."""
        busy = self.is_busy
        changed = busy != self.busy
        self.busy = busy
        return changed

    def to_state(self) -> dict[str, Any]:
        """Snapshot for the store.

        Cancelled runs are left out of the active list so a restart does not
        bring back a deleted or paused job.
        """
        return {
            QUEUE_KEY: [job.to_dict() for job in self.pending],
            ACTIVE_KEY: [
                entry.job.to_dict()
                for entry in self.active.values()
                if not entry.cancelled and entry.target not in self.cancelled
            ],
            RESULTS_KEY: [job.to_dict() for job in self.results],
            BUSY_KEY: self.busy,
            PAUSED_KEY: self.paused,
        }

    def load_state(self, state: Mapping[str, Any]) -> bool:
        """Rehydrate from persisted state. Missing or malformed parts are skipped.

        Jobs that were running when the state was written go back to the
        head of the queue. Returns True if result sizes were backfilled.
        """
        interrupted = _jobs_from(state.get(ACTIVE_KEY))
        queued = _jobs_from(state.get(QUEUE_KEY))

        self.pending = []
        self.enqueue(interrupted + queued)

        self.results = _jobs_from(state.get(RESULTS_KEY))
        backfilled = False
        for job in self.results:
            if job.status == JobStatus.SUCCESS and not job.result_size:
                job.result_size = job.estimated_size()
                backfilled = True

        self.paused = bool(state.get(PAUSED_KEY, False))
        self.sync()
        return backfilled


def _jobs_from(raw: Any) -> list[Job]:
    if not isinstance(raw, list):
        return []
    jobs = []
    for item in raw:
        if isinstance(item, Mapping) and item.get("target"):
            jobs.append(Job.from_dict(item))
    return jobs
