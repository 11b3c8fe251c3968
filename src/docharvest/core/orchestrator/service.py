"""
Batch orchestrator facade.

Owns the job registry, the concurrency controller and the runner, exposes
the operator commands, and runs the scheduling loop that keeps the queue
draining up to the allowed concurrency. All state is mutated from the
event loop the orchestrator was started on and persisted after each change.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Iterable, Mapping

from docharvest.core.backends.base import (
    BackendError,
    ContextHandle,
    ContextProvider,
    ExtractionBackend,
    RenderBackend,
    RenderError,
    RenderResult,
)
from docharvest.core.config.models import JobKind, JobStatus, OrchestratorConfig
from docharvest.core.export import inline_images
from docharvest.persistence.store import StateStore, StoreError

from .jobs import ActiveJob, Job
from .registry import STATE_KEYS, JobRegistry
from .runner import JobRunner
from .throttle import ConcurrencyController

logger = logging.getLogger(__name__)


class Orchestrator:
    """Long-lived, crash-recoverable batch job scheduler.

    Args:
        store: Persistent store for queue/results/flags
        contexts: Execution context provider
        extractor: Extraction backend
        renderer: Render backend (needed for rendered_document jobs)
        config: Orchestrator limits and timings
        clock: Monotonic clock used for throttling and progress coalescing
        drain: When False, the scheduling loop never starts jobs; used by
            offline tooling that only edits the persisted queue
    """

    def __init__(
        self,
        store: StateStore,
        contexts: ContextProvider,
        extractor: ExtractionBackend,
        renderer: RenderBackend | None = None,
        config: OrchestratorConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        drain: bool = True,
    ):
        self.config = config or OrchestratorConfig()
        self.store = store
        self.contexts = contexts
        self.extractor = extractor
        self.renderer = renderer
        self.drain = drain
        self._clock = clock

        self.registry = JobRegistry()
        self.controller = ConcurrencyController(
            self.config,
            stored_bytes=self.registry.stored_bytes,
            clock=clock,
        )
        self.runner = JobRunner(
            registry=self.registry,
            controller=self.controller,
            contexts=contexts,
            extractor=extractor,
            renderer=renderer,
            config=self.config,
            persist=self.persist,
            on_finished=self._job_finished,
        )

        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        self._timers: set[asyncio.TimerHandle] = set()
        self._last_progress_persist = float("-inf")
        self._persist_lock = asyncio.Lock()
        self._closing = False

    # -------------------------------------------------------------------------
    # Startup / shutdown
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Restore persisted state and resume draining if work is outstanding."""
        self._bind_loop()
        await self.restore()
        if self.registry.pending and not self.registry.paused:
            logger.info(f"Resuming {len(self.registry.pending)} pending job(s)")
            await self.ensure_processing()

    async def restore(self) -> None:
        """Rehydrate queue, results and pause flag from the store."""
        self._bind_loop()
        try:
            state = await self.store.get(STATE_KEYS)
        except StoreError as e:
            logger.error(f"Could not read persisted state, starting empty: {e}")
            state = {}

        backfilled = self.registry.load_state(state)
        if self.registry.pending:
            self.controller.apply_options_hint(self.registry.pending[0].options)

        logger.info(
            f"Restored {len(self.registry.pending)} pending job(s), "
            f"{len(self.registry.results)} result(s), paused={self.registry.paused}"
        )
        if backfilled:
            await self.persist()

    async def shutdown(self, close_backends: bool = True, persist: bool = True) -> None:
        """Stop scheduling and cancel running tasks, keeping them recoverable.

        The state written here still lists the running jobs, so the next
        :meth:`start` re-queues them. With ``persist=False`` nothing is
        written at all (read-only inspection).
        """
        self._bind_loop()
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

        if persist:
            await self.persist()
        self._closing = True

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if close_backends:
            await self.contexts.shutdown()
            if self.renderer is not None:
                await self.renderer.shutdown()

    def _bind_loop(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop
        elif loop is not self._loop:
            raise RuntimeError("Orchestrator state may only be used from the event loop it started on")

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def persist(self) -> None:
        """Write the registry to the store.

        Writes are serialized in call order and each one snapshots the
        registry once it holds the lock, so an older snapshot never lands
        after a newer one.
        """
        if self._closing:
            return
        async with self._persist_lock:
            if self._closing:
                return
            try:
                await self.store.set(self.registry.to_state())
            except StoreError as e:
                logger.error(f"Failed to persist orchestrator state: {e}")

    async def _release_archives(self, jobs: Iterable[Job]) -> None:
        keys = [job.archive_ref for job in jobs if job.archive_ref]
        if not keys:
            return
        try:
            await self.store.remove(keys)
        except StoreError as e:
            logger.warning(f"Failed to remove stored archives {keys}: {e}")

    # -------------------------------------------------------------------------
    # Scheduling loop
    # -------------------------------------------------------------------------

    async def ensure_processing(self, force_persist: bool = False) -> int:
        """Start pending jobs until the allowed concurrency is reached.

        Returns the number of jobs started.
        """
        self._bind_loop()
        if self.registry.paused or not self.drain or self._closing:
            self.registry.sync()
            await self.persist()
            return 0

        spawned = 0
        while (
            self.registry.pending
            and len(self.registry.active) < self.controller.effective_concurrency()
        ):
            entry = self.registry.claim_next()
            if entry is None:
                break
            self._spawn(entry)
            spawned += 1

        changed = self.registry.sync()
        if spawned or changed or force_persist:
            await self.persist()
        return spawned

    def _spawn(self, entry: ActiveJob) -> None:
        logger.info(f"Starting job: {entry.target}")
        task = asyncio.create_task(self.runner.run(entry), name=f"job:{entry.target}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Runner task {task.get_name()} crashed: {error!r}")

    def _job_finished(self, entry: ActiveJob, success: bool) -> None:
        if self.registry.paused or self._closing or self._loop is None:
            return
        timer: asyncio.TimerHandle | None = None

        def fire() -> None:
            self._timers.discard(timer)
            self._backfill()

        timer = self._loop.call_later(self.config.backfill_delay_seconds, fire)
        self._timers.add(timer)

    def _backfill(self) -> None:
        task = asyncio.create_task(self.ensure_processing(), name="backfill")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        items: Iterable[Mapping[str, Any] | str],
        output_format: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> list[Job]:
        """Queue targets that are not already pending or running; clears pause."""
        self._bind_loop()
        options = dict(options or {})
        jobs = [self._job_from_item(item, output_format, options) for item in items]
        if not jobs:
            raise ValueError("No items to enqueue")

        self.controller.apply_options_hint(options)
        added = self.registry.enqueue(jobs)
        logger.info(f"Enqueued {len(added)} of {len(jobs)} job(s)")

        self.registry.paused = False
        await self.ensure_processing(force_persist=True)
        return added

    @staticmethod
    def _job_from_item(
        item: Mapping[str, Any] | str,
        output_format: str | None,
        options: Mapping[str, Any],
    ) -> Job:
        if isinstance(item, str):
            return Job.pending(item, output_format=output_format, options=options)

        target = item.get("target") or item.get("url")
        if not target:
            raise ValueError(f"Item has no target: {dict(item)!r}")
        kind = item.get("kind")
        item_options = {**options, **(item.get("options") or {})}
        return Job.pending(
            str(target),
            item.get("label") or item.get("title"),
            kind=JobKind(kind) if kind else None,
            output_format=item.get("format") or output_format,
            options=item_options,
        )

    async def set_concurrency_ceiling(self, value: Any) -> dict[str, int]:
        self._bind_loop()
        self.controller.set_ceiling(value)
        await self.ensure_processing()
        return {
            "configured_ceiling": self.controller.configured_ceiling,
            "effective_ceiling": self.controller.effective_concurrency(),
        }

    def get_status(self) -> dict[str, Any]:
        """Lightweight status view; results carry sizes, never payloads."""
        current = self.registry.current()
        return {
            "paused": self.registry.paused,
            "busy": self.registry.is_busy,
            "pending_count": len(self.registry.pending),
            "active_count": len(self.registry.active),
            "results": [job.summary() for job in self.registry.results],
            "active_jobs": [entry.summary() for entry in self.registry.active.values()],
            "current_job": current.summary() if current else None,
            "configured_ceiling": self.controller.configured_ceiling,
            "effective_ceiling": self.controller.effective_concurrency(),
        }

    def get_full_results(self, targets: Iterable[str]) -> list[dict[str, Any]]:
        """Full payloads for the given completed targets."""
        return [job.to_dict() for job in self.registry.results_for(targets)]

    async def _close_contexts(self, handles: Iterable[ContextHandle]) -> None:
        async def close(handle: ContextHandle) -> None:
            try:
                await self.contexts.close(handle)
            except BackendError as e:
                logger.warning(f"Context teardown failed for {handle.target}: {e}")

        await asyncio.gather(*(close(handle) for handle in handles))

    async def pause(self) -> None:
        """Stop admitting work and cancel every running job."""
        self._bind_loop()
        self.registry.paused = True
        handles = self.registry.cancel_all()
        logger.info(f"Pausing; cancelling {len(handles)} running job(s)")
        await self._close_contexts(handles)
        self.registry.sync()
        await self.persist()

    async def resume(self) -> None:
        self._bind_loop()
        self.registry.paused = False
        await self.ensure_processing(force_persist=True)

    async def clear_all(self) -> None:
        """Cancel running jobs and drop queue, registry and results."""
        self._bind_loop()
        handles = self.registry.cancel_all()
        await self._close_contexts(handles)
        dropped = self.registry.clear()
        await self._release_archives(dropped)
        self.registry.paused = False
        self.registry.sync()
        await self.persist()

    async def delete_one(self, target: str) -> None:
        """Remove a target from queue and results, cancelling it if running."""
        self._bind_loop()
        removed = self.registry.remove(target)
        await self._release_archives(removed)
        handle = self.registry.cancel(target)
        if handle is not None:
            await self._close_contexts([handle])
        self.registry.sync()
        await self.persist()

    async def retry(self, target: str) -> bool:
        """Re-queue a failed target. Returns False if its result is not failed."""
        self._bind_loop()
        latest = self.registry.find_result(target)
        if latest is None or latest.status != JobStatus.FAILED:
            return False
        failed = self.registry.take_failed([target])
        await self._requeue(failed)
        return True

    async def retry_all_failed(self) -> int:
        self._bind_loop()
        failed = self.registry.take_failed()
        if failed:
            await self._requeue(failed)
        return len(failed)

    async def _requeue(self, failed: list[Job]) -> None:
        latest: dict[str, Job] = {}
        for job in failed:
            latest[job.target] = job
        jobs = [job.requeued() for job in latest.values()]

        self.registry.enqueue(jobs)
        self.registry.paused = False
        self.controller.apply_options_hint(jobs[0].options)
        logger.info(f"Retrying {len(jobs)} failed job(s)")
        await self.ensure_processing(force_persist=True)

    async def report_progress(
        self,
        update: Mapping[str, Any],
        target: str | None = None,
        request_id: str | None = None,
    ) -> bool:
        """Merge advisory progress into a running job.

        Persisted immediately when ``update["done"]`` is set, otherwise at
        most once per progress interval. Returns False for unknown jobs.
        """
        self._bind_loop()
        if target is None and request_id:
            target = self.registry.target_for_request(request_id)
        entry = self.registry.active.get(target) if target else None
        if entry is None:
            return False

        if entry.job.progress is None:
            return False
        entry.job.progress.merge(update)

        now = self._clock()
        interval = self.config.progress_persist_interval_seconds
        if update.get("done") or now - self._last_progress_persist >= interval:
            self._last_progress_persist = now
            await self.persist()
        return True

    async def render_document(
        self,
        markup: str,
        title: str,
        images: Iterable[Mapping[str, Any]] = (),
    ) -> RenderResult:
        """Render ad-hoc markup (outside the queue) with the render backend."""
        if self.renderer is None:
            raise RenderError("No render backend configured")
        return await self.renderer.render(inline_images(markup, images), title)

    # -------------------------------------------------------------------------
    # Waiting
    # -------------------------------------------------------------------------

    @property
    def idle(self) -> bool:
        draining = self.drain and not self.registry.paused
        return not self._tasks and not self._timers and (
            not draining or not self.registry.is_busy
        )

    async def wait_idle(self, poll_interval: float = 0.05, timeout: float | None = None) -> None:
        """Block until no job is running and nothing is left to start.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first
        """
        async def _wait() -> None:
            while not self.idle:
                await asyncio.sleep(poll_interval)

        await asyncio.wait_for(_wait(), timeout)
