"""
Job runner.

Executes one claimed job end to end: open an execution context, wait for
it to settle, extract with bounded retries, branch on the job kind, record
the result and release everything. Each await is followed by a
cancellation checkpoint.
"""

from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import replace
from typing import Awaitable, Callable

from docharvest.core.backends.base import (
    BackendError,
    ContextAcquisitionError,
    ContextHandle,
    ContextProvider,
    ExtractionBackend,
    ExtractionError,
    ExtractionRequest,
    ExtractionResult,
    ExtractionTimeout,
    RenderBackend,
    RenderError,
    extraction_error_for,
)
from docharvest.core.config.models import JobKind, JobStatus, OrchestratorConfig
from docharvest.core.export import (
    fallback_title,
    heading_title,
    is_placeholder_title,
    normalize_export_title,
    sanitize_filename,
)
from docharvest.core.logging import JobLogger, job_logger

from .jobs import FOREGROUND_OPTION, IMAGE_MODE_OPTION, ActiveJob, Job, JobProgress
from .registry import JobRegistry
from .retries import RetryPolicy
from .throttle import ConcurrencyController


class JobCancelled(Exception):
    """Raised at a checkpoint when the job was cancelled by the operator."""


class JobRunner:
    """Runs claimed jobs against the configured collaborators.

    One runner serves every job of an orchestrator; per-job state lives in
    the :class:`ActiveJob` entry passed to :meth:`run`.
    """

    def __init__(
        self,
        registry: JobRegistry,
        controller: ConcurrencyController,
        contexts: ContextProvider,
        extractor: ExtractionBackend,
        renderer: RenderBackend | None,
        config: OrchestratorConfig,
        persist: Callable[[], Awaitable[None]],
        on_finished: Callable[[ActiveJob, bool], None],
    ):
        self.registry = registry
        self.controller = controller
        self.contexts = contexts
        self.extractor = extractor
        self.renderer = renderer
        self.config = config
        self._persist = persist
        self._on_finished = on_finished
        self.retry_policy = RetryPolicy(
            max_attempts=config.extract_attempts,
            delay=config.extract_retry_delay_seconds,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def run(self, entry: ActiveJob) -> bool:
        """Run a job registered in the active registry.

        Returns True if a success result was recorded.
        """
        job = entry.job
        log = job_logger(job.target, entry.request_id)
        job.progress = JobProgress(message="Preparing extraction...")
        success = False
        cancelled = False

        try:
            await self._persist()
            outcome = await self._execute(entry, log)
            self._checkpoint(entry)
            self.registry.record(outcome)
            success = True
            log.info(f"Job finished: {outcome.label} ({outcome.result_size} bytes)")

        except JobCancelled:
            cancelled = True
            log.info("Job cancelled")

        except asyncio.CancelledError:
            cancelled = True
            raise

        except Exception as e:
            if self.registry.is_cancelled(entry):
                # Teardown from outside usually surfaces as a backend error
                cancelled = True
                log.info(f"Job cancelled ({e})")
            else:
                log.warning(f"Job failed: {e}")
                self.registry.record(self._failed(job, e))

        finally:
            if entry.handle is not None:
                try:
                    await self.contexts.close(entry.handle)
                except BackendError as e:
                    log.warning(f"Context teardown failed: {e}")
            self.registry.release(entry)
            if not cancelled:
                self.controller.record_outcome(success)
            self.registry.sync()
            await self._persist()
            self._on_finished(entry, success)

        return success

    def _checkpoint(self, entry: ActiveJob) -> None:
        if self.registry.is_cancelled(entry):
            raise JobCancelled(entry.target)

    async def _execute(self, entry: ActiveJob, log: JobLogger) -> Job:
        job = entry.job
        self._checkpoint(entry)

        handle = await self._open_context(job)
        self.registry.attach_handle(entry, handle)
        self._checkpoint(entry)

        await self.contexts.await_loaded(handle, self.config.load_timeout_seconds)
        self._checkpoint(entry)

        # Page scripts need time to attach before they can answer
        await asyncio.sleep(self.config.settle_delay_seconds)
        self._checkpoint(entry)

        result = await self._extract(entry, handle, log)
        self._checkpoint(entry)

        title = await self._refine_title(job, result, handle)

        if job.kind == JobKind.RENDERED_DOCUMENT:
            return await self._rendered_result(entry, result, title)
        if job.kind == JobKind.PACKAGED_ARCHIVE:
            return self._archive_result(job, result, title)
        return self._content_result(job, result, title)

    async def _open_context(self, job: Job) -> ContextHandle:
        foreground = bool(job.options.get(FOREGROUND_OPTION))
        try:
            return await self.contexts.open(job.target, foreground=foreground)
        except ContextAcquisitionError:
            raise
        except BackendError as e:
            raise ContextAcquisitionError(str(e), target=job.target, cause=e) from e

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def extract_timeout(self, job: Job) -> float:
        if job.options.get(IMAGE_MODE_OPTION) == "local":
            return self.config.extract_timeout_local_images_seconds
        return self.config.extract_timeout_seconds

    def build_request(self, entry: ActiveJob) -> ExtractionRequest:
        job = entry.job
        if job.kind == JobKind.RENDERED_DOCUMENT:
            # The renderer needs self-contained markup
            return ExtractionRequest(
                target=job.target,
                kind=job.kind,
                format="html",
                options={**job.options, IMAGE_MODE_OPTION: "base64"},
                request_id=entry.request_id,
                title=job.label,
            )
        return ExtractionRequest(
            target=job.target,
            kind=job.kind,
            format=job.format,
            options=dict(job.options),
            request_id=entry.request_id,
            title=job.label,
        )

    async def _extract(
        self,
        entry: ActiveJob,
        handle: ContextHandle,
        log: JobLogger,
    ) -> ExtractionResult:
        request = self.build_request(entry)
        timeout = self.extract_timeout(entry.job)
        attempts = self.retry_policy.max_attempts

        async def attempt(number: int) -> ExtractionResult:
            self._checkpoint(entry)
            attempt_log = log.bind(attempt=number)
            attempt_log.info(f"Extract start ({number}/{attempts})")
            try:
                result = await asyncio.wait_for(
                    self.extractor.extract(handle, request, timeout),
                    timeout,
                )
            except asyncio.TimeoutError as e:
                raise ExtractionTimeout(
                    f"Extraction timeout after {round(timeout)}s", target=entry.target
                ) from e
            except BackendError:
                raise
            except Exception as e:
                raise ExtractionError(str(e) or type(e).__name__, target=entry.target, cause=e) from e

            if result is None:
                raise ExtractionError("Extraction returned no response", target=entry.target)
            if not result.ok:
                raise extraction_error_for(result.error_kind, result.error or "Extraction failed", entry.target)
            attempt_log.info("Extract done")
            return result

        return await self.retry_policy.call(attempt)

    async def _refine_title(
        self,
        job: Job,
        result: ExtractionResult,
        handle: ContextHandle,
    ) -> str:
        title = job.label
        if is_placeholder_title(title):
            output_format = "html" if job.kind == JobKind.RENDERED_DOCUMENT else job.format
            title = heading_title(result.content, output_format) or ""
        if is_placeholder_title(title):
            title = await self.contexts.page_title(handle) or ""
        if is_placeholder_title(title):
            title = fallback_title()

        title = title.strip()
        return normalize_export_title(title) or title or "document"

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def _success(self, job: Job, title: str, size: int, **payload) -> Job:
        return replace(
            job,
            label=title,
            status=JobStatus.SUCCESS,
            result_size=int(round(size)),
            timestamp=time.time(),
            error=None,
            progress=None,
            **payload,
        )

    def _content_result(self, job: Job, result: ExtractionResult, title: str) -> Job:
        size = len(result.content or "") + result.image_bytes
        return self._success(
            job,
            title,
            size,
            content=result.content,
            images=list(result.images),
        )

    async def _rendered_result(self, entry: ActiveJob, result: ExtractionResult, title: str) -> Job:
        if self.renderer is None:
            raise RenderError("No render backend configured", target=entry.target)

        rendered = await self.renderer.render(result.content or "", title)
        if not rendered.ok:
            raise RenderError(rendered.error or "PDF generation failed", target=entry.target)
        self._checkpoint(entry)

        document = rendered.document or b""
        return self._success(
            entry.job,
            title,
            len(document),
            format="pdf",
            document=base64.b64encode(document).decode("ascii"),
        )

    def _archive_result(self, job: Job, result: ExtractionResult, title: str) -> Job:
        if not result.archive_inline and not result.archive_ref:
            raise ExtractionError("Local archive generation failed", target=job.target)

        size = result.archive_size or len(result.archive_inline or "") * 0.75
        return self._success(
            job,
            title,
            size,
            archive_inline=result.archive_inline,
            archive_ref=result.archive_ref,
            archive_name=f"{sanitize_filename(title)}.zip",
        )

    def _failed(self, job: Job, error: Exception) -> Job:
        return replace(
            job,
            label=job.label or "Failed Item",
            status=JobStatus.FAILED,
            result_size=0,
            timestamp=time.time(),
            error=str(error) or type(error).__name__,
            progress=None,
        )
