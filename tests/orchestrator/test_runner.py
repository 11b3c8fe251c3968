"""Tests for the job runner.

Covers:
- the content / rendered document / packaged archive branches
- title refinement (heading, explicit label, page title, generated fallback)
- bounded extraction retries, timeouts and non-retryable error kinds
- terminal context acquisition and render failures
- operator cancellation (no result, no throttling)
"""

from __future__ import annotations

import asyncio
import base64

import pytest

from docharvest.core.backends.base import ErrorKind, ExtractionError, ExtractionResult
from docharvest.core.config.models import JobKind, JobStatus
from docharvest.core.orchestrator import Job, Orchestrator
from docharvest.core.orchestrator.registry import RESULTS_KEY
from fakes import eventually, markdown_result


async def run_job(orchestrator: Orchestrator, job: Job) -> tuple[bool, Job | None]:
    orchestrator.registry.enqueue([job])
    entry = orchestrator.registry.claim_next()
    ok = await orchestrator.runner.run(entry)
    return ok, orchestrator.registry.find_result(job.target)


def slow(seconds: float):
    async def step() -> ExtractionResult:
        await asyncio.sleep(seconds)
        return markdown_result("too late")

    return step


@pytest.mark.asyncio
class TestContentJobs:
    async def test_success_records_content_and_size(self, make_orchestrator, contexts, store) -> None:
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("https://docs.example/a"))

        assert ok is True
        assert result.status == JobStatus.SUCCESS
        assert result.kind == JobKind.CONTENT
        assert result.content.startswith("# Doc https://docs.example/a")
        assert result.result_size == len(result.content)
        assert result.timestamp is not None
        assert result.progress is None
        assert contexts.closed == ["https://docs.example/a"]
        assert orchestrator.registry.active == {}
        assert store.snapshot()[RESULTS_KEY][0]["status"] == "success"

    async def test_image_payload_counts_towards_size(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [
            ExtractionResult(content="abcd", images=[{"filename": "x.png", "base64": "A" * 400}])
        ]
        orchestrator = make_orchestrator()

        _, result = await run_job(orchestrator, Job.pending("t", "Label"))

        assert result.result_size == 4 + 300
        assert result.images[0]["filename"] == "x.png"

    async def test_heading_replaces_placeholder_label(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [markdown_result("Quarterly Plan")]
        orchestrator = make_orchestrator()

        _, result = await run_job(orchestrator, Job.pending("t"))

        assert result.label == "Quarterly Plan"

    async def test_explicit_label_is_kept(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [markdown_result("Something Else")]
        orchestrator = make_orchestrator()

        _, result = await run_job(orchestrator, Job.pending("t", "My Label"))

        assert result.label == "My Label"

    async def test_page_title_fallback_is_normalized(self, make_orchestrator, extractor, contexts) -> None:
        extractor.script["t"] = [ExtractionResult(content="no heading here")]
        contexts.titles["t"] = "Design Notes - Feishu Docs"
        orchestrator = make_orchestrator()

        _, result = await run_job(orchestrator, Job.pending("t"))

        assert result.label == "Design Notes"

    async def test_generated_label_as_last_resort(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [ExtractionResult(content="no heading here")]
        orchestrator = make_orchestrator()

        _, result = await run_job(orchestrator, Job.pending("t"))

        assert result.label.startswith("Doc ")


@pytest.mark.asyncio
class TestExtractionRetries:
    async def test_retries_then_succeeds(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [ExtractionError("flaky"), None, markdown_result("Third Time")]
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t"))

        assert ok is True
        assert extractor.calls == ["t", "t", "t"]
        assert result.label == "Third Time"

    async def test_exhausted_attempts_fail_the_job(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [
            ExtractionResult(error="first"),
            ExtractionResult(error="second"),
            ExtractionResult(error="third"),
        ]
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t", "T"))

        assert ok is False
        assert len(extractor.calls) == 3
        assert result.status == JobStatus.FAILED
        assert result.error == "third"
        assert result.result_size == 0
        assert orchestrator.controller.cooldown_until > 0

    async def test_non_retryable_kind_fails_immediately(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [
            ExtractionResult(error="Archive too large", error_kind=ErrorKind.ARCHIVE_TOO_LARGE),
            markdown_result("never reached"),
        ]
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t"))

        assert ok is False
        assert extractor.calls == ["t"]
        assert result.error == "Archive too large"

    async def test_timeout_per_attempt(self, make_orchestrator, extractor, fast_config) -> None:
        config = fast_config.model_copy(update={"extract_timeout_seconds": 0.05})
        extractor.script["t"] = [slow(1), slow(1), slow(1)]
        orchestrator = make_orchestrator(config=config)

        ok, result = await run_job(orchestrator, Job.pending("t"))

        assert ok is False
        assert len(extractor.calls) == 3
        assert "timeout" in result.error.lower()

    async def test_unexpected_backend_exception_is_wrapped(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [RuntimeError("socket closed")] * 3
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t"))

        assert ok is False
        assert len(extractor.calls) == 3
        assert result.error == "socket closed"

    async def test_local_images_get_the_longer_timeout(self, make_orchestrator, extractor, fast_config) -> None:
        extractor.script["t"] = [ExtractionResult(archive_inline=base64.b64encode(b"zip").decode(), archive_size=3)]
        orchestrator = make_orchestrator()

        await run_job(orchestrator, Job.pending("t", options={"image_mode": "local"}))

        assert extractor.timeouts == [fast_config.extract_timeout_local_images_seconds]


@pytest.mark.asyncio
class TestTerminalFailures:
    async def test_context_failure_is_not_retried(self, make_orchestrator, extractor, contexts) -> None:
        contexts.fail_open.add("t")
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t", "T"))

        assert ok is False
        assert extractor.calls == []
        assert result.status == JobStatus.FAILED
        assert "Context create failed" in result.error

    async def test_render_failure_fails_the_job(self, make_orchestrator, renderer) -> None:
        renderer.fail = True
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t", output_format="pdf"))

        assert ok is False
        assert result.error == "PDF generation failed"

    async def test_missing_archive_fails_the_job(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [ExtractionResult(content="")]
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t", options={"image_mode": "local"}))

        assert ok is False
        assert result.error == "Local archive generation failed"


@pytest.mark.asyncio
class TestOtherKinds:
    async def test_rendered_document(self, make_orchestrator, extractor, renderer) -> None:
        extractor.script["t"] = [ExtractionResult(content="<h1>Report</h1><p>body</p>")]
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t", output_format="pdf", options={"image_mode": "local"}))

        request = extractor.requests[0]
        assert request.kind == JobKind.RENDERED_DOCUMENT
        assert request.format == "html"
        assert request.options["image_mode"] == "base64"

        assert ok is True
        assert renderer.calls == [("<h1>Report</h1><p>body</p>", "Report")]
        document = base64.b64decode(result.document)
        assert document == b"%PDF-1.7 Report"
        assert result.result_size == len(document)
        assert result.format == "pdf"

    async def test_packaged_archive_inline(self, make_orchestrator, extractor) -> None:
        encoded = base64.b64encode(b"PK-archive").decode()
        extractor.script["t"] = [ExtractionResult(archive_inline=encoded, archive_size=10)]
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t", "Team: Notes?", options={"image_mode": "local"}))

        assert ok is True
        assert result.kind == JobKind.PACKAGED_ARCHIVE
        assert result.archive_inline == encoded
        assert result.archive_name == "Team Notes.zip"
        assert result.result_size == 10

    async def test_packaged_archive_by_reference(self, make_orchestrator, extractor) -> None:
        extractor.script["t"] = [ExtractionResult(archive_ref="archive:req-1", archive_size=64 * 1024 * 1024)]
        orchestrator = make_orchestrator()

        ok, result = await run_job(orchestrator, Job.pending("t", "Big", options={"image_mode": "local"}))

        assert ok is True
        assert result.archive_ref == "archive:req-1"
        assert result.archive_inline is None
        assert result.result_size == 64 * 1024 * 1024


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancelled_job_records_nothing(self, make_orchestrator, extractor, contexts) -> None:
        extractor.hold("t")
        orchestrator = make_orchestrator()
        orchestrator.registry.enqueue([Job.pending("t")])
        entry = orchestrator.registry.claim_next()

        task = asyncio.create_task(orchestrator.runner.run(entry))
        await eventually(lambda: extractor.waiting("t"))

        handle = orchestrator.registry.cancel("t")
        await contexts.close(handle)
        ok = await task

        assert ok is False
        assert orchestrator.registry.results == []
        assert orchestrator.registry.active == {}
        assert "t" not in orchestrator.registry.cancelled
        assert orchestrator.controller.cooldown_until == 0.0
        assert extractor.calls == ["t"]

    async def test_cancel_before_start(self, make_orchestrator, extractor, contexts) -> None:
        orchestrator = make_orchestrator()
        orchestrator.registry.enqueue([Job.pending("t")])
        entry = orchestrator.registry.claim_next()
        orchestrator.registry.cancel("t")

        ok = await orchestrator.runner.run(entry)

        assert ok is False
        assert contexts.opened == []
        assert orchestrator.registry.results == []
