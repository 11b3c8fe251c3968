"""
Job data model.

A Job is keyed by its target. The same class represents a queued job, a
running job and a finished result; payload fields are only populated on
success.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from docharvest.core.backends.base import ContextHandle
from docharvest.core.config.models import JobKind, JobStatus

DEFAULT_FORMAT = "markdown"

CONCURRENCY_OPTION = "batch_concurrency"
IMAGE_MODE_OPTION = "image_mode"
FOREGROUND_OPTION = "foreground"


def kind_for(output_format: str | None, options: Mapping[str, Any] | None) -> JobKind:
    """Derive how output is handled from the requested format and options."""
    options = options or {}
    if output_format == "pdf":
        return JobKind.RENDERED_DOCUMENT
    if options.get(IMAGE_MODE_OPTION) == "local":
        return JobKind.PACKAGED_ARCHIVE
    return JobKind.CONTENT


def _finite(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass
class JobProgress:
    """Advisory progress reported by the extraction backend."""

    started_at: float = field(default_factory=time.time)
    round: int = 0
    max_rounds: int | None = None
    added: int = 0
    total: int = 0
    message: str = ""

    def merge(self, update: Mapping[str, Any]) -> None:
        """Apply the well-formed fields of ``update``; ignore the rest."""
        for name in ("round", "added", "total"):
            value = _finite(update.get(name))
            if value is not None and value >= 0:
                setattr(self, name, int(value))

        max_rounds = _finite(update.get("max_rounds"))
        if max_rounds is not None and max_rounds > 0:
            self.max_rounds = int(max_rounds)

        message = update.get("message")
        if isinstance(message, str) and message:
            self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "round": self.round,
            "max_rounds": self.max_rounds,
            "added": self.added,
            "total": self.total,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JobProgress":
        progress = cls(started_at=_finite(data.get("started_at")) or time.time())
        progress.merge(data)
        return progress


@dataclass
class Job:
    """One extraction-to-artifact unit of work."""

    target: str
    label: str = "Untitled"
    kind: JobKind = JobKind.CONTENT
    format: str = DEFAULT_FORMAT
    options: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    result_size: int = 0
    timestamp: float | None = None
    error: str | None = None
    progress: JobProgress | None = None

    # Payload (success only)
    content: str | None = None
    images: list[dict[str, Any]] = field(default_factory=list)
    document: str | None = None
    archive_inline: str | None = None
    archive_ref: str | None = None
    archive_name: str | None = None

    @classmethod
    def pending(
        cls,
        target: str,
        label: str | None = None,
        *,
        kind: JobKind | None = None,
        output_format: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> "Job":
        output_format = output_format or DEFAULT_FORMAT
        options = dict(options or {})
        return cls(
            target=target,
            label=label or "Untitled",
            kind=kind or kind_for(output_format, options),
            format=output_format,
            options=options,
        )

    def requeued(self) -> "Job":
        """Fresh pending job with the same target, label and options."""
        return Job.pending(
            self.target,
            self.label,
            kind=self.kind,
            output_format=self.format,
            options=self.options,
        )

    def summary(self) -> dict[str, Any]:
        """Size-only projection used for status polling."""
        return {
            "target": self.target,
            "label": self.label,
            "kind": self.kind.value,
            "format": self.format,
            "status": self.status.value,
            "size": self.result_size,
            "timestamp": self.timestamp,
            "error": self.error,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.summary()
        data.update(
            {
                "options": self.options,
                "progress": self.progress.to_dict() if self.progress else None,
                "content": self.content,
                "images": self.images,
                "document": self.document,
                "archive_inline": self.archive_inline,
                "archive_ref": self.archive_ref,
                "archive_name": self.archive_name,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Job":
        """Rebuild a job from persisted data, tolerating missing fields."""
        options = dict(data.get("options") or {})
        output_format = data.get("format") or DEFAULT_FORMAT

        try:
            kind = JobKind(data.get("kind"))
        except ValueError:
            kind = kind_for(output_format, options)
        try:
            status = JobStatus(data.get("status"))
        except ValueError:
            status = JobStatus.PENDING

        progress = data.get("progress")
        return cls(
            target=str(data["target"]),
            label=data.get("label") or "Untitled",
            kind=kind,
            format=output_format,
            options=options,
            status=status,
            result_size=int(_finite(data.get("size")) or 0),
            timestamp=_finite(data.get("timestamp")),
            error=data.get("error"),
            progress=JobProgress.from_dict(progress) if isinstance(progress, Mapping) else None,
            content=data.get("content"),
            images=list(data.get("images") or []),
            document=data.get("document"),
            archive_inline=data.get("archive_inline"),
            archive_ref=data.get("archive_ref"),
            archive_name=data.get("archive_name"),
        )

    def estimated_size(self) -> int:
        """Best-effort size of the stored payload in bytes."""
        size = len(self.content or "")
        size += sum(len(img.get("base64") or "") * 0.75 for img in self.images)
        size += len(self.document or "") * 0.75
        size += len(self.archive_inline or "") * 0.75
        return int(round(size))


@dataclass
class ActiveJob:
    """Registry entry for a running job."""

    job: Job
    request_id: str
    started_at: float = field(default_factory=time.time)
    handle: ContextHandle | None = None
    cancelled: bool = False

    @property
    def target(self) -> str:
        return self.job.target

    def summary(self) -> dict[str, Any]:
        data = self.job.summary()
        data["request_id"] = self.request_id
        data["started_at"] = self.started_at
        data["progress"] = self.job.progress.to_dict() if self.job.progress else None
        return data
