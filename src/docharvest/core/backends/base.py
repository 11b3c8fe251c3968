"""
Backend base classes and data structures.

Defines the contracts for the collaborators the orchestrator drives:
- ContextProvider: opens / awaits / closes an isolated page per job
- ExtractionBackend: pulls content (and side artifacts) out of an open page
- RenderBackend: renders markup into a paginated document (PDF)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from docharvest.core.config.models import JobKind


# =============================================================================
# Error kinds reported by extraction backends
# =============================================================================


class ErrorKind(str, Enum):
    """Closed set of extraction failure classes."""

    GENERIC = "generic"
    TIMEOUT = "timeout"
    ARCHIVE_TOO_LARGE = "archive_too_large"
    ARCHIVE_TIMEOUT = "archive_timeout"

    @property
    def retryable(self) -> bool:
        """Archive failures depend on content size; retrying cannot help."""
        return self not in (ErrorKind.ARCHIVE_TOO_LARGE, ErrorKind.ARCHIVE_TIMEOUT)


# =============================================================================
# Data structures
# =============================================================================


@dataclass
class ContextHandle:
    """Opaque reference to an open execution context."""

    id: str
    target: str
    page: Any = None


@dataclass
class ExtractionRequest:
    """What the runner asks an extraction backend to do."""

    target: str
    kind: JobKind
    format: str = "markdown"
    options: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None
    title: str | None = None

    @property
    def archive_mode(self) -> bool:
        return self.kind == JobKind.PACKAGED_ARCHIVE


@dataclass
class ExtractionResult:
    """Result of an extraction call.

    Exactly one of ``content`` / ``archive_inline`` / ``archive_ref`` is
    expected on success depending on the job kind. ``error`` marks a
    failure reported by the backend without raising.
    """

    content: str | None = None
    images: list[dict[str, Any]] = field(default_factory=list)
    archive_inline: str | None = None
    archive_ref: str | None = None
    archive_size: int | None = None
    error: str | None = None
    error_kind: ErrorKind = ErrorKind.GENERIC

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def image_bytes(self) -> int:
        """Estimated decoded size of base64-embedded images."""
        return int(sum(len(img.get("base64") or "") * 0.75 for img in self.images))


@dataclass
class RenderResult:
    """Result of a render call."""

    document: bytes | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.document)


# =============================================================================
# Contracts
# =============================================================================


class ContextProvider(ABC):
    """Creates and tears down isolated page execution contexts."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier."""

    @abstractmethod
    async def open(self, target: str, *, foreground: bool = False) -> ContextHandle:
        """Open a new execution context pointed at ``target``.

        Raises:
            ContextAcquisitionError: If no context could be created
        """

    @abstractmethod
    async def await_loaded(self, handle: ContextHandle, timeout: float) -> None:
        """Wait until the context finished loading, or ``timeout`` elapsed.

        Returns early (without raising) if the context is closed meanwhile.
        """

    @abstractmethod
    async def close(self, handle: ContextHandle) -> None:
        """Tear the context down. Must be safe to call more than once."""

    async def page_title(self, handle: ContextHandle) -> str | None:
        """Current document title of the context, if available."""
        return None

    async def shutdown(self) -> None:
        """Release provider-wide resources."""


class ExtractionBackend(ABC):
    """Extracts content from an open execution context."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier."""

    @abstractmethod
    async def extract(
        self,
        handle: ContextHandle,
        request: ExtractionRequest,
        timeout: float,
    ) -> ExtractionResult | None:
        """Run one extraction against ``handle``.

        Must be safe to re-invoke after a timeout. ``timeout`` is advisory;
        the runner enforces it independently.
        """


class RenderBackend(ABC):
    """Renders markup into a paginated document."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier."""

    @abstractmethod
    async def render(self, markup: str, title: str) -> RenderResult:
        """Render ``markup`` with the given document ``title``."""

    async def shutdown(self) -> None:
        """Release backend resources."""


# =============================================================================
# Errors
# =============================================================================


class BackendError(Exception):
    """Base exception for backend errors."""

    def __init__(
        self,
        message: str,
        target: str | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.target = target
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return False


class ContextAcquisitionError(BackendError):
    """Execution context could not be opened."""


class ExtractionError(BackendError):
    """Extraction failed; retryability depends on the reported kind."""

    def __init__(
        self,
        message: str,
        target: str | None = None,
        kind: ErrorKind = ErrorKind.GENERIC,
        cause: Exception | None = None,
    ):
        super().__init__(message, target=target, cause=cause)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class ExtractionTimeout(ExtractionError):
    """An extraction attempt exceeded its timeout."""

    def __init__(self, message: str, target: str | None = None):
        super().__init__(message, target=target, kind=ErrorKind.TIMEOUT)


class ArchiveTooLarge(ExtractionError):
    """The packaged archive exceeds what the backend can produce."""

    def __init__(self, message: str, target: str | None = None):
        super().__init__(message, target=target, kind=ErrorKind.ARCHIVE_TOO_LARGE)


class ArchiveTimeout(ExtractionError):
    """Packaging or encoding the archive timed out."""

    def __init__(self, message: str, target: str | None = None):
        super().__init__(message, target=target, kind=ErrorKind.ARCHIVE_TIMEOUT)


class RenderError(BackendError):
    """Rendering the document failed."""


_KIND_ERRORS: dict[ErrorKind, type[ExtractionError]] = {
    ErrorKind.TIMEOUT: ExtractionTimeout,
    ErrorKind.ARCHIVE_TOO_LARGE: ArchiveTooLarge,
    ErrorKind.ARCHIVE_TIMEOUT: ArchiveTimeout,
}


def extraction_error_for(
    kind: ErrorKind,
    message: str,
    target: str | None = None,
) -> ExtractionError:
    """Build the exception matching a backend-reported error kind."""
    error_cls = _KIND_ERRORS.get(kind)
    if error_cls is None:
        return ExtractionError(message, target=target, kind=kind)
    return error_cls(message, target=target)
