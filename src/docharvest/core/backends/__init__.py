"""Collaborator contracts and Playwright implementations."""

from .base import (
    ArchiveTimeout,
    ArchiveTooLarge,
    BackendError,
    ContextAcquisitionError,
    ContextHandle,
    ContextProvider,
    ErrorKind,
    ExtractionBackend,
    ExtractionError,
    ExtractionRequest,
    ExtractionResult,
    ExtractionTimeout,
    RenderBackend,
    RenderError,
    RenderResult,
    extraction_error_for,
)
from .playwright_backend import (
    PageContentExtractor,
    PlaywrightBrowser,
    PlaywrightContextProvider,
    PlaywrightRenderBackend,
)

__all__ = [
    # Contracts
    "ContextProvider",
    "ExtractionBackend",
    "RenderBackend",
    # Data structures
    "ContextHandle",
    "ExtractionRequest",
    "ExtractionResult",
    "RenderResult",
    "ErrorKind",
    # Errors
    "BackendError",
    "ContextAcquisitionError",
    "ExtractionError",
    "ExtractionTimeout",
    "ArchiveTooLarge",
    "ArchiveTimeout",
    "RenderError",
    "extraction_error_for",
    # Playwright
    "PlaywrightBrowser",
    "PlaywrightContextProvider",
    "PlaywrightRenderBackend",
    "PageContentExtractor",
]
