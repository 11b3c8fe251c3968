"""
Playwright-backed collaborators.

Provides:
- PlaywrightBrowser: lazily launched, shared browser process
- PlaywrightContextProvider: one isolated browser context + page per job
- PlaywrightRenderBackend: HTML -> PDF through Chromium's print pipeline
- PageContentExtractor: generic extraction of page HTML / text, with an
  optional zipped archive of the page and its images
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import zipfile
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from docharvest.core.config.models import BrowserConfig, BrowserType, JobKind
from docharvest.core.export import build_print_html, sanitize_filename

from .base import (
    BackendError,
    ContextAcquisitionError,
    ContextHandle,
    ContextProvider,
    ErrorKind,
    ExtractionBackend,
    ExtractionRequest,
    ExtractionResult,
    RenderBackend,
    RenderResult,
)

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

    from docharvest.persistence.store import StateStore

logger = logging.getLogger(__name__)


# =============================================================================
# Shared browser
# =============================================================================


class PlaywrightBrowser:
    """Owns the Playwright driver and a single browser process."""

    def __init__(self, config: BrowserConfig | None = None):
        self.config = config or BrowserConfig()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()

    async def ensure_browser(self) -> Browser:
        """Launch the browser if not already running."""
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser

            try:
                from playwright.async_api import async_playwright
            except ImportError as e:
                raise BackendError(
                    "Playwright is not installed. Run: playwright install chromium",
                    cause=e,
                ) from e

            if self._playwright is None:
                self._playwright = await async_playwright().start()

            if self.config.browser == BrowserType.FIREFOX:
                launcher = self._playwright.firefox
            elif self.config.browser == BrowserType.WEBKIT:
                launcher = self._playwright.webkit
            else:
                launcher = self._playwright.chromium

            try:
                self._browser = await launcher.launch(headless=self.config.headless)
            except Exception as e:
                raise BackendError(
                    f"Failed to launch {self.config.browser.value} browser. "
                    "Run: playwright install chromium",
                    cause=e,
                ) from e

            logger.info(
                f"Launched {self.config.browser.value} browser (headless={self.config.headless})"
            )
            return self._browser

    async def new_context(self) -> BrowserContext:
        """Create a fresh, isolated browser context."""
        browser = await self.ensure_browser()

        options: dict[str, Any] = {
            "viewport": {
                "width": self.config.viewport_width,
                "height": self.config.viewport_height,
            },
        }
        if self.config.user_agent:
            options["user_agent"] = self.config.user_agent
        if self.config.storage_state_path and self.config.storage_state_path.exists():
            options["storage_state"] = str(self.config.storage_state_path)

        return await browser.new_context(**options)

    @property
    def supports_pdf(self) -> bool:
        return self.config.browser == BrowserType.CHROMIUM and self.config.headless

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


# =============================================================================
# Execution context provider
# =============================================================================


class PlaywrightContextProvider(ContextProvider):
    """Opens each target in its own browser context."""

    def __init__(self, browser: PlaywrightBrowser):
        self.browser = browser
        self._contexts: dict[str, BrowserContext] = {}

    @property
    def name(self) -> str:
        return "playwright"

    async def open(self, target: str, *, foreground: bool = False) -> ContextHandle:
        from playwright.async_api import Error as PlaywrightError

        try:
            context = await self.browser.new_context()
            page = await context.new_page()
        except (BackendError, PlaywrightError) as e:
            raise ContextAcquisitionError(
                f"Context create failed: {e}", target=target, cause=e
            ) from e

        handle = ContextHandle(id=uuid4().hex, target=target, page=page)
        self._contexts[handle.id] = context

        if foreground:
            await page.bring_to_front()

        try:
            # Only wait for the navigation to commit; loading is awaited separately.
            await page.goto(target, wait_until="commit")
        except PlaywrightError as e:
            await self.close(handle)
            raise ContextAcquisitionError(
                f"Navigation to {target} failed: {e}", target=target, cause=e
            ) from e

        return handle

    async def await_loaded(self, handle: ContextHandle, timeout: float) -> None:
        from playwright.async_api import Error as PlaywrightError
        from playwright.async_api import TimeoutError as PlaywrightTimeout

        page: Page | None = handle.page
        if page is None or page.is_closed():
            return
        try:
            await page.wait_for_load_state("load", timeout=timeout * 1000)
        except PlaywrightTimeout:
            logger.debug(f"Load wait timed out after {timeout:.0f}s: {handle.target}")
        except PlaywrightError as e:
            # Closed underneath us (cancellation); the runner's checkpoint handles it.
            logger.debug(f"Load wait interrupted for {handle.target}: {e}")

    async def page_title(self, handle: ContextHandle) -> str | None:
        from playwright.async_api import Error as PlaywrightError

        page: Page | None = handle.page
        if page is None or page.is_closed():
            return None
        try:
            return await page.title()
        except PlaywrightError:
            return None

    async def close(self, handle: ContextHandle) -> None:
        from playwright.async_api import Error as PlaywrightError

        context = self._contexts.pop(handle.id, None)
        if context is None:
            return
        try:
            await context.close()
        except PlaywrightError as e:
            logger.debug(f"Context close failed for {handle.target}: {e}")

    async def shutdown(self) -> None:
        for context_id in list(self._contexts):
            context = self._contexts.pop(context_id)
            await context.close()
        await self.browser.close()


# =============================================================================
# Render backend
# =============================================================================


class PlaywrightRenderBackend(RenderBackend):
    """Prints wrapped HTML to an A4 PDF with Chromium."""

    def __init__(self, browser: PlaywrightBrowser, settle_delay: float = 2.0):
        self.browser = browser
        self.settle_delay = settle_delay

    @property
    def name(self) -> str:
        return "playwright-pdf"

    async def render(self, markup: str, title: str) -> RenderResult:
        from playwright.async_api import Error as PlaywrightError

        if not self.browser.supports_pdf:
            return RenderResult(error="PDF rendering requires headless Chromium")

        try:
            context = await self.browser.new_context()
        except (BackendError, PlaywrightError) as e:
            return RenderResult(error=f"PDF generation failed: {e}")

        try:
            page = await context.new_page()
            await page.set_content(build_print_html(markup, title), wait_until="load")
            if self.settle_delay:
                await asyncio.sleep(self.settle_delay)
            document = await page.pdf(
                format="A4",
                print_background=True,
                prefer_css_page_size=True,
                outline=True,
                tagged=True,
            )
        except PlaywrightError as e:
            logger.warning(f"Render failed for '{title}': {e}")
            return RenderResult(error=f"PDF generation failed: {e}")
        finally:
            await context.close()

        return RenderResult(document=document)


# =============================================================================
# Generic extraction backend
# =============================================================================


DEFAULT_INLINE_ARCHIVE_LIMIT = 32 * 1024 * 1024
DEFAULT_MAX_ARCHIVE_BYTES = 512 * 1024 * 1024
ARCHIVE_KEY_PREFIX = "archive:"

_IMAGE_SOURCES_JS = """
() => Array.from(document.images)
    .map((img) => img.currentSrc || img.src)
    .filter((src) => src && src.startsWith('http'))
"""


class PageContentExtractor(ExtractionBackend):
    """Extracts the rendered page body.

    ``html``/``pdf`` formats return the body markup, anything else returns
    visible text. In archive mode the page markup and its images are zipped;
    archives above ``inline_limit`` are written to ``store`` and returned by
    reference.
    """

    def __init__(
        self,
        store: StateStore | None = None,
        inline_limit: int = DEFAULT_INLINE_ARCHIVE_LIMIT,
        max_archive_bytes: int = DEFAULT_MAX_ARCHIVE_BYTES,
        max_images: int = 200,
    ):
        self.store = store
        self.inline_limit = inline_limit
        self.max_archive_bytes = max_archive_bytes
        self.max_images = max_images

    @property
    def name(self) -> str:
        return "page-content"

    async def extract(
        self,
        handle: ContextHandle,
        request: ExtractionRequest,
        timeout: float,
    ) -> ExtractionResult | None:
        from playwright.async_api import Error as PlaywrightError

        page: Page | None = handle.page
        if page is None or page.is_closed():
            return ExtractionResult(error="Execution context is closed")

        try:
            if request.archive_mode:
                return await self._extract_archive(page, request)

            if request.format in ("html", "pdf") or request.kind == JobKind.RENDERED_DOCUMENT:
                content = await page.inner_html("body")
                title = request.title or await page.title()
                if title and "<h1" not in content:
                    content = f"<h1>{title}</h1>\n{content}"
            else:
                content = await page.inner_text("body")
                title = request.title or await page.title()
                if title and not content.lstrip().startswith("# "):
                    content = f"# {title}\n\n{content}"
        except PlaywrightError as e:
            return ExtractionResult(error=f"Extraction failed: {e}")

        return ExtractionResult(content=content)

    async def _extract_archive(self, page: Page, request: ExtractionRequest) -> ExtractionResult:
        title = request.title or await page.title()
        body = await page.content()
        sources: list[str] = await page.evaluate(_IMAGE_SOURCES_JS)

        buffer = io.BytesIO()
        total = len(body)
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for index, src in enumerate(sources[: self.max_images]):
                response = await page.context.request.get(src)
                if not response.ok:
                    logger.debug(f"Skipping image {src}: HTTP {response.status}")
                    continue
                data = await response.body()
                total += len(data)
                if total > self.max_archive_bytes:
                    return ExtractionResult(
                        error=f"Archive too large (> {self.max_archive_bytes // (1024 * 1024)} MiB)",
                        error_kind=ErrorKind.ARCHIVE_TOO_LARGE,
                    )
                name = f"images/{index:04d}-{sanitize_filename(src.rsplit('/', 1)[-1])}"
                archive.writestr(name, data)
                body = body.replace(src, name)
            archive.writestr(f"{sanitize_filename(title)}.html", body)

        payload = buffer.getvalue()
        encoded = base64.b64encode(payload).decode("ascii")

        if len(payload) <= self.inline_limit:
            return ExtractionResult(archive_inline=encoded, archive_size=len(payload))

        if self.store is None:
            return ExtractionResult(
                error="Archive exceeds inline limit and no store is configured",
                error_kind=ErrorKind.ARCHIVE_TOO_LARGE,
            )

        key = f"{ARCHIVE_KEY_PREFIX}{request.request_id or uuid4().hex}"
        await self.store.set({key: encoded})
        return ExtractionResult(archive_ref=key, archive_size=len(payload))
