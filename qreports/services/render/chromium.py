from __future__ import annotations

import asyncio
import logging

from playwright.async_api import Browser, Error as PlaywrightError, Playwright, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from qreports.core.config import get_settings
from qreports.core.errors import RendererCrashedError, RenderTimeoutError, UpstreamError


logger = logging.getLogger(__name__)

# Container-safe launch flags: no OS sandbox, no GPU, no /dev/shm reliance.
CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
]
PDF_MARGIN = {"top": "10px", "bottom": "10px", "left": "10px", "right": "10px"}


class ChromiumRendererFactory:
    """Launch and tear down headless Chromium processes for the renderer pool."""

    def __init__(self, *, executable_path: str | None = None) -> None:
        self._executable_path = executable_path if executable_path is not None else get_settings().renderer_executable_path
        self._playwright: Playwright | None = None
        self._lock = asyncio.Lock()

    async def _driver(self) -> Playwright:
        # One Playwright driver process serves every browser this factory launches.
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            return self._playwright

    async def create(self) -> Browser:
        playwright = await self._driver()
        browser = await playwright.chromium.launch(
            headless=True,
            args=CHROMIUM_ARGS,
            executable_path=self._executable_path or None,
        )
        logger.info("renderer_launched version=%s", browser.version)
        return browser

    async def destroy(self, instance: Browser) -> None:
        await instance.close()

    def is_healthy(self, instance: Browser) -> bool:
        return instance.is_connected()

    async def shutdown(self) -> None:
        async with self._lock:
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


async def render_html_to_pdf(browser: Browser, html: str, timeout_s: float) -> bytes:
    """Render an HTML document to A4 PDF bytes once the page's network is idle."""
    try:
        page = await browser.new_page()
    except PlaywrightError as exc:
        raise RendererCrashedError("Renderer is not accepting new pages") from exc
    try:
        await page.set_content(html, wait_until="networkidle", timeout=timeout_s * 1000)
        return await page.pdf(format="A4", print_background=True, margin=PDF_MARGIN)
    except PlaywrightTimeoutError as exc:
        raise RenderTimeoutError(f"Rendering exceeded the time limit of {timeout_s:g} seconds") from exc
    except PlaywrightError as exc:
        if not browser.is_connected():
            raise RendererCrashedError("Renderer crashed during rendering") from exc
        raise UpstreamError("Failed to render PDF") from exc
    finally:
        if browser.is_connected() and not page.is_closed():
            try:
                await page.close()
            except PlaywrightError as exc:
                logger.warning("renderer_page_close_failed", exc_info=exc)
