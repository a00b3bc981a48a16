from __future__ import annotations

import atexit
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from playwright.sync_api import Browser, Error as PlaywrightError, sync_playwright

from gamecard.core.config import settings
from gamecard.core.errors import RasterizationError
from gamecard.core.logger import get_logger

log = get_logger("services.markup_render")

_PLAYWRIGHT = None
_BROWSER: Browser | None = None
_BROWSER_LOCK = threading.Lock()
# Playwright's sync objects are bound to the thread that created them.
_EXECUTOR = ThreadPoolExecutor(max_workers=1, thread_name_prefix="markup-render")


def _ensure_browser() -> Browser:
    global _PLAYWRIGHT, _BROWSER
    if _BROWSER is not None:
        return _BROWSER
    with _BROWSER_LOCK:
        if _BROWSER is not None:
            return _BROWSER
        _PLAYWRIGHT = sync_playwright().start()
        _BROWSER = _PLAYWRIGHT.chromium.launch(
            headless=True,
            args=[
                "--disable-dev-shm-usage",
                "--disable-gpu",
                "--font-render-hinting=none",
            ],
        )
        return _BROWSER


def _shutdown_browser() -> None:
    global _PLAYWRIGHT, _BROWSER
    with _BROWSER_LOCK:
        if _BROWSER is not None:
            try:
                _BROWSER.close()
            except PlaywrightError as e:
                log.debug("markup_browser_close_failed error=%s", e)
            _BROWSER = None
        if _PLAYWRIGHT is not None:
            try:
                _PLAYWRIGHT.stop()
            except PlaywrightError as e:
                log.debug("markup_playwright_stop_failed error=%s", e)
            _PLAYWRIGHT = None


def _shutdown() -> None:
    try:
        _EXECUTOR.submit(_shutdown_browser).result(timeout=10)
    except (FutureTimeout, RuntimeError) as e:
        log.debug("markup_shutdown_skipped error=%s", e)
    _EXECUTOR.shutdown(wait=False)


atexit.register(_shutdown)


def _screenshot(html_doc: str, width: int, height: int, scale: float, timeout_ms: int) -> bytes:
    browser = _ensure_browser()
    context = browser.new_context(
        viewport={"width": int(width), "height": int(height)},
        device_scale_factor=scale,
    )
    page = context.new_page()
    try:
        page.set_content(html_doc, wait_until="load", timeout=timeout_ms)
        # Inlined @font-face sources still decode asynchronously.
        page.evaluate("() => document.fonts.ready.then(() => true)")
        element = page.locator("svg").first
        return element.screenshot(type="png", omit_background=True, timeout=timeout_ms)
    finally:
        context.close()


def render_markup(
    html_doc: str,
    width: int,
    height: int,
    *,
    scale: float = 1.0,
    layer: str = "markup",
    timeout_ms: int | None = None,
) -> bytes:
    """Screenshot a layer document in headless Chromium with a transparent background."""
    budget = settings.markup_render_timeout_ms if timeout_ms is None else timeout_ms
    try:
        future = _EXECUTOR.submit(_screenshot, html_doc, width, height, scale, budget)
        # Browser start-up is not part of the page budget.
        return future.result(timeout=budget / 1000.0 + 30.0)
    except FutureTimeout as e:
        raise RasterizationError(layer, f"markup render timed out after {budget} ms", cause=e) from e
    except PlaywrightError as e:
        raise RasterizationError(layer, f"markup render failed: {e}", cause=e) from e
