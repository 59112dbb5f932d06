"""Screenshot capturer — renders one URL to a PNG in an isolated context."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from PIL import Image
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from uidiff.auth.session import ANONYMOUS_SESSION, SessionHandle
from uidiff.capture.actions import ScriptActionError, run_script
from uidiff.capture.browser_pool import BrowserPool
from uidiff.errors import CaptureError
from uidiff.models.config import CaptureConfig, ViewportConfig
from uidiff.models.script import Action
from uidiff.utils.browser_stealth import FREEZE_ANIMATIONS_CSS, create_stealth_context

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https", "file")

# Headroom on top of the navigation timeout for settling, scripts and rasterising.
HARD_TIMEOUT_GRACE_SECONDS = 15.0

# Playwright error fragments that indicate a network-level, retryable failure.
_TRANSIENT_MARKERS = ("net::", "Timeout", "Target closed", "Navigation failed because page crashed")


@dataclass
class CaptureOptions:
    headless: bool = True
    full_page: bool = True
    wait_until: str = "networkidle"
    timeout_ms: int = 60000
    settle_ms: int = 300
    retries: int = 2
    retry_backoff_seconds: float = 1.0
    user_agent: Optional[str] = None
    script: list[Action] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: CaptureConfig, script: list[Action] | None = None) -> "CaptureOptions":
        return cls(
            headless=config.headless,
            full_page=config.full_page,
            wait_until=config.wait_until,
            timeout_ms=config.timeout_ms,
            settle_ms=config.settle_ms,
            retries=config.retries,
            retry_backoff_seconds=config.retry_backoff_seconds,
            user_agent=config.user_agent,
            script=list(script or []),
        )

    @property
    def hard_timeout_seconds(self) -> float:
        return (self.timeout_ms + self.settle_ms) / 1000.0 + HARD_TIMEOUT_GRACE_SECONDS


@dataclass
class CaptureResult:
    url: str
    path: str
    width: int
    height: int
    final_url: str = ""
    status_code: Optional[int] = None
    attempts: int = 1
    duration_seconds: float = 0.0


class ScreenshotCapturer:
    """Captures pages with browsers borrowed from a BrowserPool."""

    def __init__(self, pool: BrowserPool):
        self.pool = pool

    async def capture(
        self,
        url: str,
        viewport: ViewportConfig | dict,
        handle: SessionHandle | None,
        options: CaptureOptions,
        output_path: str | Path,
    ) -> CaptureResult | CaptureError:
        """Capture ``url`` to ``output_path``.

        Never raises for page-level problems: failures come back as a
        CaptureError value. Transient failures are retried with exponential
        backoff, up to ``options.retries`` extra attempts.
        """
        scheme = urlparse(url).scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            return CaptureError(url, f"Unsupported URL scheme '{scheme or '(none)'}'")

        if isinstance(viewport, ViewportConfig):
            viewport = {"width": viewport.width, "height": viewport.height}
        handle = handle or ANONYMOUS_SESSION
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        error: CaptureError | None = None
        attempts = options.retries + 1
        for attempt in range(1, attempts + 1):
            start = time.time()
            try:
                result = await asyncio.wait_for(
                    self._capture_once(url, viewport, handle, options, output_path),
                    timeout=options.hard_timeout_seconds,
                )
                result.attempts = attempt
                result.duration_seconds = round(time.time() - start, 2)
                logger.info("Captured %s (%dx%d) in %.1fs",
                            url, result.width, result.height, result.duration_seconds)
                return result
            except asyncio.TimeoutError:
                error = CaptureError(
                    url, f"Timed out after {options.hard_timeout_seconds:.0f}s", transient=True,
                )
            except CaptureError as e:
                error = e

            if not error.transient or attempt == attempts:
                break
            delay = options.retry_backoff_seconds * (2 ** (attempt - 1))
            logger.warning("Capture attempt %d/%d for %s failed (%s), retrying in %.1fs",
                           attempt, attempts, url, error.reason, delay)
            await asyncio.sleep(delay)

        logger.error("Capture failed for %s: %s", url, error.reason)
        return error

    async def _capture_once(
        self,
        url: str,
        viewport: dict,
        handle: SessionHandle,
        options: CaptureOptions,
        output_path: Path,
    ) -> CaptureResult:
        async with self.pool.acquire() as browser:
            context = await create_stealth_context(
                browser,
                viewport=viewport,
                user_agent=options.user_agent,
                storage_state=handle.state_for_context(),
            )
            try:
                page = await context.new_page()
                try:
                    response = await page.goto(
                        url, wait_until=options.wait_until, timeout=options.timeout_ms,
                    )
                except PlaywrightTimeoutError as e:
                    raise CaptureError(url, f"Navigation timed out: {e}", transient=True) from e
                except PlaywrightError as e:
                    raise CaptureError(url, f"Navigation failed: {e}", transient=_is_transient(e)) from e

                status = response.status if response is not None else None
                if status is not None and status >= 400:
                    raise CaptureError(url, f"HTTP {status}")

                try:
                    await page.add_style_tag(content=FREEZE_ANIMATIONS_CSS)
                    if options.settle_ms:
                        await page.wait_for_timeout(options.settle_ms)
                    if options.script:
                        await run_script(page, options.script, timeout=options.timeout_ms)
                    await page.screenshot(
                        path=str(output_path), full_page=options.full_page, animations="disabled",
                    )
                except ScriptActionError as e:
                    raise CaptureError(url, str(e)) from e
                except PlaywrightError as e:
                    raise CaptureError(url, f"Rendering failed: {e}", transient=_is_transient(e)) from e

                with Image.open(output_path) as img:
                    width, height = img.size
                return CaptureResult(
                    url=url,
                    path=str(output_path),
                    width=width,
                    height=height,
                    final_url=page.url,
                    status_code=status,
                )
            finally:
                await context.close()


def _is_transient(error: Exception) -> bool:
    message = str(error)
    return isinstance(error, PlaywrightTimeoutError) or any(m in message for m in _TRANSIENT_MARKERS)
