"""Browser helpers — launches Chromium and builds capture contexts.

Capture contexts pin locale, timezone and user agent so repeated
screenshots of the same page render identically, and hide the most
common headless-automation signals so pages don't serve bot walls.
"""

from __future__ import annotations

from typing import Optional

from playwright.async_api import Browser, BrowserContext, Playwright

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)

_STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
if (!window.chrome) { window.chrome = {}; }
if (!window.chrome.runtime) { window.chrome.runtime = {}; }
"""

# Freeze CSS animations and the caret so consecutive captures are stable.
FREEZE_ANIMATIONS_CSS = """
*, *::before, *::after {
    animation-duration: 0s !important;
    animation-delay: 0s !important;
    transition-duration: 0s !important;
    transition-delay: 0s !important;
    caret-color: transparent !important;
}
"""


async def launch_stealth_browser(playwright: Playwright, headless: bool = True) -> Browser:
    """Launch Chromium with anti-detection arguments."""
    return await playwright.chromium.launch(
        headless=headless,
        args=[
            "--disable-blink-features=AutomationControlled",
            "--hide-scrollbars",
        ],
    )


async def create_stealth_context(
    browser: Browser,
    viewport: dict,
    user_agent: Optional[str] = None,
    storage_state: Optional[dict | str] = None,
) -> BrowserContext:
    """Create an isolated capture context.

    Args:
        viewport: ``{"width": ..., "height": ...}`` for the page.
        storage_state: Optional Playwright storage state (cookies + localStorage)
            from an authenticated session. Accepts a dict or a path to a JSON file.
    """
    context = await browser.new_context(
        viewport=viewport,
        user_agent=user_agent or DEFAULT_USER_AGENT,
        locale="en-US",
        timezone_id="America/New_York",
        device_scale_factor=1,
        extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
        storage_state=storage_state,
    )
    await context.add_init_script(_STEALTH_INIT_SCRIPT)
    return context
