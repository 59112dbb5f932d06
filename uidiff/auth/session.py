"""Authenticated browser sessions — log in once, share the storage state."""

from __future__ import annotations

import asyncio
import copy
import hashlib
import logging
import time
from typing import Any, Optional

from playwright.async_api import Browser, Error as PlaywrightError, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import BaseModel, ConfigDict

from uidiff.errors import AuthError
from uidiff.models.config import AuthConfig
from uidiff.utils.browser_stealth import create_stealth_context

logger = logging.getLogger(__name__)

# Finds the first visible password input and the username/submit controls
# closest to it, returning CSS selectors for each.
_DETECT_LOGIN_FIELDS_JS = """() => {
    const visible = el => {
        const rect = el.getBoundingClientRect();
        return rect.width > 0 && rect.height > 0;
    };
    const selectorFor = (el, fallback) => {
        if (el.id) return '#' + CSS.escape(el.id);
        if (el.name) return el.tagName.toLowerCase() + '[name="' + el.name + '"]';
        return fallback;
    };

    const pwInput = Array.from(document.querySelectorAll('input[type="password"]')).find(visible);
    if (!pwInput) return null;

    const container = pwInput.closest('form')
        || pwInput.closest('section, main, [role="dialog"], [class*="login"], [class*="auth"], div')
        || document.body;

    const textInputs = Array.from(container.querySelectorAll(
        'input[type="email"], input[type="text"], input[type="tel"], input:not([type])'
    )).filter(visible);
    if (textInputs.length === 0) return null;

    const keywords = ['user', 'login', 'email', 'account', 'uname', 'identifier'];
    const userInput = textInputs.find(el => el.type === 'email')
        || textInputs.find(el => keywords.some(k => (el.name || el.id || '').toLowerCase().includes(k)))
        || textInputs[0];

    const buttons = Array.from(container.querySelectorAll(
        'button, input[type="submit"], [role="button"]'
    )).filter(visible);
    const submitBtn = buttons.find(b => b.type === 'submit') || buttons[0];
    if (!submitBtn) return null;

    return {
        username: selectorFor(userInput, 'input[type="' + (userInput.type || 'text') + '"]'),
        password: selectorFor(pwInput, 'input[type="password"]'),
        submit: selectorFor(submitBtn, submitBtn.type === 'submit' ? '[type="submit"]' : 'button'),
    };
}"""

_PASSWORD_VISIBLE_JS = """() => {
    const pw = document.querySelector('input[type="password"]');
    if (!pw) return false;
    const rect = pw.getBoundingClientRect();
    return rect.width > 0 && rect.height > 0;
}"""


class SessionHandle(BaseModel):
    """Read-only authenticated session shared by every capture of a run."""

    model_config = ConfigDict(frozen=True)

    storage_state: Optional[dict[str, Any]] = None
    post_login_url: Optional[str] = None
    detection_method: str = "anonymous"
    acquired_at: float = 0.0

    @property
    def is_anonymous(self) -> bool:
        return self.storage_state is None

    def state_for_context(self) -> Optional[dict[str, Any]]:
        """A private copy of the storage state for seeding a new context."""
        return copy.deepcopy(self.storage_state) if self.storage_state is not None else None


ANONYMOUS_SESSION = SessionHandle()


class AuthSessionProvider:
    """Logs in with a browser borrowed from ``browser_source`` and caches the result.

    ``browser_source`` is any object with an async-context ``acquire()``
    yielding a Playwright Browser (normally the capture BrowserPool).
    """

    def __init__(self, browser_source, viewport: dict | None = None, user_agent: str | None = None):
        self._browser_source = browser_source
        self._viewport = viewport or {"width": 1280, "height": 720}
        self._user_agent = user_agent
        self._cache: dict[str, SessionHandle] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, credentials: AuthConfig | None) -> SessionHandle:
        """Return a session for ``credentials``, logging in at most once per key."""
        if credentials is None:
            return ANONYMOUS_SESSION

        key = _credential_key(credentials)
        async with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Reusing cached session for %s", credentials.login_url)
                return cached

            async with self._browser_source.acquire() as browser:
                handle = await login_and_capture_state(
                    browser, credentials, viewport=self._viewport, user_agent=self._user_agent,
                )
            self._cache[key] = handle
            return handle

    def invalidate(self, credentials: AuthConfig | None = None) -> None:
        """Drop one cached session, or all of them."""
        if credentials is None:
            self._cache.clear()
        else:
            self._cache.pop(_credential_key(credentials), None)


def _credential_key(credentials: AuthConfig) -> str:
    raw = f"{credentials.login_url}\0{credentials.username}\0{credentials.password}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


async def login_and_capture_state(
    browser: Browser,
    auth_config: AuthConfig,
    viewport: dict | None = None,
    user_agent: str | None = None,
) -> SessionHandle:
    """Log in inside a disposable context and capture its storage state.

    The temporary context is always closed before returning.

    Raises:
        AuthError: the form could not be found or no post-login state was reached.
    """
    context = await create_stealth_context(
        browser,
        viewport=viewport or {"width": 1280, "height": 720},
        user_agent=user_agent,
    )
    try:
        page = await context.new_page()
        post_login_url, method = await perform_login(page, auth_config)
        storage_state = await context.storage_state()
        logger.info("Captured auth storage state (%d cookies)",
                    len(storage_state.get("cookies", [])))
        return SessionHandle(
            storage_state=storage_state,
            post_login_url=post_login_url,
            detection_method=method,
            acquired_at=time.time(),
        )
    finally:
        await context.close()


async def perform_login(page: Page, auth_config: AuthConfig) -> tuple[str, str]:
    """Fill and submit the login form. Returns (post_login_url, detection_method)."""
    timeout = auth_config.login_timeout_ms
    logger.info("Auth: navigating to %s", auth_config.login_url)
    try:
        await page.goto(auth_config.login_url, wait_until="domcontentloaded", timeout=timeout)
    except PlaywrightError as e:
        raise AuthError(f"Could not load login page {auth_config.login_url}: {e}") from e

    selectors = await resolve_login_selectors(page, auth_config)
    if selectors is None:
        raise AuthError(f"Could not identify login form fields on {auth_config.login_url}")
    username_sel, password_sel, submit_sel, method = selectors
    logger.debug("Auth: selectors resolved (%s) username=%s password=%s submit=%s",
                 method, username_sel, password_sel, submit_sel)

    try:
        await page.fill(username_sel, auth_config.username, timeout=timeout)
        await page.fill(password_sel, auth_config.password, timeout=timeout)
        await page.click(submit_sel, timeout=timeout)
    except PlaywrightError as e:
        raise AuthError(f"Login form interaction failed ({method}): {e}") from e

    if not await verify_login_success(page, auth_config):
        raise AuthError(
            f"Login form submitted (method={method}) but no post-login state was reached "
            f"within {timeout}ms"
        )
    logger.info("Auth: login successful (method=%s), landed on %s", method, page.url)
    return page.url, method


async def resolve_login_selectors(
    page: Page,
    auth_config: AuthConfig,
) -> Optional[tuple[str, str, str, str]]:
    """Explicit selectors first, then heuristic detection.

    Returns (username_sel, password_sel, submit_sel, detection_method) or None.
    """
    if (
        not auth_config.auto_detect
        or (auth_config.username_selector and auth_config.password_selector and auth_config.submit_selector)
    ):
        return (
            auth_config.username_selector or "input[type='email'], input[type='text']",
            auth_config.password_selector or "input[type='password']",
            auth_config.submit_selector or "button[type='submit'], button",
            "explicit",
        )

    try:
        detected = await page.evaluate(_DETECT_LOGIN_FIELDS_JS)
    except PlaywrightError as e:
        logger.debug("Login field detection failed: %s", e)
        detected = None

    if detected:
        return (
            auth_config.username_selector or detected["username"],
            auth_config.password_selector or detected["password"],
            auth_config.submit_selector or detected["submit"],
            "auto_detect",
        )

    if auth_config.username_selector or auth_config.password_selector:
        logger.warning("Auth: falling back to partial/default selectors")
        return (
            auth_config.username_selector or "input[type='email'], input[type='text']",
            auth_config.password_selector or "input[type='password']",
            auth_config.submit_selector or "button[type='submit'], button",
            "explicit",
        )
    return None


async def verify_login_success(page: Page, auth_config: AuthConfig) -> bool:
    """Check for a post-login state after the form was submitted.

    Success is the configured indicator appearing, or (without one) the URL
    leaving the login page or the password field disappearing.
    """
    timeout = auth_config.login_timeout_ms
    if auth_config.success_indicator:
        try:
            await page.wait_for_selector(auth_config.success_indicator, timeout=timeout)
            return True
        except PlaywrightTimeoutError:
            logger.debug("Auth: success indicator %s not found", auth_config.success_indicator)
            return False

    login_path = auth_config.login_url.rstrip("/")
    try:
        await page.wait_for_url(lambda url: url.rstrip("/") != login_path, timeout=timeout)
        try:
            await page.wait_for_load_state("networkidle", timeout=timeout)
        except PlaywrightTimeoutError:
            pass
        return True
    except PlaywrightTimeoutError:
        pass  # URL may not change (SPA, in-place auth)

    try:
        return not await page.evaluate(_PASSWORD_VISIBLE_JS)
    except PlaywrightError:
        return False
