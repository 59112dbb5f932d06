"""Bounded pool of shared Chromium instances."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, Playwright, async_playwright

from uidiff.utils.browser_stealth import launch_stealth_browser

logger = logging.getLogger(__name__)


class BrowserPool:
    """Lends browsers to callers; at most ``size`` are launched.

    Browsers are launched lazily on first demand and handed back on exit
    from ``acquire()``, including when the caller raises or is cancelled.
    A browser that disconnected frees its slot, and a waiting caller
    launches the replacement.
    """

    def __init__(self, size: int = 2, headless: bool = True):
        self.size = max(1, size)
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browsers: list[Browser] = []
        self._idle: list[Browser] = []
        self._launching = 0
        self._available = asyncio.Condition()
        self._launch_lock = asyncio.Lock()
        self._closed = False

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Browser]:
        browser = await self._checkout()
        try:
            yield browser
        finally:
            await self._checkin(browser)

    async def _checkout(self) -> Browser:
        async with self._available:
            while True:
                if self._closed:
                    raise RuntimeError("BrowserPool is closed")
                if self._idle:
                    return self._idle.pop(0)
                if len(self._browsers) + self._launching < self.size:
                    self._launching += 1
                    break
                await self._available.wait()

        try:
            browser = await self._launch()
        except BaseException:
            async with self._available:
                self._launching -= 1
                self._available.notify()
            raise

        async with self._available:
            self._launching -= 1
            self._browsers.append(browser)
            logger.debug("Launched browser %d/%d", len(self._browsers), self.size)
        return browser

    async def _launch(self) -> Browser:
        async with self._launch_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            return await launch_stealth_browser(self._playwright, headless=self.headless)

    async def _checkin(self, browser: Browser) -> None:
        async with self._available:
            if self._closed or not browser.is_connected():
                self._discard(browser)
            else:
                self._idle.append(browser)
            self._available.notify()

    def _discard(self, browser: Browser) -> None:
        if browser in self._browsers:
            self._browsers.remove(browser)
            logger.debug("Dropped disconnected browser, %d left", len(self._browsers))

    async def close(self) -> None:
        async with self._available:
            self._closed = True
            self._available.notify_all()
        for browser in list(self._browsers):
            try:
                await browser.close()
            except Exception as e:
                logger.debug("Error closing browser: %s", e)
        self._browsers.clear()
        self._idle.clear()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def __aenter__(self) -> "BrowserPool":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
