"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock, Mock

import pytest
from PIL import Image
from playwright.async_api import Browser, BrowserContext, Page

from uidiff.ai.client import VisionModel
from uidiff.auth.session import ANONYMOUS_SESSION
from uidiff.capture.capturer import CaptureResult
from uidiff.errors import CaptureError
from uidiff.events.broadcaster import EventHub, ProgressEvent
from uidiff.models.config import AIConfig, AuthConfig, CaptureConfig, UIDiffConfig, ViewportConfig
from uidiff.storage.memory_store import (
    MemoryBatchTaskRepository,
    MemoryReportRepository,
    MemoryScriptRepository,
)

WHITE = (255, 255, 255)
RED = (255, 0, 0)


# ============================================================================
# Image helpers
# ============================================================================


def make_image(
    size: tuple[int, int] = (100, 100),
    color: tuple[int, int, int] = WHITE,
    squares: list[tuple[int, int, int, int]] | None = None,
    square_color: tuple[int, int, int] = RED,
) -> Image.Image:
    """Solid image with optional filled squares given as (x, y, w, h)."""
    img = Image.new("RGB", size, color)
    for x, y, w, h in squares or []:
        img.paste(square_color, (x, y, x + w, y + h))
    return img


def save_image(path: Path, **kwargs) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    make_image(**kwargs).save(path)
    return path


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def viewport_config() -> ViewportConfig:
    return ViewportConfig(width=100, height=100, name="test")


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        login_url="https://example.com/login",
        username="qa@example.com",
        password="secret",
    )


@pytest.fixture
def ui_config(tmp_path: Path, viewport_config: ViewportConfig) -> UIDiffConfig:
    """Config rooted in a temp dir with fast capture retries and AI enabled."""
    return UIDiffConfig(
        data_dir=str(tmp_path / "data"),
        viewport=viewport_config,
        capture=CaptureConfig(retries=0, retry_backoff_seconds=0, settle_ms=0),
        ai=AIConfig(provider="anthropic", api_key="test-key"),
        diff_timeout_seconds=10,
        ai_timeout_seconds=10,
    )


@pytest.fixture
def design_file(tmp_path: Path) -> Path:
    """A 100x100 white design image on disk."""
    return save_image(tmp_path / "designs" / "home.png")


# ============================================================================
# Storage / events
# ============================================================================


@pytest.fixture
def report_repo() -> MemoryReportRepository:
    return MemoryReportRepository()


@pytest.fixture
def task_repo() -> MemoryBatchTaskRepository:
    return MemoryBatchTaskRepository()


@pytest.fixture
def script_repo() -> MemoryScriptRepository:
    return MemoryScriptRepository()


class RecordingHub(EventHub):
    """EventHub that also keeps every event it broadcast."""

    def __init__(self):
        super().__init__()
        self.events: list[ProgressEvent] = []

    async def broadcast(self, event: ProgressEvent) -> None:
        self.events.append(event)
        await super().broadcast(event)

    def of_type(self, event_type: str) -> list[ProgressEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


# ============================================================================
# Pipeline fakes
# ============================================================================


class FakeCapturer:
    """Stands in for ScreenshotCapturer: writes a canned image per URL.

    ``pages`` maps URL -> image kwargs for make_image, or a CaptureError to
    return. URLs not in the map render as a plain white 100x100 page.
    """

    def __init__(self, pages: dict | None = None, delay: float = 0.0):
        self.pages = pages or {}
        self.delay = delay
        self.calls: list[str] = []
        self.viewports: dict = {}

    async def capture(self, url, viewport, handle, options, output_path):
        self.calls.append(url)
        self.viewports[url] = viewport
        if self.delay:
            await asyncio.sleep(self.delay)
        spec = self.pages.get(url, {})
        if isinstance(spec, CaptureError):
            return spec
        save_image(Path(output_path), **spec)
        return CaptureResult(url=url, path=str(output_path), width=100, height=100)


@pytest.fixture
def fake_capturer() -> FakeCapturer:
    return FakeCapturer()


@pytest.fixture
def fake_auth_provider() -> Mock:
    provider = Mock()
    provider.acquire = AsyncMock(return_value=ANONYMOUS_SESSION)
    return provider


class FakeVisionModel(VisionModel):
    """Vision model that plays back canned replies.

    Each reply is either text or an exception to raise; the last one repeats.
    """

    provider = "fake"

    def __init__(self, *replies: str | Exception, **kwargs):
        kwargs.setdefault("model", "fake-model")
        kwargs.setdefault("api_key", "test-key")
        super().__init__(**kwargs)
        self.replies = list(replies) or ["[]"]
        self.sent: list[tuple[str, str, list]] = []

    def _send(self, system_prompt, user_message, images):
        self.sent.append((system_prompt, user_message, images))
        reply = self.replies[min(len(self.sent), len(self.replies)) - 1]
        if isinstance(reply, Exception):
            raise reply
        return reply


def model_factory_for(model: VisionModel) -> Callable:
    return lambda config, debug_dir=None: model


# ============================================================================
# Browser Mocks
# ============================================================================


@pytest.fixture
def mock_page() -> AsyncMock:
    """Create a mock Playwright page."""
    page = AsyncMock(spec=Page)
    page.url = "https://example.com"
    page.goto = AsyncMock(return_value=Mock(status=200))
    page.click = AsyncMock()
    page.fill = AsyncMock()
    page.hover = AsyncMock()
    page.evaluate = AsyncMock()
    page.screenshot = AsyncMock()
    page.add_style_tag = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.wait_for_url = AsyncMock()
    page.wait_for_load_state = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.keyboard = AsyncMock()
    page.keyboard.press = AsyncMock()
    return page


@pytest.fixture
def mock_context(mock_page: AsyncMock) -> AsyncMock:
    """Create a mock Playwright browser context."""
    context = AsyncMock(spec=BrowserContext)
    context.new_page = AsyncMock(return_value=mock_page)
    context.storage_state = AsyncMock(return_value={"cookies": [{"name": "sid"}], "origins": []})
    context.close = AsyncMock()
    context.add_init_script = AsyncMock()
    return context


@pytest.fixture
def mock_browser(mock_context: AsyncMock) -> AsyncMock:
    """Create a mock Playwright browser."""
    browser = AsyncMock(spec=Browser)
    browser.new_context = AsyncMock(return_value=mock_context)
    browser.is_connected = Mock(return_value=True)
    return browser


class FakePool:
    """BrowserPool stand-in lending a single mock browser."""

    def __init__(self, browser):
        self.browser = browser
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield self.browser


@pytest.fixture
def fake_pool(mock_browser: AsyncMock) -> FakePool:
    return FakePool(mock_browser)
