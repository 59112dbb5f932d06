"""Tests for browser launch and capture context helpers."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from uidiff.utils.browser_stealth import (
    DEFAULT_USER_AGENT,
    _STEALTH_INIT_SCRIPT,
    create_stealth_context,
    launch_stealth_browser,
)


class TestLaunchStealthBrowser:
    """Tests for launch_stealth_browser."""

    @pytest.mark.asyncio
    async def test_launch_args(self):
        playwright = MagicMock()
        playwright.chromium.launch = AsyncMock(return_value="browser")

        browser = await launch_stealth_browser(playwright, headless=False)

        assert browser == "browser"
        kwargs = playwright.chromium.launch.call_args.kwargs
        assert kwargs["headless"] is False
        assert "--disable-blink-features=AutomationControlled" in kwargs["args"]
        assert "--hide-scrollbars" in kwargs["args"]


class TestCreateStealthContext:
    """Tests for create_stealth_context."""

    @pytest.mark.asyncio
    async def test_deterministic_rendering_settings(self, mock_browser, mock_context):
        context = await create_stealth_context(mock_browser, viewport={"width": 800, "height": 600})

        assert context is mock_context
        kwargs = mock_browser.new_context.call_args.kwargs
        assert kwargs["viewport"] == {"width": 800, "height": 600}
        assert kwargs["user_agent"] == DEFAULT_USER_AGENT
        assert kwargs["locale"] == "en-US"
        assert kwargs["timezone_id"] == "America/New_York"
        assert kwargs["device_scale_factor"] == 1
        assert kwargs["storage_state"] is None
        mock_context.add_init_script.assert_awaited_once_with(_STEALTH_INIT_SCRIPT)

    @pytest.mark.asyncio
    async def test_custom_user_agent_and_state(self, mock_browser):
        state = {"cookies": [{"name": "sid", "value": "abc"}], "origins": []}

        await create_stealth_context(
            mock_browser, viewport={"width": 1, "height": 1},
            user_agent="uidiff-bot/1.0", storage_state=state,
        )

        kwargs = mock_browser.new_context.call_args.kwargs
        assert kwargs["user_agent"] == "uidiff-bot/1.0"
        assert kwargs["storage_state"] == state

    def test_init_script_hides_webdriver(self):
        assert "navigator, 'webdriver'" in _STEALTH_INIT_SCRIPT
