"""Tests for authenticated session acquisition."""

from unittest.mock import AsyncMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from uidiff.auth.session import (
    ANONYMOUS_SESSION,
    AuthSessionProvider,
    SessionHandle,
    login_and_capture_state,
    perform_login,
    resolve_login_selectors,
    verify_login_success,
)
from uidiff.errors import AuthError
from uidiff.models.config import AuthConfig

from conftest import FakePool

DETECTED = {"username": "#email", "password": "#pw", "submit": "#go"}


# ============================================================================
# SessionHandle
# ============================================================================


class TestSessionHandle:
    """Tests for the read-only session handle."""

    def test_anonymous(self):
        assert ANONYMOUS_SESSION.is_anonymous
        assert ANONYMOUS_SESSION.state_for_context() is None

    def test_state_copy_is_private(self):
        """Each context gets its own copy of the storage state."""
        handle = SessionHandle(storage_state={"cookies": [{"name": "sid"}]})
        state = handle.state_for_context()
        state["cookies"].append({"name": "other"})
        assert handle.storage_state == {"cookies": [{"name": "sid"}]}

    def test_frozen(self):
        handle = SessionHandle(storage_state={})
        with pytest.raises(Exception):
            handle.post_login_url = "https://elsewhere"


# ============================================================================
# Selector resolution
# ============================================================================


class TestResolveLoginSelectors:
    """Tests for resolve_login_selectors."""

    @pytest.mark.asyncio
    async def test_explicit_selectors_skip_detection(self, mock_page, auth_config):
        cfg = auth_config.model_copy(update={
            "username_selector": "#u", "password_selector": "#p", "submit_selector": "#s",
        })
        result = await resolve_login_selectors(mock_page, cfg)
        assert result == ("#u", "#p", "#s", "explicit")
        mock_page.evaluate.assert_not_called()

    @pytest.mark.asyncio
    async def test_auto_detect_disabled_uses_defaults(self, mock_page, auth_config):
        cfg = auth_config.model_copy(update={"auto_detect": False})
        result = await resolve_login_selectors(mock_page, cfg)
        assert result[3] == "explicit"
        assert "password" in result[1]
        mock_page.evaluate.assert_not_called()

    @pytest.mark.asyncio
    async def test_auto_detected(self, mock_page, auth_config):
        mock_page.evaluate.return_value = DETECTED
        result = await resolve_login_selectors(mock_page, auth_config)
        assert result == ("#email", "#pw", "#go", "auto_detect")

    @pytest.mark.asyncio
    async def test_partial_explicit_overrides_detection(self, mock_page, auth_config):
        mock_page.evaluate.return_value = DETECTED
        cfg = auth_config.model_copy(update={"submit_selector": "button.login"})
        result = await resolve_login_selectors(mock_page, cfg)
        assert result == ("#email", "#pw", "button.login", "auto_detect")

    @pytest.mark.asyncio
    async def test_detection_failure_with_partial_selectors(self, mock_page, auth_config):
        mock_page.evaluate.side_effect = PlaywrightError("page crashed")
        cfg = auth_config.model_copy(update={"username_selector": "#user"})
        result = await resolve_login_selectors(mock_page, cfg)
        assert result[0] == "#user"
        assert result[3] == "explicit"

    @pytest.mark.asyncio
    async def test_nothing_found(self, mock_page, auth_config):
        mock_page.evaluate.return_value = None
        assert await resolve_login_selectors(mock_page, auth_config) is None


# ============================================================================
# Login verification
# ============================================================================


class TestVerifyLoginSuccess:
    """Tests for verify_login_success."""

    @pytest.mark.asyncio
    async def test_success_indicator_found(self, mock_page, auth_config):
        cfg = auth_config.model_copy(update={"success_indicator": ".avatar"})
        assert await verify_login_success(mock_page, cfg) is True
        mock_page.wait_for_selector.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_success_indicator_missing(self, mock_page, auth_config):
        mock_page.wait_for_selector.side_effect = PlaywrightTimeoutError("timeout")
        cfg = auth_config.model_copy(update={"success_indicator": ".avatar"})
        assert await verify_login_success(mock_page, cfg) is False

    @pytest.mark.asyncio
    async def test_url_changed(self, mock_page, auth_config):
        assert await verify_login_success(mock_page, auth_config) is True

    @pytest.mark.asyncio
    async def test_url_unchanged_password_gone(self, mock_page, auth_config):
        """An SPA that logs in without navigating still counts as success."""
        mock_page.wait_for_url.side_effect = PlaywrightTimeoutError("timeout")
        mock_page.evaluate.return_value = False
        assert await verify_login_success(mock_page, auth_config) is True

    @pytest.mark.asyncio
    async def test_still_on_login_form(self, mock_page, auth_config):
        mock_page.wait_for_url.side_effect = PlaywrightTimeoutError("timeout")
        mock_page.evaluate.return_value = True
        assert await verify_login_success(mock_page, auth_config) is False


# ============================================================================
# perform_login / login_and_capture_state
# ============================================================================


class TestPerformLogin:
    """Tests for the login flow."""

    @pytest.mark.asyncio
    async def test_fills_and_submits(self, mock_page, auth_config):
        mock_page.evaluate.return_value = DETECTED
        mock_page.url = "https://example.com/dashboard"

        url, method = await perform_login(mock_page, auth_config)

        assert url == "https://example.com/dashboard"
        assert method == "auto_detect"
        mock_page.fill.assert_any_await("#email", "qa@example.com", timeout=15000)
        mock_page.fill.assert_any_await("#pw", "secret", timeout=15000)
        mock_page.click.assert_awaited_once_with("#go", timeout=15000)

    @pytest.mark.asyncio
    async def test_login_page_unreachable(self, mock_page, auth_config):
        mock_page.goto.side_effect = PlaywrightError("net::ERR_NAME_NOT_RESOLVED")
        with pytest.raises(AuthError, match="Could not load login page"):
            await perform_login(mock_page, auth_config)

    @pytest.mark.asyncio
    async def test_form_not_found(self, mock_page, auth_config):
        mock_page.evaluate.return_value = None
        with pytest.raises(AuthError, match="Could not identify login form"):
            await perform_login(mock_page, auth_config)

    @pytest.mark.asyncio
    async def test_fill_failure(self, mock_page, auth_config):
        mock_page.evaluate.return_value = DETECTED
        mock_page.fill.side_effect = PlaywrightTimeoutError("element not visible")
        with pytest.raises(AuthError, match="interaction failed"):
            await perform_login(mock_page, auth_config)

    @pytest.mark.asyncio
    async def test_wrong_credentials(self, mock_page, auth_config):
        mock_page.evaluate.side_effect = [DETECTED, True]
        mock_page.wait_for_url.side_effect = PlaywrightTimeoutError("timeout")
        with pytest.raises(AuthError, match="no post-login state"):
            await perform_login(mock_page, auth_config)

    @pytest.mark.asyncio
    async def test_capture_state_closes_context(self, mock_browser, mock_context, mock_page, auth_config):
        mock_page.evaluate.return_value = DETECTED

        handle = await login_and_capture_state(mock_browser, auth_config)

        assert not handle.is_anonymous
        assert handle.storage_state["cookies"] == [{"name": "sid"}]
        assert handle.detection_method == "auto_detect"
        mock_context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_context_closed_on_failure(self, mock_browser, mock_context, mock_page, auth_config):
        mock_page.evaluate.return_value = None
        with pytest.raises(AuthError):
            await login_and_capture_state(mock_browser, auth_config)
        mock_context.close.assert_awaited_once()


# ============================================================================
# AuthSessionProvider
# ============================================================================


class TestAuthSessionProvider:
    """Tests for session caching."""

    @pytest.mark.asyncio
    async def test_no_credentials_is_anonymous(self, fake_pool):
        provider = AuthSessionProvider(fake_pool)
        assert await provider.acquire(None) is ANONYMOUS_SESSION
        assert fake_pool.acquired == 0

    @pytest.mark.asyncio
    async def test_logs_in_once_per_credentials(self, fake_pool, auth_config):
        handle = SessionHandle(storage_state={"cookies": []})
        provider = AuthSessionProvider(fake_pool)
        with patch("uidiff.auth.session.login_and_capture_state",
                   new=AsyncMock(return_value=handle)) as mock_login:
            first = await provider.acquire(auth_config)
            second = await provider.acquire(auth_config.model_copy())

        assert first is second is handle
        mock_login.assert_awaited_once()
        assert fake_pool.acquired == 1

    @pytest.mark.asyncio
    async def test_different_credentials_log_in_separately(self, fake_pool, auth_config):
        provider = AuthSessionProvider(fake_pool)
        other = auth_config.model_copy(update={"username": "admin@example.com"})
        with patch("uidiff.auth.session.login_and_capture_state",
                   new=AsyncMock(return_value=SessionHandle(storage_state={}))) as mock_login:
            await provider.acquire(auth_config)
            await provider.acquire(other)
        assert mock_login.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_not_cached(self, fake_pool, auth_config):
        provider = AuthSessionProvider(fake_pool)
        login = AsyncMock(side_effect=[AuthError("bad password"), SessionHandle(storage_state={})])
        with patch("uidiff.auth.session.login_and_capture_state", new=login):
            with pytest.raises(AuthError):
                await provider.acquire(auth_config)
            handle = await provider.acquire(auth_config)
        assert not handle.is_anonymous

    @pytest.mark.asyncio
    async def test_invalidate_forces_new_login(self, fake_pool, auth_config):
        provider = AuthSessionProvider(fake_pool)
        with patch("uidiff.auth.session.login_and_capture_state",
                   new=AsyncMock(return_value=SessionHandle(storage_state={}))) as mock_login:
            await provider.acquire(auth_config)
            provider.invalidate(auth_config)
            await provider.acquire(auth_config)
        assert mock_login.await_count == 2


class TestAuthConfigEnv:
    """Passwords may be read from the environment."""

    def test_env_password(self, monkeypatch):
        monkeypatch.setenv("UIDIFF_TEST_PASSWORD", "from-env")
        cfg = AuthConfig(login_url="https://x/login", username="u", password="env:UIDIFF_TEST_PASSWORD")
        assert cfg.password == "from-env"

    def test_missing_env_password(self, monkeypatch):
        monkeypatch.delenv("UIDIFF_TEST_PASSWORD", raising=False)
        with pytest.raises(ValueError, match="not set"):
            AuthConfig(login_url="https://x/login", username="u", password="env:UIDIFF_TEST_PASSWORD")
