"""Unit tests for tabserve.engine.

All tests mock Playwright; no real browser is launched.
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from tabserve.engine import (
    BrowsingContext,
    ContextProfile,
    EngineError,
    EngineTimeout,
    PlaywrightEngine,
    _resource_blocker,
)
from tabserve.errors import SessionUnavailable
from tabserve.sessions import SessionStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def mock_playwright():
    """Patch async_playwright to return mock objects."""
    with patch("tabserve.engine.async_playwright") as mock_ap:
        mock_pw = MagicMock()
        mock_pw.stop = AsyncMock()
        mock_ap.return_value.start = AsyncMock(return_value=mock_pw)

        mock_browser = MagicMock()
        mock_browser.is_connected.return_value = True
        mock_browser.close = AsyncMock()
        mock_pw.chromium.launch = AsyncMock(return_value=mock_browser)

        mock_context = MagicMock()
        mock_context.close = AsyncMock()
        mock_browser.new_context = AsyncMock(return_value=mock_context)

        mock_page = MagicMock()
        mock_page.url = "https://example.com"
        for name in ("goto", "go_back", "go_forward", "wait_for_load_state", "route"):
            setattr(mock_page, name, AsyncMock())
        mock_page.title = AsyncMock(return_value="Example")
        mock_page.evaluate = AsyncMock(return_value=1)
        mock_page.screenshot = AsyncMock(return_value=b"image-bytes")
        mock_page.mouse.click = AsyncMock()
        mock_page.mouse.wheel = AsyncMock()
        for name in ("type", "down", "up", "press"):
            setattr(mock_page.keyboard, name, AsyncMock())
        mock_context.new_page = AsyncMock(return_value=mock_page)

        yield {
            "async_playwright": mock_ap,
            "pw": mock_pw,
            "browser": mock_browser,
            "context": mock_context,
            "page": mock_page,
        }


@pytest.fixture()
def profile() -> ContextProfile:
    return ContextProfile(
        width=1366, height=768, user_agent="UA/1.0",
        locale="pt-BR", timezone="America/Sao_Paulo",
        accept_language="pt-BR,pt;q=0.9",
    )


# ---------------------------------------------------------------------------
# Tests: Engine lifecycle
# ---------------------------------------------------------------------------

class TestEngine:
    @pytest.mark.asyncio
    async def test_new_context_configuration(self, mock_playwright, profile):
        engine = PlaywrightEngine(headless=True, launch_args=["--no-sandbox"])
        ctx = await engine.new_context(profile)
        mock_playwright["pw"].chromium.launch.assert_awaited_once_with(
            headless=True, args=["--no-sandbox"],
        )
        mock_playwright["browser"].new_context.assert_awaited_once_with(
            viewport={"width": 1366, "height": 768},
            user_agent="UA/1.0",
            locale="pt-BR",
            timezone_id="America/Sao_Paulo",
            extra_http_headers={"Accept-Language": "pt-BR,pt;q=0.9"},
        )
        assert isinstance(ctx, BrowsingContext)
        assert ctx.url == "https://example.com"
        mock_playwright["page"].route.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_browser_launched_once(self, mock_playwright, profile):
        engine = PlaywrightEngine()
        await engine.new_context(profile)
        await engine.new_context(profile)
        assert mock_playwright["pw"].chromium.launch.await_count == 1
        assert engine.connected

    @pytest.mark.asyncio
    async def test_relaunch_after_disconnect(self, mock_playwright, profile):
        engine = PlaywrightEngine()
        await engine.new_context(profile)
        mock_playwright["browser"].is_connected.return_value = False
        await engine.new_context(profile)
        assert mock_playwright["pw"].chromium.launch.await_count == 2

    @pytest.mark.asyncio
    async def test_launch_failure_is_engine_error(self, mock_playwright, profile):
        mock_playwright["pw"].chromium.launch.side_effect = PlaywrightError(
            "Executable doesn't exist"
        )
        with pytest.raises(EngineError, match="Executable"):
            await PlaywrightEngine().new_context(profile)

    @pytest.mark.asyncio
    async def test_page_failure_closes_context(self, mock_playwright, profile):
        mock_playwright["context"].new_page.side_effect = PlaywrightError("boom")
        with pytest.raises(EngineError):
            await PlaywrightEngine().new_context(profile)
        mock_playwright["context"].close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_block_resources_installs_route(self, mock_playwright):
        profile = ContextProfile(block_resource_types=["font", "media"])
        await PlaywrightEngine().new_context(profile)
        args = mock_playwright["page"].route.await_args[0]
        assert args[0] == "**/*"

    @pytest.mark.asyncio
    async def test_stop(self, mock_playwright, profile):
        engine = PlaywrightEngine()
        await engine.new_context(profile)
        await engine.stop()
        mock_playwright["browser"].close.assert_awaited_once()
        mock_playwright["pw"].stop.assert_awaited_once()
        assert not engine.connected

    @pytest.mark.asyncio
    async def test_launch_timeout_closes_half_built_context(self, mock_playwright, profile):
        async def slow_page():
            await asyncio.sleep(1)

        mock_playwright["context"].new_page = AsyncMock(side_effect=slow_page)
        store = SessionStore(PlaywrightEngine(), profile, launch_timeout=0.1)
        with pytest.raises(SessionUnavailable):
            await store.resolve("s")
        mock_playwright["context"].close.assert_awaited_once()
        assert "s" not in store

    @pytest.mark.asyncio
    async def test_cancelled_setup_closes_context(self, mock_playwright, profile):
        mock_playwright["context"].new_page.side_effect = asyncio.CancelledError()
        with pytest.raises(asyncio.CancelledError):
            await PlaywrightEngine().new_context(profile)
        mock_playwright["context"].close.assert_awaited_once()


class TestResourceBlocker:
    @pytest.mark.asyncio
    async def test_blocks_listed_types(self):
        handler = _resource_blocker(["font"])
        route = MagicMock()
        route.abort = AsyncMock()
        route.continue_ = AsyncMock()

        route.request.resource_type = "font"
        await handler(route)
        route.abort.assert_awaited_once()

        route.request.resource_type = "document"
        await handler(route)
        route.continue_.assert_awaited_once()


# ---------------------------------------------------------------------------
# Tests: BrowsingContext
# ---------------------------------------------------------------------------

class TestBrowsingContext:
    @pytest.mark.asyncio
    async def test_goto(self, mock_playwright, profile):
        ctx = await PlaywrightEngine().new_context(profile)
        await ctx.goto("https://example.com", wait_until="networkidle", timeout_ms=30_000)
        mock_playwright["page"].goto.assert_awaited_once_with(
            "https://example.com", wait_until="networkidle", timeout=30_000,
        )

    @pytest.mark.asyncio
    async def test_timeout_translated(self, mock_playwright, profile):
        mock_playwright["page"].goto.side_effect = PlaywrightTimeout("Timeout 30000ms exceeded")
        ctx = await PlaywrightEngine().new_context(profile)
        with pytest.raises(EngineTimeout):
            await ctx.goto("https://slow.example.com", wait_until="networkidle", timeout_ms=30_000)

    @pytest.mark.asyncio
    async def test_error_translated(self, mock_playwright, profile):
        mock_playwright["page"].mouse.click.side_effect = PlaywrightError("Target closed")
        ctx = await PlaywrightEngine().new_context(profile)
        with pytest.raises(EngineError) as exc_info:
            await ctx.click(1, 2)
        assert not isinstance(exc_info.value, EngineTimeout)

    @pytest.mark.asyncio
    async def test_history(self, mock_playwright, profile):
        ctx = await PlaywrightEngine().new_context(profile)
        await ctx.go_back(wait_until="domcontentloaded", timeout_ms=15_000)
        await ctx.go_forward(wait_until="domcontentloaded", timeout_ms=15_000)
        mock_playwright["page"].go_back.assert_awaited_once_with(
            wait_until="domcontentloaded", timeout=15_000,
        )
        mock_playwright["page"].go_forward.assert_awaited_once_with(
            wait_until="domcontentloaded", timeout=15_000,
        )

    @pytest.mark.asyncio
    async def test_input(self, mock_playwright, profile):
        ctx = await PlaywrightEngine().new_context(profile)
        page = mock_playwright["page"]
        await ctx.click(10, 20)
        await ctx.wheel(0, 300)
        await ctx.type_text("hi")
        await ctx.key_down("Control")
        await ctx.press("a")
        await ctx.key_up("Control")
        page.mouse.click.assert_awaited_once_with(10, 20)
        page.mouse.wheel.assert_awaited_once_with(0, 300)
        page.keyboard.type.assert_awaited_once_with("hi")
        page.keyboard.down.assert_awaited_once_with("Control")
        page.keyboard.press.assert_awaited_once_with("a")
        page.keyboard.up.assert_awaited_once_with("Control")

    @pytest.mark.asyncio
    async def test_title_failure_returns_empty(self, mock_playwright, profile):
        mock_playwright["page"].title.side_effect = PlaywrightError("Target closed")
        ctx = await PlaywrightEngine().new_context(profile)
        assert await ctx.title() == ""

    @pytest.mark.asyncio
    async def test_jpeg_screenshot(self, mock_playwright, profile):
        ctx = await PlaywrightEngine().new_context(profile)
        data = await ctx.screenshot(fmt="jpeg", quality=80, clip=ctx.viewport_clip)
        assert data == b"image-bytes"
        mock_playwright["page"].screenshot.assert_awaited_once_with(
            type="jpeg", full_page=False, quality=80,
            clip={"x": 0, "y": 0, "width": 1366, "height": 768},
        )

    @pytest.mark.asyncio
    async def test_png_full_page_drops_quality_and_clip(self, mock_playwright, profile):
        ctx = await PlaywrightEngine().new_context(profile)
        await ctx.screenshot(fmt="png", quality=80, clip=ctx.viewport_clip, full_page=True)
        mock_playwright["page"].screenshot.assert_awaited_once_with(type="png", full_page=True)

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_swallows(self, mock_playwright, profile):
        mock_playwright["context"].close.side_effect = PlaywrightError("already closed")
        ctx = await PlaywrightEngine().new_context(profile)
        await ctx.close()
        await ctx.close()
        assert ctx.closed
        mock_playwright["context"].close.assert_awaited_once()
