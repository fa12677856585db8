"""Playwright-backed browser engine.

The rest of tabserve only sees ``BrowsingContext`` and ``EngineError``;
Playwright types and exceptions do not leak past this module.

    engine = PlaywrightEngine(headless=True)
    await engine.start()
    ctx = await engine.new_context(ContextProfile(width=1366, height=768))
    await ctx.goto("https://example.com", wait_until="networkidle", timeout_ms=30_000)
    jpeg = await ctx.screenshot(fmt="jpeg", quality=80, clip=ctx.viewport_clip)
    await ctx.close()
    await engine.stop()
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from typing import Iterator

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    Route,
    TimeoutError as PlaywrightTimeout,
    async_playwright,
)

from tabserve.config import DEFAULT_USER_AGENT, Config

log = logging.getLogger(__name__)


class EngineError(Exception):
    """A call into the browser engine failed."""


class EngineTimeout(EngineError):
    """A call into the browser engine hit its timeout."""


@contextmanager
def _engine_call(op: str) -> Iterator[None]:
    # PlaywrightTimeout subclasses PlaywrightError, so it must come first.
    try:
        yield
    except PlaywrightTimeout as exc:
        raise EngineTimeout(f"{op} timed out: {exc}") from exc
    except PlaywrightError as exc:
        raise EngineError(f"{op} failed: {exc}") from exc


@dataclass
class ContextProfile:
    """How a new browsing context is dressed up before first use."""

    width: int = 1366
    height: int = 768
    user_agent: str = DEFAULT_USER_AGENT
    locale: str | None = None
    timezone: str | None = None
    accept_language: str | None = None
    block_resource_types: list[str] = field(default_factory=list)

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        width: int | None = None,
        height: int | None = None,
        block_resources: bool = False,
    ) -> ContextProfile:
        return cls(
            width=width or cfg.viewport_width,
            height=height or cfg.viewport_height,
            user_agent=cfg.user_agent,
            locale=cfg.locale,
            timezone=cfg.timezone,
            accept_language=cfg.accept_language,
            block_resource_types=list(cfg.block_resource_types) if block_resources else [],
        )


class BrowsingContext:
    """One isolated browser context holding exactly one page."""

    def __init__(self, context: BrowserContext, page: Page, profile: ContextProfile) -> None:
        self._context = context
        self._page = page
        self.profile = profile
        self._closed = False

    @property
    def url(self) -> str:
        return self._page.url

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def viewport_clip(self) -> dict:
        return {"x": 0, "y": 0, "width": self.profile.width, "height": self.profile.height}

    # -- Navigation ------------------------------------------------------------

    async def goto(self, url: str, wait_until: str, timeout_ms: int) -> None:
        with _engine_call("goto"):
            await self._page.goto(url, wait_until=wait_until, timeout=timeout_ms)

    async def go_back(self, wait_until: str, timeout_ms: int) -> None:
        with _engine_call("go_back"):
            await self._page.go_back(wait_until=wait_until, timeout=timeout_ms)

    async def go_forward(self, wait_until: str, timeout_ms: int) -> None:
        with _engine_call("go_forward"):
            await self._page.go_forward(wait_until=wait_until, timeout=timeout_ms)

    async def wait_for_load_state(self, state: str, timeout_ms: int) -> None:
        with _engine_call("wait_for_load_state"):
            await self._page.wait_for_load_state(state, timeout=timeout_ms)

    # -- Input -----------------------------------------------------------------

    async def click(self, x: float, y: float) -> None:
        with _engine_call("click"):
            await self._page.mouse.click(x, y)

    async def wheel(self, delta_x: float, delta_y: float) -> None:
        with _engine_call("wheel"):
            await self._page.mouse.wheel(delta_x, delta_y)

    async def type_text(self, text: str) -> None:
        with _engine_call("type"):
            await self._page.keyboard.type(text)

    async def key_down(self, key: str) -> None:
        with _engine_call("key_down"):
            await self._page.keyboard.down(key)

    async def key_up(self, key: str) -> None:
        with _engine_call("key_up"):
            await self._page.keyboard.up(key)

    async def press(self, key: str) -> None:
        with _engine_call("press"):
            await self._page.keyboard.press(key)

    # -- Inspection ------------------------------------------------------------

    async def evaluate(self, expression: str) -> object:
        with _engine_call("evaluate"):
            return await self._page.evaluate(expression)

    async def title(self) -> str:
        """Return the page title, or "" if it cannot be read. Never raises."""
        try:
            return await self._page.title()
        except PlaywrightError as exc:
            log.debug("title fetch failed", extra={"error": str(exc)})
            return ""

    async def screenshot(
        self,
        fmt: str = "jpeg",
        quality: int | None = None,
        clip: dict | None = None,
        full_page: bool = False,
    ) -> bytes:
        kwargs: dict = {"type": fmt, "full_page": full_page}
        if fmt == "jpeg" and quality is not None:
            kwargs["quality"] = quality
        if clip is not None and not full_page:
            kwargs["clip"] = clip
        with _engine_call("screenshot"):
            return await self._page.screenshot(**kwargs)

    # -- Lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        """Release the context. Never raises; closing a dead context is a no-op."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._context.close()
        except PlaywrightError as exc:
            log.debug("context close failed", extra={"error": str(exc)})


class PlaywrightEngine:
    """Owns the Playwright driver and a lazily (re)launched Chromium."""

    def __init__(self, headless: bool = True, launch_args: list[str] | None = None) -> None:
        self.headless = headless
        self.launch_args = list(launch_args or [])
        self._pw: Playwright | None = None
        self._browser: Browser | None = None
        self._launch_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: Config) -> PlaywrightEngine:
        return cls(headless=cfg.headless, launch_args=cfg.launch_args)

    async def start(self) -> None:
        if self._pw is None:
            with _engine_call("playwright start"):
                self._pw = await async_playwright().start()

    async def stop(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as exc:
                log.warning("browser close failed", extra={"error": str(exc)})
        if self._pw is not None:
            await self._pw.stop()
        self._browser = None
        self._pw = None

    @property
    def connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def _ensure_browser(self) -> Browser:
        async with self._launch_lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            await self.start()
            if self._browser is not None:
                log.warning("browser disconnected, relaunching")
            with _engine_call("launch"):
                self._browser = await self._pw.chromium.launch(
                    headless=self.headless, args=self.launch_args,
                )
            log.info("Launched Chromium", extra={"headless": self.headless})
            return self._browser

    async def new_context(self, profile: ContextProfile) -> BrowsingContext:
        browser = await self._ensure_browser()
        ctx_kwargs: dict = {
            "viewport": {"width": profile.width, "height": profile.height},
            "user_agent": profile.user_agent,
        }
        if profile.locale:
            ctx_kwargs["locale"] = profile.locale
        if profile.timezone:
            ctx_kwargs["timezone_id"] = profile.timezone
        if profile.accept_language:
            ctx_kwargs["extra_http_headers"] = {"Accept-Language": profile.accept_language}

        with _engine_call("new_context"):
            context = await browser.new_context(**ctx_kwargs)
        try:
            with _engine_call("new_page"):
                page = await context.new_page()
                if profile.block_resource_types:
                    await page.route("**/*", _resource_blocker(profile.block_resource_types))
        except BaseException:
            # Also reached when a launch timeout cancels us mid-setup.
            with suppress(PlaywrightError):
                await context.close()
            raise
        return BrowsingContext(context, page, profile)


def _resource_blocker(resource_types: list[str]):
    blocked = frozenset(resource_types)

    async def _handler(route: Route) -> None:
        if route.request.resource_type in blocked:
            await route.abort()
        else:
            await route.continue_()

    return _handler
