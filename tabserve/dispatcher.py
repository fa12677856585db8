"""Action dispatch: one request against one session, start to finish.

    Resolving -> Executing -> Settling -> Capturing -> Responding

Every request runs under the session's action lock, so actions on one id are
strictly serialized while different ids proceed concurrently. The session's
idle timer is touched exactly once, on entry to Executing, whatever the
outcome, so a failed click still keeps the session around for a retry.

Navigation is forgiving (a timed-out ``navigate`` still yields a frame);
back/forward timeouts and liveness failures are reported.
"""
from __future__ import annotations

import asyncio
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator

import structlog

from tabserve.config import Config
from tabserve.engine import (
    BrowsingContext,
    ContextProfile,
    EngineError,
    EngineTimeout,
    PlaywrightEngine,
)
from tabserve.errors import (
    ActionFailed,
    InvalidRequest,
    NavigationFailed,
    SessionCrashed,
    SessionUnavailable,
)
from tabserve.policy import WaitPolicy
from tabserve.sessions import Session, SessionStore

log = structlog.get_logger(__name__)

# Slack on top of the engine's own timeout before we stop waiting on it.
_ENGINE_GRACE = 2.0

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")
_OPAQUE_SCHEMES = ("about:", "data:", "blob:")


class ActionKind(str, Enum):
    NAVIGATE = "navigate"
    SCREENSHOT = "screenshot"
    REFRESH = "refresh"
    CLICK = "click"
    SCROLL = "scroll"
    TYPE = "type"
    KEY = "key"
    BACK = "back"
    FORWARD = "forward"

    @property
    def reports_navigation(self) -> bool:
        """True if the action can change the page, so url/title are reported."""
        return self in _NAVIGATING


_NAVIGATING = frozenset({
    ActionKind.NAVIGATE,
    ActionKind.REFRESH,
    ActionKind.CLICK,
    ActionKind.KEY,
    ActionKind.BACK,
    ActionKind.FORWARD,
})


@dataclass(frozen=True)
class ActionRequest:
    session_id: str
    kind: ActionKind
    params: dict = field(default_factory=dict)


@dataclass
class ActionResult:
    image: bytes
    content_type: str
    url: str | None = None
    title: str | None = None


def normalize_url(raw: str) -> str:
    """Turn a bare host like ``example.com`` into ``https://example.com``."""
    url = (raw or "").strip()
    if not url:
        raise InvalidRequest("url is required")
    if _SCHEME_RE.match(url) or url.lower().startswith(_OPAQUE_SCHEMES):
        return url
    return "https://" + url.lstrip("/")


def split_key_combo(combo: str) -> tuple[list[str], str]:
    """Split ``Control+Shift+a`` into (["Control", "Shift"], "a").

    A trailing ``++`` means the key itself is ``+``.
    """
    if combo.endswith("++"):
        head, key = combo[:-2], "+"
    elif "+" in combo and combo != "+":
        head, _, key = combo.rpartition("+")
    else:
        return [], combo
    if not key:
        raise InvalidRequest(f"key combo {combo!r} has no key after the modifiers")
    modifiers = [m for m in head.split("+") if m]
    return modifiers, key


@contextmanager
def _action_errors(what: str) -> Iterator[None]:
    try:
        yield
    except EngineError as exc:
        raise ActionFailed(f"{what}: {exc}") from exc


class Dispatcher:
    def __init__(
        self,
        cfg: Config,
        store: SessionStore,
        policy: WaitPolicy,
        engine: PlaywrightEngine,
    ) -> None:
        self.cfg = cfg
        self._store = store
        self._policy = policy
        self._engine = engine
        self._handlers = {
            ActionKind.NAVIGATE: self._navigate,
            ActionKind.SCREENSHOT: self._noop,
            ActionKind.REFRESH: self._refresh,
            ActionKind.CLICK: self._click,
            ActionKind.SCROLL: self._scroll,
            ActionKind.TYPE: self._type,
            ActionKind.KEY: self._key,
            ActionKind.BACK: self._back,
            ActionKind.FORWARD: self._forward,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def dispatch(self, req: ActionRequest) -> ActionResult:
        if req.kind is ActionKind.NAVIGATE:
            req = ActionRequest(
                req.session_id, req.kind, {**req.params, "url": normalize_url(req.params.get("url", ""))}
            )
        elif req.kind is ActionKind.KEY:
            split_key_combo(req.params.get("key") or "Enter")

        sid = req.session_id
        started = time.monotonic()
        async with self._store.hold(sid):
            existed = sid in self._store
            session = await self._store.resolve(sid)

            if req.kind is ActionKind.SCREENSHOT and existed:
                if not await self._policy.is_alive(session.context):
                    log.warning("session crashed", sid=sid)
                    await self._store.invalidate(sid)
                    raise SessionCrashed(f"session {sid!r} is no longer responding")

            self._store.touch(sid)
            try:
                await self._handlers[req.kind](session, req.params)
                result = await self._capture(session, req.kind)
            except (ActionFailed, NavigationFailed) as exc:
                log.warning("action failed", sid=sid, kind=req.kind.value, error=str(exc))
                await self._reap_if_dead(session)
                raise

        log.info(
            "action done",
            sid=sid,
            kind=req.kind.value,
            url=result.url,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    async def capture_once(
        self,
        url: str,
        width: int | None = None,
        height: int | None = None,
        delay_ms: int | None = None,
        full_page: bool = False,
    ) -> ActionResult:
        """Stateless screenshot: fresh context, one capture, always discarded."""
        url = normalize_url(url)
        delay_ms = self.cfg.oneshot_delay_ms if delay_ms is None else delay_ms
        profile = ContextProfile.from_config(self.cfg, width, height, block_resources=True)
        try:
            ctx = await asyncio.wait_for(
                self._engine.new_context(profile), timeout=self.cfg.launch_timeout,
            )
        except (EngineError, asyncio.TimeoutError) as exc:
            raise SessionUnavailable(f"one-shot context: {exc}") from exc

        try:
            await self._goto(ctx, url, "networkidle", sid=None)
            await self._policy.pause(delay_ms)
            with _action_errors("screenshot"):
                image = await ctx.screenshot(
                    fmt="png", clip=ctx.viewport_clip, full_page=full_page,
                )
            title = await ctx.title()
            log.info("one-shot capture", url=url, full_page=full_page, size=len(image))
            return ActionResult(image, "image/png", ctx.url, title)
        finally:
            await ctx.close()

    # ------------------------------------------------------------------
    # Executing + Settling, one handler per action kind
    # ------------------------------------------------------------------

    async def _noop(self, session: Session, params: dict) -> None:
        pass

    async def _navigate(self, session: Session, params: dict) -> None:
        url = params["url"]
        profile = self._policy.classify(url)
        log.info("navigating", sid=session.id, url=url, profile=profile.name)
        await self._goto(session.context, url, profile.wait_until, sid=session.id)
        await self._policy.settle(session.context, profile.settle_ms, profile.wait_until)

    async def _refresh(self, session: Session, params: dict) -> None:
        profile = self._policy.classify(session.context.url)
        wait = params.get("wait")
        budget = profile.settle_ms if wait is None else wait
        await self._policy.settle(session.context, budget, profile.wait_until)

    async def _click(self, session: Session, params: dict) -> None:
        with _action_errors("click"):
            await session.context.click(params["x"], params["y"])
        await self._settle_current(session, self.cfg.click_settle_ms)

    async def _scroll(self, session: Session, params: dict) -> None:
        with _action_errors("scroll"):
            await session.context.wheel(0, params.get("delta_y", 500))
        await self._policy.pause(self.cfg.input_pause_ms)

    async def _type(self, session: Session, params: dict) -> None:
        text = params.get("text", "")
        if text:
            with _action_errors("type"):
                await session.context.type_text(text)
        await self._policy.pause(self.cfg.input_pause_ms)

    async def _key(self, session: Session, params: dict) -> None:
        ctx = session.context
        modifiers, key = split_key_combo(params.get("key") or "Enter")
        with _action_errors("key"):
            if not modifiers:
                await ctx.press(key)
            else:
                for mod in modifiers:
                    await ctx.key_down(mod)
                try:
                    await ctx.press(key)
                finally:
                    for mod in reversed(modifiers):
                        await ctx.key_up(mod)
        await self._settle_current(session, self.cfg.key_settle_ms)

    async def _back(self, session: Session, params: dict) -> None:
        await self._history(session, "back", session.context.go_back)

    async def _forward(self, session: Session, params: dict) -> None:
        await self._history(session, "forward", session.context.go_forward)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _goto(self, ctx: BrowsingContext, url: str, wait_until: str, sid: str | None) -> None:
        timeout_ms = self.cfg.navigation_timeout_ms
        try:
            await asyncio.wait_for(
                ctx.goto(url, wait_until=wait_until, timeout_ms=timeout_ms),
                timeout=timeout_ms / 1000 + _ENGINE_GRACE,
            )
        except (EngineTimeout, asyncio.TimeoutError):
            log.warning("navigation timed out, capturing current state", sid=sid, url=url)
        except EngineError as exc:
            log.warning("navigation failed, capturing current state", sid=sid, url=url, error=str(exc))

    async def _history(self, session: Session, direction: str, step) -> None:
        timeout_ms = self.cfg.history_timeout_ms
        try:
            await asyncio.wait_for(
                step(wait_until="domcontentloaded", timeout_ms=timeout_ms),
                timeout=timeout_ms / 1000 + _ENGINE_GRACE,
            )
        except (EngineTimeout, asyncio.TimeoutError) as exc:
            raise NavigationFailed(
                f"{direction} navigation did not complete within {timeout_ms}ms"
            ) from exc
        except EngineError as exc:
            raise ActionFailed(f"{direction}: {exc}") from exc
        await self._settle_current(session, self.cfg.history_settle_ms)

    async def _settle_current(self, session: Session, budget_ms: int) -> None:
        profile = self._policy.classify(session.context.url)
        await self._policy.settle(session.context, budget_ms, profile.wait_until)

    async def _capture(self, session: Session, kind: ActionKind) -> ActionResult:
        ctx = session.context
        url = title = None
        if kind.reports_navigation:
            session.last_url = url = ctx.url
            title = await ctx.title()
        with _action_errors("screenshot"):
            image = await ctx.screenshot(
                fmt="jpeg", quality=self.cfg.jpeg_quality, clip=ctx.viewport_clip,
            )
        return ActionResult(image, "image/jpeg", url, title)

    async def _reap_if_dead(self, session: Session) -> None:
        if not await self._policy.is_alive(session.context):
            log.warning("session context died during action", sid=session.id)
            await self._store.invalidate(session.id)
