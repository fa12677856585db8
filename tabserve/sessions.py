"""In-memory registry of live browsing sessions.

Two lock families, both keyed by session id:

  guards : serialize map mutation (create / remove) for one id, so a
            concurrent resolve and invalidate can never double-create or hand
            out a closed context.
  actions: held by the dispatcher for a whole request, so two actions never
            race on one tab. The expiry path takes it too and therefore never
            closes a context mid-action.

Requests for different ids never wait on each other.
"""
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

import structlog

from tabserve.config import Config
from tabserve.engine import BrowsingContext, ContextProfile, EngineError, PlaywrightEngine
from tabserve.errors import SessionUnavailable
from tabserve.reaper import ExpiryTimer

log = structlog.get_logger(__name__)


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._entries: dict[str, list] = {}  # key -> [lock, users]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(eq=False)
class Session:
    id: str
    context: BrowsingContext
    last_url: str = ""
    created_at: float = field(default_factory=time.monotonic)
    last_access: float = field(default_factory=time.monotonic)
    timer: ExpiryTimer | None = field(default=None, repr=False)

    def idle_for(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_access

    def age(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.created_at


class SessionStore:
    def __init__(
        self,
        engine: PlaywrightEngine,
        profile: ContextProfile,
        ttl: float = 600.0,
        launch_timeout: float = 30.0,
    ) -> None:
        self._engine = engine
        self.profile = profile
        self.ttl = ttl
        self.launch_timeout = launch_timeout
        self._sessions: dict[str, Session] = {}
        self._guards = KeyedLock()
        self._actions = KeyedLock()

    @classmethod
    def from_config(cls, cfg: Config, engine: PlaywrightEngine) -> SessionStore:
        return cls(
            engine,
            ContextProfile.from_config(cfg),
            ttl=cfg.session_ttl,
            launch_timeout=cfg.launch_timeout,
        )

    # -- Read access -----------------------------------------------------------

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, sid: str) -> bool:
        return sid in self._sessions

    def get(self, sid: str) -> Session | None:
        return self._sessions.get(sid)

    def snapshot(self) -> list[Session]:
        return list(self._sessions.values())

    def hold(self, sid: str):
        """Per-id action lock; the dispatcher wraps each request in it."""
        return self._actions.hold(sid)

    # -- Lifecycle -------------------------------------------------------------

    async def resolve(self, sid: str) -> Session:
        """Return the live session for ``sid``, creating it if absent."""
        async with self._guards.hold(sid):
            session = self._sessions.get(sid)
            if session is not None:
                return session

            context = await self._acquire(sid)
            session = Session(id=sid, context=context)
            session.timer = ExpiryTimer(self.ttl, lambda: self._expire(sid, session))
            self._sessions[sid] = session
            session.timer.arm()
            log.info("session created", sid=sid, sessions=len(self._sessions))
            return session

    def touch(self, sid: str) -> None:
        session = self._sessions.get(sid)
        if session is None:
            return
        session.last_access = time.monotonic()
        if session.timer is not None:
            session.timer.rearm()

    async def invalidate(self, sid: str) -> bool:
        """Close and forget ``sid``. Returns False if there was nothing to close."""
        async with self._guards.hold(sid):
            session = self._sessions.get(sid)
            if session is None:
                return False
            await self._release(session)
            del self._sessions[sid]
            log.info("session closed", sid=sid, sessions=len(self._sessions))
            return True

    async def close_all(self) -> None:
        sids = list(self._sessions)
        if sids:
            await asyncio.gather(*(self.invalidate(sid) for sid in sids))
        log.info("all sessions closed", count=len(sids))

    # -- Internals -------------------------------------------------------------

    async def _acquire(self, sid: str) -> BrowsingContext:
        try:
            return await asyncio.wait_for(
                self._engine.new_context(self.profile), timeout=self.launch_timeout,
            )
        except asyncio.TimeoutError as exc:
            log.error("session launch timed out", sid=sid, timeout=self.launch_timeout)
            raise SessionUnavailable(
                f"browser context not ready after {self.launch_timeout:g}s"
            ) from exc
        except EngineError as exc:
            log.error("session launch failed", sid=sid, error=str(exc))
            raise SessionUnavailable(str(exc)) from exc

    async def _release(self, session: Session) -> None:
        if session.timer is not None:
            session.timer.cancel()
        try:
            await session.context.close()
        except Exception as e:
            log.warning("context release failed", sid=session.id, error=str(e))

    async def _expire(self, sid: str, session: Session) -> None:
        async with self._actions.hold(sid):
            if self._sessions.get(sid) is not session:
                return
            # A touch while we waited for the lock re-armed the timer.
            if session.timer is not None and session.timer.pending:
                return
            log.info("session expired", sid=sid, idle_seconds=round(session.idle_for(), 1))
            await self.invalidate(sid)
