"""Idle expiry for sessions.

Each session owns one ``ExpiryTimer``. Re-arming cancels the outstanding
handle before scheduling a new one, so a just-touched session is never
evicted by a stale timer. When the timer fires it runs the store's expire
coroutine as a task; that coroutine decides whether the session is really
idle and invalidates it.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

log = logging.getLogger(__name__)


class ExpiryTimer:
    def __init__(self, ttl: float, on_expire: Callable[[], Awaitable[None]]) -> None:
        self.ttl = ttl
        self._on_expire = on_expire
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def rearm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.ttl, self._fire)

    arm = rearm

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        # The expire task itself calls cancel() via invalidate; don't cancel it mid-close.
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._task = None

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.get_running_loop().create_task(self._on_expire())
        self._task.add_done_callback(_log_failure)


def _log_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("session expiry failed", extra={"error": str(exc)})
