"""Wait and liveness heuristics for browsing contexts.

Nothing here ever raises into the request path: settling is advisory and a
failed liveness probe is reported as ``False``.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable
from urllib.parse import urlsplit

from tabserve.config import Config
from tabserve.engine import BrowsingContext, EngineError, EngineTimeout

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitProfile:
    name: str
    wait_until: str  # Playwright load state: "domcontentloaded" | "load" | "networkidle"
    settle_ms: int


class HostClassifier:
    """Map a destination URL to a wait profile by host pattern.

    Chat, mail and collaboration apps keep background connections open
    forever, so network idle never arrives; they get the relaxed profile.
    """

    def __init__(
        self,
        heavy_patterns: Iterable[str],
        heavy: WaitProfile,
        standard: WaitProfile,
    ) -> None:
        self._patterns = [re.compile(p, re.IGNORECASE) for p in heavy_patterns]
        self.heavy = heavy
        self.standard = standard

    @classmethod
    def from_config(cls, cfg: Config) -> HostClassifier:
        return cls(
            cfg.heavy_hosts,
            heavy=WaitProfile("heavy", "domcontentloaded", cfg.heavy_settle_ms),
            standard=WaitProfile("standard", "networkidle", cfg.standard_settle_ms),
        )

    def is_heavy(self, url: str) -> bool:
        host = (urlsplit(url).hostname or "").lower()
        if not host:
            return False
        return any(p.search(host) for p in self._patterns)

    def __call__(self, url: str) -> WaitProfile:
        return self.heavy if self.is_heavy(url) else self.standard


class WaitPolicy:
    def __init__(
        self,
        classify: Callable[[str], WaitProfile],
        fallback_delay_ms: int = 500,
        probe_timeout: float = 5.0,
    ) -> None:
        self.classify = classify
        self.fallback_delay_ms = fallback_delay_ms
        self.probe_timeout = probe_timeout

    @classmethod
    def from_config(cls, cfg: Config) -> WaitPolicy:
        return cls(
            HostClassifier.from_config(cfg),
            fallback_delay_ms=cfg.fallback_delay_ms,
            probe_timeout=cfg.probe_timeout,
        )

    async def is_alive(self, ctx: BrowsingContext) -> bool:
        """Cheap no-effect probe. Returns False on any failure; never raises."""
        if ctx.closed:
            return False
        try:
            await asyncio.wait_for(ctx.evaluate("1"), timeout=self.probe_timeout)
            return True
        except Exception as exc:
            log.info("liveness probe failed", extra={"error": str(exc)})
            return False

    async def settle(self, ctx: BrowsingContext, budget_ms: int, wait_until: str) -> None:
        """Wait for ``wait_until`` or ``budget_ms``, whichever comes first."""
        if budget_ms <= 0:
            return
        try:
            await ctx.wait_for_load_state(wait_until, timeout_ms=budget_ms)
        except EngineTimeout:
            log.debug("settle budget elapsed", extra={"budget_ms": budget_ms, "state": wait_until})
        except EngineError as exc:
            log.warning("settle failed, using fixed delay", extra={"error": str(exc)})
            await asyncio.sleep(self.fallback_delay_ms / 1000)

    async def pause(self, ms: int) -> None:
        """Fixed delay for inputs that rarely trigger a page load."""
        if ms > 0:
            await asyncio.sleep(ms / 1000)
