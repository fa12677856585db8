"""Shared test fixtures for tabserve.

Fixture tiers:
  test_config : Config with millisecond-scale timings
  fake_engine : scripted in-memory engine (tests/helpers/fake_engine.py)
  store/policy/dispatcher: real components wired to the fake engine
  client      : aiohttp TestClient over create_app() with the fake engine
"""
from __future__ import annotations

from typing import AsyncGenerator

import pytest
from aiohttp.test_utils import TestClient, TestServer

from tabserve.config import Config
from tabserve.dispatcher import Dispatcher
from tabserve.engine import ContextProfile
from tabserve.policy import WaitPolicy
from tabserve.server import create_app
from tabserve.sessions import SessionStore
from tests.helpers.fake_engine import FakeEngine


# ---------------------------------------------------------------------------
# Config fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def test_config() -> Config:
    """Defaults everywhere except timings, which are shrunk for tests."""
    return Config(
        session_ttl=60.0,
        launch_timeout=1.0,
        navigation_timeout_ms=300,
        history_timeout_ms=100,
        fallback_delay_ms=10,
        probe_timeout=0.5,
        click_settle_ms=10,
        key_settle_ms=10,
        history_settle_ms=10,
        input_pause_ms=0,
        oneshot_delay_ms=0,
        heavy_settle_ms=20,
        standard_settle_ms=10,
    )


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def store(test_config: Config, fake_engine: FakeEngine) -> SessionStore:
    return SessionStore(
        fake_engine,
        ContextProfile.from_config(test_config),
        ttl=test_config.session_ttl,
        launch_timeout=test_config.launch_timeout,
    )


@pytest.fixture
def policy(test_config: Config) -> WaitPolicy:
    return WaitPolicy.from_config(test_config)


@pytest.fixture
def dispatcher(
    test_config: Config, store: SessionStore, policy: WaitPolicy, fake_engine: FakeEngine,
) -> Dispatcher:
    return Dispatcher(test_config, store, policy, fake_engine)


# ---------------------------------------------------------------------------
# HTTP fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def client(
    test_config: Config, fake_engine: FakeEngine,
) -> AsyncGenerator[TestClient, None]:
    app = create_app(test_config, engine=fake_engine)
    async with TestClient(TestServer(app)) as c:
        yield c
