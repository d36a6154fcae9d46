"""Shared fixtures: one fake Redis server per test, shared by queues, bus and workers."""

import asyncio

import fakeredis
import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis

from kitchen_jobs.config import clear_settings_cache
from kitchen_jobs.events.bus import EventBus


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    """Keine .env-Werte und kein gecachter Settings-Zustand zwischen Tests."""
    monkeypatch.setenv("REDIS_URL", "redis://fake:6379")
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_factory(fake_server):
    def factory():
        return fake_aioredis.FakeRedis(server=fake_server, decode_responses=True)
    return factory


@pytest_asyncio.fixture
async def redis_client(redis_factory):
    client = redis_factory()
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def bus(redis_factory):
    event_bus = EventBus(connection_factory=redis_factory, poll_timeout=0.05)
    await event_bus.open()
    yield event_bus
    await event_bus.close()


@pytest.fixture
def eventually():
    """Poll a (sync or async) predicate until it holds."""

    async def wait(predicate, timeout: float = 5.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return wait
