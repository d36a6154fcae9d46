"""Tests for the service container lifecycle."""

import pytest
from unittest.mock import AsyncMock

from kitchen_jobs.events import EventBus
from kitchen_jobs.handlers import Collaborators, TASK_TYPES
from kitchen_jobs.policy import PolicyContext, PolicyLevel, StaticPolicyProvider
from kitchen_jobs.queue import ALL_QUEUES
from kitchen_jobs.services import KitchenJobs


@pytest.mark.asyncio
async def test_start_and_stop_workers(redis_client, redis_factory, eventually):
    collaborators = Collaborators(
        estimate_nutrition=AsyncMock(return_value={"calories": 100.0}),
        save_nutrition=AsyncMock(),
        load_recipe_summary=AsyncMock(return_value=None),
    )
    jobs = KitchenJobs(
        collaborators=collaborators,
        policy_provider=StaticPolicyProvider(PolicyLevel.OWNER),
        redis_client=redis_client,
        bus=EventBus(connection_factory=redis_factory),
    )

    async with jobs:
        assert set(jobs.queues) == set(ALL_QUEUES)
        await jobs.start_workers()
        assert len(jobs.pools) == len(ALL_QUEUES)
        assert all(pool.running for pool in jobs.pools)
        assert sorted(e.key for e in await jobs.scheduler.entries()) == sorted(TASK_TYPES)

        await jobs.nutrition.add_job("r1", PolicyContext(user_id="u1", household_key="acme"))
        await eventually(lambda: collaborators.save_nutrition.await_count == 1)

        await jobs.stop_workers()
        assert jobs.pools == []

    assert not jobs.is_open
    # Injected client stays usable for its owner
    assert await redis_client.ping()
