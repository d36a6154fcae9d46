"""Tests for policy-based emission and policy-aware subscriptions."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from kitchen_jobs.events import EventBus, PolicyRouter, RecipeDeleted, RecipeImported, RecipeSummary
from kitchen_jobs.policy import PolicyContext, PolicyLevel, StaticPolicyProvider


ACME_U1 = PolicyContext(user_id="u1", household_key="acme")
ACME_U2 = PolicyContext(user_id="u2", household_key="acme")
OTHER_U3 = PolicyContext(user_id="u3", household_key="other")


def mock_bus():
    bus = MagicMock(spec=EventBus)
    bus.broadcast = AsyncMock(return_value=True)
    bus.emit_to_household = AsyncMock(return_value=True)
    bus.emit_to_user = AsyncMock(return_value=True)
    return bus


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "policy, method, args",
    [
        (PolicyLevel.EVERYONE, "broadcast", ("deleted",)),
        (PolicyLevel.HOUSEHOLD, "emit_to_household", ("acme", "deleted")),
        (PolicyLevel.OWNER, "emit_to_user", ("u1", "deleted")),
    ],
)
async def test_emit_by_policy_publishes_exactly_once(policy, method, args):
    bus = mock_bus()
    router = PolicyRouter(bus, StaticPolicyProvider(policy))
    data = RecipeDeleted(id="r1")

    assert await router.emit_by_policy(policy, ACME_U1, "deleted", data) is True

    getattr(bus, method).assert_awaited_once_with(*args, data)
    publish_calls = bus.broadcast.await_count + bus.emit_to_household.await_count + bus.emit_to_user.await_count
    assert publish_calls == 1


@pytest.mark.asyncio
async def test_emit_reads_current_policy():
    bus = mock_bus()
    provider = StaticPolicyProvider(PolicyLevel.HOUSEHOLD)
    router = PolicyRouter(bus, provider)

    await router.emit(ACME_U1, "deleted", RecipeDeleted(id="r1"))
    provider.set(PolicyLevel.EVERYONE)
    await router.emit(ACME_U1, "deleted", RecipeDeleted(id="r2"))

    bus.emit_to_household.assert_awaited_once()
    bus.broadcast.assert_awaited_once()


@pytest.mark.asyncio
async def test_wrong_payload_type_is_rejected():
    router = PolicyRouter(mock_bus(), StaticPolicyProvider())

    with pytest.raises(TypeError):
        await router.emit_by_policy(PolicyLevel.EVERYONE, ACME_U1, "imported", RecipeDeleted(id="r1"))


def test_policy_aware_channels():
    router = PolicyRouter(EventBus(prefix="kitchen"), StaticPolicyProvider())

    assert router.policy_aware_channels(ACME_U1, "imported") == [
        "kitchen:household:acme:imported",
        "kitchen:broadcast:imported",
        "kitchen:user:u1:imported",
    ]


@pytest.mark.asyncio
async def test_policy_aware_subscription_receives_every_policy(bus, eventually):
    """Der Abonnent bekommt das Event unabhängig von der Policy beim Senden."""
    provider = StaticPolicyProvider()
    router = PolicyRouter(bus, provider)
    cancel = asyncio.Event()
    received = []

    async def consume():
        async for data in router.subscribe_policy_aware(ACME_U1, "imported", cancel):
            received.append(data)

    task = asyncio.create_task(consume())
    await eventually(lambda: bus.active_subscriptions == 3)

    for i, policy in enumerate([PolicyLevel.HOUSEHOLD, PolicyLevel.EVERYONE, PolicyLevel.OWNER]):
        summary = RecipeSummary(id=f"r{i}", name=f"Recipe {i}")
        await router.emit_by_policy(policy, ACME_U1, "imported", RecipeImported(recipe=summary))

    await eventually(lambda: len(received) == 3)
    cancel.set()
    await asyncio.wait_for(task, timeout=2)

    assert sorted(e.recipe.id for e in received) == ["r0", "r1", "r2"]
    assert bus.active_subscriptions == 0


@pytest.mark.asyncio
async def test_scoping_between_users_and_households(bus, eventually):
    router = PolicyRouter(bus, StaticPolicyProvider())
    cancel = asyncio.Event()
    inbox = {"u2": [], "u3": []}

    async def consume(ctx):
        async for data in router.subscribe_policy_aware(ctx, "deleted", cancel):
            inbox[ctx.user_id].append(data.id)

    tasks = [asyncio.create_task(consume(ACME_U2)), asyncio.create_task(consume(OTHER_U3))]
    await eventually(lambda: bus.active_subscriptions == 6)

    await router.emit_by_policy(PolicyLevel.HOUSEHOLD, ACME_U1, "deleted", RecipeDeleted(id="household"))
    await router.emit_by_policy(PolicyLevel.OWNER, ACME_U1, "deleted", RecipeDeleted(id="owner"))
    await router.emit_by_policy(PolicyLevel.EVERYONE, ACME_U1, "deleted", RecipeDeleted(id="everyone"))

    await eventually(lambda: "everyone" in inbox["u2"] and "everyone" in inbox["u3"])
    await asyncio.sleep(0.1)
    cancel.set()
    await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)

    # Same household, different user: household and broadcast only
    assert sorted(inbox["u2"]) == ["everyone", "household"]
    # Other household: broadcast only
    assert inbox["u3"] == ["everyone"]
    assert bus.active_subscriptions == 0
