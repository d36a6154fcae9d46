"""Tests for the Redis pub/sub event bus."""

import asyncio
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError

from kitchen_jobs.errors import SubscriptionTransportError
from kitchen_jobs.events import EventBus, RecipeDeleted, RecipeImported, RecipeSummary


async def consume(stream, received):
    async for item in stream:
        received.append(item)


def test_channel_layout():
    bus = EventBus(prefix="kitchen")
    assert bus.household_channel("acme", "imported") == "kitchen:household:acme:imported"
    assert bus.user_channel("u1", "syncFailed") == "kitchen:user:u1:syncFailed"
    assert bus.broadcast_channel("deleted") == "kitchen:broadcast:deleted"
    assert bus.global_channel("updated") == "kitchen:global:updated"


@pytest.mark.asyncio
async def test_publish_without_subscribers_returns_false(bus):
    assert await bus.broadcast("deleted", RecipeDeleted(id="r1")) is False


@pytest.mark.asyncio
async def test_subscribe_receives_typed_payload(bus, eventually):
    """Datum, Set und Dict überstehen den Weg durch Redis."""
    cancel = asyncio.Event()
    received = []
    channel = bus.household_channel("acme", "imported")
    task = asyncio.create_task(consume(bus.subscribe(channel, RecipeImported, cancel), received))
    await eventually(lambda: bus.active_subscriptions == 1)

    summary = RecipeSummary(
        id="r1",
        name="Pancakes",
        tags={"breakfast", "sweet"},
        nutrition={"calories": 350.0},
        updated_at=datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc),
    )
    assert await bus.publish(channel, RecipeImported(recipe=summary, pending_recipe_id="tmp-1")) is True

    await eventually(lambda: len(received) == 1)
    cancel.set()
    await asyncio.wait_for(task, timeout=2)

    event = received[0]
    assert isinstance(event, RecipeImported)
    assert event.recipe.tags == {"breakfast", "sweet"}
    assert event.recipe.updated_at == summary.updated_at
    assert event.pending_recipe_id == "tmp-1"


@pytest.mark.asyncio
async def test_publish_order_is_preserved(bus, eventually):
    cancel = asyncio.Event()
    received = []
    channel = bus.broadcast_channel("deleted")
    task = asyncio.create_task(consume(bus.subscribe(channel, RecipeDeleted, cancel), received))
    await eventually(lambda: bus.active_subscriptions == 1)

    for i in range(5):
        await bus.publish(channel, RecipeDeleted(id=f"r{i}"))

    await eventually(lambda: len(received) == 5)
    cancel.set()
    await task

    assert [e.id for e in received] == [f"r{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_malformed_message_is_skipped(bus, redis_client, eventually):
    cancel = asyncio.Event()
    received = []
    channel = bus.broadcast_channel("deleted")
    task = asyncio.create_task(consume(bus.subscribe(channel, RecipeDeleted, cancel), received))
    await eventually(lambda: bus.active_subscriptions == 1)

    await redis_client.publish(channel, "not json")
    await redis_client.publish(channel, '{"unexpected": true}')
    await bus.publish(channel, RecipeDeleted(id="r1"))

    await eventually(lambda: len(received) == 1)
    cancel.set()
    await task

    assert received[0].id == "r1"


@pytest.mark.asyncio
async def test_undecodable_message_is_skipped(bus, redis_client, eventually):
    """Ungültiges UTF-8 beendet das Abo nicht."""
    cancel = asyncio.Event()
    received = []
    channel = bus.broadcast_channel("deleted")
    task = asyncio.create_task(consume(bus.subscribe(channel, RecipeDeleted, cancel), received))
    await eventually(lambda: bus.active_subscriptions == 1)

    await redis_client.publish(channel, b"\xff\xfe garbage")
    await bus.publish(channel, RecipeDeleted(id="r1"))

    await eventually(lambda: len(received) == 1)
    assert not task.done()
    cancel.set()
    await task

    assert received[0].id == "r1"
    assert bus.active_subscriptions == 0


@pytest.mark.asyncio
async def test_cancel_releases_subscription(bus, eventually):
    cancel = asyncio.Event()
    tasks = [
        asyncio.create_task(consume(bus.subscribe(bus.user_channel(f"u{i}", "deleted"), RecipeDeleted, cancel), []))
        for i in range(3)
    ]
    await eventually(lambda: bus.active_subscriptions == 3)

    cancel.set()
    await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)

    assert bus.active_subscriptions == 0


@pytest.mark.asyncio
async def test_task_cancellation_releases_subscription(bus, eventually):
    task = asyncio.create_task(consume(bus.subscribe(bus.broadcast_channel("deleted"), RecipeDeleted), []))
    await eventually(lambda: bus.active_subscriptions == 1)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert bus.active_subscriptions == 0


@pytest.mark.asyncio
async def test_consumer_break_releases_subscription(bus, eventually):
    channel = bus.broadcast_channel("deleted")
    stream = bus.subscribe(channel, RecipeDeleted)

    async def first():
        async for item in stream:
            return item

    task = asyncio.create_task(first())
    await eventually(lambda: bus.active_subscriptions == 1)
    await bus.publish(channel, RecipeDeleted(id="r1"))

    item = await asyncio.wait_for(task, timeout=2)
    await stream.aclose()

    assert item.id == "r1"
    assert bus.active_subscriptions == 0


@pytest.mark.asyncio
async def test_publish_error_is_reported_as_not_delivered():
    publisher = MagicMock()
    publisher.publish = AsyncMock(side_effect=RedisError("connection refused"))
    publisher.aclose = AsyncMock()
    bus = EventBus(connection_factory=lambda: publisher)

    assert await bus.broadcast("deleted", RecipeDeleted(id="r1")) is False


@pytest.mark.asyncio
async def test_connection_loss_raises_after_cleanup():
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.get_message = AsyncMock(side_effect=RedisConnectionError("Connection reset"))
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    client = MagicMock()
    client.pubsub.return_value = pubsub
    client.aclose = AsyncMock()
    bus = EventBus(connection_factory=lambda: client)

    with pytest.raises(SubscriptionTransportError) as exc_info:
        async for _ in bus.subscribe("kitchen:broadcast:deleted", RecipeDeleted):
            pass

    assert exc_info.value.channel == "kitchen:broadcast:deleted"
    pubsub.unsubscribe.assert_awaited_once_with("kitchen:broadcast:deleted")
    pubsub.aclose.assert_awaited_once()
    client.aclose.assert_awaited_once()
    assert bus.active_subscriptions == 0
