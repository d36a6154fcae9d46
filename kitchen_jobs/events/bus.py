"""Redis publish/subscribe event bus.

Publishing goes through one shared client. Every subscription opens its own
connection, because a connection in subscribe mode cannot run ordinary
commands, and releases it on every exit path.

Channel layout (prefix ``kitchen``):
- ``kitchen:household:{household_key}:{event}``
- ``kitchen:user:{user_id}:{event}``
- ``kitchen:broadcast:{event}``
- ``kitchen:global:{event}`` (server-side listeners)
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError
from pydantic import BaseModel, ValidationError

from kitchen_jobs.config import get_settings
from kitchen_jobs.errors import SubscriptionTransportError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
ConnectionFactory = Callable[[], redis.Redis]


class EventBus:
    """Fire-and-forget pub/sub over Redis with typed payloads."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        prefix: Optional[str] = None,
        poll_timeout: float = 1.0,
    ):
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.prefix = prefix or settings.key_prefix
        self.poll_timeout = poll_timeout
        self._factory = connection_factory or self._default_factory
        self._publisher: Optional[redis.Redis] = None
        self.active_subscriptions = 0

    def _default_factory(self) -> redis.Redis:
        return redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)

    async def open(self) -> None:
        if self._publisher is None:
            self._publisher = self._factory()
            logger.info("Event bus publisher connected")

    async def close(self) -> None:
        if self._publisher is not None:
            await self._publisher.aclose()
            self._publisher = None
            logger.info("Event bus publisher closed")

    async def __aenter__(self) -> "EventBus":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ==================== Channels ====================

    def household_channel(self, household_key: str, event: str) -> str:
        return f"{self.prefix}:household:{household_key}:{event}"

    def user_channel(self, user_id: str, event: str) -> str:
        return f"{self.prefix}:user:{user_id}:{event}"

    def broadcast_channel(self, event: str) -> str:
        return f"{self.prefix}:broadcast:{event}"

    def global_channel(self, event: str) -> str:
        return f"{self.prefix}:global:{event}"

    # ==================== Publish ====================

    async def publish(self, channel: str, data: BaseModel) -> bool:
        """
        Publish a payload to a channel.

        Returns:
            True if at least one subscriber received it. Transport errors are
            logged and reported as False.
        """
        if self._publisher is None:
            await self.open()

        try:
            receivers = await self._publisher.publish(channel, data.model_dump_json())
        except (RedisError, OSError) as e:
            logger.error(f"Failed to publish message: {e}", extra={"channel": channel})
            return False

        logger.debug(f"Published message to {receivers} subscriber(s)", extra={"channel": channel})
        return receivers > 0

    async def emit_to_household(self, household_key: str, event: str, data: BaseModel) -> bool:
        return await self.publish(self.household_channel(household_key, event), data)

    async def emit_to_user(self, user_id: str, event: str, data: BaseModel) -> bool:
        return await self.publish(self.user_channel(user_id, event), data)

    async def broadcast(self, event: str, data: BaseModel) -> bool:
        return await self.publish(self.broadcast_channel(event), data)

    async def emit_global(self, event: str, data: BaseModel) -> bool:
        return await self.publish(self.global_channel(event), data)

    # ==================== Subscribe ====================

    async def subscribe(
        self,
        channel: str,
        model: type[M],
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[M]:
        """
        Yield payloads published on ``channel`` until cancelled.

        The dedicated connection is unsubscribed and closed when the loop
        ends, when the consumer stops iterating, when ``cancel`` is set, when
        the task is cancelled, and when the connection drops.

        Args:
            channel: Full channel name
            model: Payload model used to parse each message
            cancel: Optional cancellation token

        Raises:
            SubscriptionTransportError: The connection was lost (after cleanup)
        """
        client = self._factory()
        pubsub = client.pubsub(ignore_subscribe_messages=True)
        subscribed = False

        try:
            await pubsub.subscribe(channel)
            subscribed = True
            self.active_subscriptions += 1
            logger.debug("Started subscription", extra={"channel": channel})

            while not (cancel is not None and cancel.is_set()):
                try:
                    message = await self._next_message(pubsub, cancel)
                except UnicodeDecodeError as e:
                    logger.error(f"Failed to decode message: {e.reason}", extra={"channel": channel})
                    continue

                if message is None or message.get("type") != "message":
                    continue

                try:
                    data = model.model_validate_json(message["data"])
                except ValidationError as e:
                    logger.error(f"Failed to parse message: {e.error_count()} error(s)", extra={"channel": channel})
                    continue

                yield data
        except (RedisConnectionError, ConnectionResetError) as e:
            raise SubscriptionTransportError(channel) from e
        finally:
            try:
                await self._release(pubsub, client, channel)
            finally:
                if subscribed:
                    self.active_subscriptions -= 1

    async def _next_message(self, pubsub, cancel: Optional[asyncio.Event]) -> Optional[dict]:
        """Wait for the next message, returning None on timeout or cancellation."""
        read = asyncio.ensure_future(pubsub.get_message(ignore_subscribe_messages=True, timeout=self.poll_timeout))
        if cancel is None:
            return await read

        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            read.cancel()
            waiter.cancel()
            raise

        if read in done:
            waiter.cancel()
            return read.result()

        read.cancel()
        await asyncio.gather(read, return_exceptions=True)
        return None

    async def _release(self, pubsub, client: redis.Redis, channel: str) -> None:
        try:
            await pubsub.unsubscribe(channel)
        except (RedisError, OSError) as e:
            logger.debug(f"Error during unsubscribe: {e}", extra={"channel": channel})
        try:
            await pubsub.aclose()
            await client.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing subscriber connection: {e}", extra={"channel": channel})
        logger.debug("Ended subscription", extra={"channel": channel})
