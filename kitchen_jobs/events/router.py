"""Route events by visibility policy.

Emit side: the policy current at emit time picks exactly one channel.
Receive side: a client cannot know which policy was active when an event
was published, so it listens on all three scope channels at once.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from pydantic import BaseModel

from kitchen_jobs.policy import PolicyContext, PolicyLevel, PolicyProvider
from .bus import EventBus
from .merge import merge_async_iterables
from .types import check_payload, payload_model

logger = logging.getLogger(__name__)


class PolicyRouter:
    """Publishes and subscribes on the channels a visibility policy implies."""

    def __init__(self, bus: EventBus, policy_provider: PolicyProvider):
        self.bus = bus
        self.policy_provider = policy_provider

    async def emit_by_policy(
        self,
        policy: PolicyLevel,
        ctx: PolicyContext,
        event: str,
        data: BaseModel,
    ) -> bool:
        """
        Publish one event on the single channel the policy selects.

        - everyone: broadcast
        - household: the context's household
        - owner: the context's user
        """
        check_payload(event, data)
        log_extra = {"event": event, "policy": policy.value, "user_id": ctx.user_id, "household_key": ctx.household_key}
        logger.debug("Emitting event via policy", extra=log_extra)

        if policy == PolicyLevel.EVERYONE:
            return await self.bus.broadcast(event, data)
        if policy == PolicyLevel.HOUSEHOLD:
            return await self.bus.emit_to_household(ctx.household_key, event, data)
        if policy == PolicyLevel.OWNER:
            return await self.bus.emit_to_user(ctx.user_id, event, data)

        raise ValueError(f"Unknown policy level: {policy}")

    async def emit(self, ctx: PolicyContext, event: str, data: BaseModel) -> bool:
        """Emit using the policy in force right now."""
        policy = await self.policy_provider.current()
        return await self.emit_by_policy(policy, ctx, event, data)

    async def emit_to_user(self, user_id: str, event: str, data: BaseModel) -> bool:
        """User-scoped event, independent of policy (sync status and the like)."""
        check_payload(event, data)
        return await self.bus.emit_to_user(user_id, event, data)

    def policy_aware_channels(self, ctx: PolicyContext, event: str) -> list[str]:
        return [
            self.bus.household_channel(ctx.household_key, event),
            self.bus.broadcast_channel(event),
            self.bus.user_channel(ctx.user_id, event),
        ]

    def subscribe_policy_aware(
        self,
        ctx: PolicyContext,
        event: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[BaseModel]:
        """
        Merge subscriptions on the household, broadcast and user channels.

        Receives the event whichever policy was active when it was published.
        """
        model = payload_model(event)
        channels = self.policy_aware_channels(ctx, event)
        logger.debug(
            f"Creating policy-aware subscription on {len(channels)} channels",
            extra={"event": event, "user_id": ctx.user_id, "household_key": ctx.household_key},
        )
        sources = [self.bus.subscribe(channel, model, cancel) for channel in channels]
        return merge_async_iterables(sources, cancel)

    def subscribe_user(
        self,
        user_id: str,
        event: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[BaseModel]:
        """Single user-scoped subscription."""
        return self.bus.subscribe(self.bus.user_channel(user_id, event), payload_model(event), cancel)
