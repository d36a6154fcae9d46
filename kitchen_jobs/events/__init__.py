"""Real-time event propagation.

Usage:
    router = PolicyRouter(bus, policy_provider)

    # Emit according to the current visibility policy
    await router.emit(ctx, "imported", RecipeImported(recipe=summary))

    # Receive regardless of the policy used at publish time
    async for data in router.subscribe_policy_aware(ctx, "imported", cancel):
        ...
"""

from .bus import EventBus
from .merge import merge_async_iterables
from .router import PolicyRouter
from .types import (
    EVENT_PAYLOADS,
    RECIPE_EVENTS,
    CALENDAR_EVENTS,
    EventName,
    RecipeSummary,
    RecipeCreated,
    RecipeImportStarted,
    RecipeImported,
    RecipeUpdated,
    RecipeDeleted,
    RecipeFailed,
    NutritionStarted,
    SyncStarted,
    SyncCompleted,
    SyncFailed,
    ItemStatusUpdated,
    UnknownEventError,
    payload_model,
    check_payload,
)

__all__ = [
    "EventBus",
    "merge_async_iterables",
    "PolicyRouter",
    "EVENT_PAYLOADS",
    "RECIPE_EVENTS",
    "CALENDAR_EVENTS",
    "EventName",
    "RecipeSummary",
    "RecipeCreated",
    "RecipeImportStarted",
    "RecipeImported",
    "RecipeUpdated",
    "RecipeDeleted",
    "RecipeFailed",
    "NutritionStarted",
    "SyncStarted",
    "SyncCompleted",
    "SyncFailed",
    "ItemStatusUpdated",
    "UnknownEventError",
    "payload_model",
    "check_payload",
]
