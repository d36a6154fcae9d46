"""Event names and their payload models.

Every event name maps to exactly one pydantic model. Publishing validates
the payload against it and subscribers parse incoming messages with it,
so dates, sets and nested mappings survive the round trip through Redis.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class RecipeSummary(BaseModel):
    """Dashboard view of a recipe, as returned by the persistence layer."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    url: Optional[str] = None
    image: Optional[str] = None
    servings: Optional[int] = None
    tags: set[str] = set()
    nutrition: dict[str, float] = {}
    updated_at: Optional[datetime] = None


# ==================== Recipe events ====================

class RecipeCreated(BaseModel):
    recipe: RecipeSummary


class RecipeImportStarted(BaseModel):
    recipe_id: str
    url: str


class RecipeImported(BaseModel):
    recipe: RecipeSummary
    pending_recipe_id: Optional[str] = None


class RecipeUpdated(BaseModel):
    recipe: RecipeSummary


class RecipeDeleted(BaseModel):
    id: str


class RecipeFailed(BaseModel):
    """Final failure; lets the client drop its in-progress placeholder."""
    reason: str
    recipe_id: Optional[str] = None
    url: Optional[str] = None


class NutritionStarted(BaseModel):
    recipe_id: str


# ==================== Calendar sync events ====================

ItemType = Literal["recipe", "note"]
SyncStatusValue = Literal["pending", "synced", "failed", "removed"]


class SyncStarted(BaseModel):
    timestamp: datetime


class SyncCompleted(BaseModel):
    item_id: str
    external_id: str


class SyncFailed(BaseModel):
    item_id: str
    error_message: str
    retry_count: int


class ItemStatusUpdated(BaseModel):
    item_id: str
    item_type: ItemType
    sync_status: SyncStatusValue
    error_message: Optional[str] = None
    external_id: Optional[str] = None


RecipeEventName = Literal[
    "created", "importStarted", "imported", "updated", "deleted", "failed", "nutritionStarted",
]
CalendarEventName = Literal["syncStarted", "syncCompleted", "syncFailed", "itemStatusUpdated"]
EventName = Literal[RecipeEventName, CalendarEventName]

RECIPE_EVENTS: dict[str, type[BaseModel]] = {
    "created": RecipeCreated,
    "importStarted": RecipeImportStarted,
    "imported": RecipeImported,
    "updated": RecipeUpdated,
    "deleted": RecipeDeleted,
    "failed": RecipeFailed,
    "nutritionStarted": NutritionStarted,
}

CALENDAR_EVENTS: dict[str, type[BaseModel]] = {
    "syncStarted": SyncStarted,
    "syncCompleted": SyncCompleted,
    "syncFailed": SyncFailed,
    "itemStatusUpdated": ItemStatusUpdated,
}

EVENT_PAYLOADS: dict[str, type[BaseModel]] = {**RECIPE_EVENTS, **CALENDAR_EVENTS}


class UnknownEventError(KeyError):
    pass


def payload_model(event: str) -> type[BaseModel]:
    """Return the payload model registered for an event name."""
    try:
        return EVENT_PAYLOADS[event]
    except KeyError:
        raise UnknownEventError(event) from None


def check_payload(event: str, data: BaseModel) -> None:
    """Raise TypeError if ``data`` is not the payload type of ``event``."""
    expected = payload_model(event)
    if not isinstance(data, expected):
        raise TypeError(f"event '{event}' expects {expected.__name__}, got {type(data).__name__}")
