"""Domain services the job handlers call out to.

The handlers only orchestrate: parsing, persistence, AI estimation and the
remote calendar live elsewhere and are injected here as async callables.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Optional, Protocol

from kitchen_jobs.errors import KitchenJobsError
from kitchen_jobs.events.types import RecipeSummary
from kitchen_jobs.policy import PolicyContext, PolicyLevel
from kitchen_jobs.sync.tracker import SyncStatusStore


class CalendarClient(Protocol):
    """Remote calendar (CalDAV) operations for one user's planned items."""

    async def sync_item(
        self,
        user_id: str,
        item_id: str,
        event_title: str,
        day: Optional[date],
        slot: Optional[str],
        recipe_id: Optional[str],
    ) -> str:
        """Create or update the remote event. Returns its external uid."""
        ...

    async def delete_item(self, user_id: str, item_id: str) -> None: ...


ExistsByUrl = Callable[[str, PolicyContext, PolicyLevel], Awaitable[Optional[str]]]
MaintenanceTask = Callable[[], Awaitable[Any]]


class MissingCollaboratorError(KitchenJobsError):
    """A handler needs a collaborator that was not configured."""


@dataclass
class Collaborators:
    # Recipe import
    exists_recipe_by_url: Optional[ExistsByUrl] = None
    parse_recipe_url: Optional[Callable[[str], Awaitable[Optional[dict]]]] = None
    parse_recipe_images: Optional[Callable[[list[str]], Awaitable[Optional[dict]]]] = None
    parse_recipe_text: Optional[Callable[[str], Awaitable[Optional[dict]]]] = None
    persist_recipe: Optional[Callable[[str, str, dict], Awaitable[Optional[str]]]] = None
    load_recipe_summary: Optional[Callable[[str], Awaitable[Optional[RecipeSummary]]]] = None

    # Nutrition
    estimate_nutrition: Optional[Callable[[str], Awaitable[Optional[dict[str, float]]]]] = None
    save_nutrition: Optional[Callable[[str, str, dict[str, float]], Awaitable[None]]] = None

    # Calendar sync
    calendar: Optional[CalendarClient] = None
    sync_store: Optional[SyncStatusStore] = None

    # Scheduled maintenance, keyed by task type
    maintenance_tasks: dict[str, MaintenanceTask] = field(default_factory=dict)

    def require(self, name: str) -> Any:
        value = getattr(self, name)
        if value is None:
            raise MissingCollaboratorError(f"collaborator '{name}' is not configured")
        return value
