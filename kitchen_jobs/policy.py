"""Visibility policy: who gets to see whose data."""

from enum import Enum
from typing import Protocol

from pydantic import BaseModel

from kitchen_jobs.config import get_settings


class PolicyLevel(str, Enum):
    """Admin-configured visibility scope."""
    EVERYONE = "everyone"
    HOUSEHOLD = "household"
    OWNER = "owner"


class PolicyContext(BaseModel):
    """Identity used to scope events and dedup keys."""
    user_id: str
    household_key: str


class PolicyProvider(Protocol):
    async def current(self) -> PolicyLevel: ...


class SettingsPolicyProvider:
    """Reads the policy from settings on every call."""

    async def current(self) -> PolicyLevel:
        return PolicyLevel(get_settings().visibility_policy)


class StaticPolicyProvider:
    """Holds a policy value that can be changed at runtime."""

    def __init__(self, level: PolicyLevel = PolicyLevel.HOUSEHOLD):
        self.level = level

    async def current(self) -> PolicyLevel:
        return self.level

    def set(self, level: PolicyLevel) -> None:
        self.level = level
