"""Repositories for detection events, verification cases and tenant settings."""

from gatekeeper.storage.base import CaseRepository, EventRepository, TenantSettingsStore
from gatekeeper.storage.memory import (
    InMemoryCaseRepository,
    InMemoryEventRepository,
    InMemoryTenantSettingsStore,
)

__all__ = [
    "CaseRepository",
    "EventRepository",
    "InMemoryCaseRepository",
    "InMemoryEventRepository",
    "InMemoryTenantSettingsStore",
    "TenantSettingsStore",
]
