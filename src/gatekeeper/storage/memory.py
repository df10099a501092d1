"""In-memory repositories.

Used when no ``POSTGRES_DSN`` is configured, and by the test suite. Stored
objects are copied on the way in and out so callers never share state with
the store.
"""

from __future__ import annotations

import copy
from collections import deque
from datetime import datetime, timedelta
from typing import Any

from gatekeeper.detection.models import DetectionEvent
from gatekeeper.verification.models import VerificationCase


class InMemoryEventRepository:
    """Detection events per ``(tenant_id, user_id)``, oldest first.

    With ``retention`` set, events older than that (measured against the
    newest stored event) are dropped, and each user keeps at most
    ``max_events_per_user`` events.
    """

    def __init__(
        self,
        retention: timedelta | None = None,
        *,
        max_events_per_user: int | None = 1000,
        sweep_every: int = 1000,
    ) -> None:
        self._retention = retention
        self._max_per_user = max_events_per_user
        self._sweep_every = sweep_every
        self._events: dict[tuple[str, str], deque[DetectionEvent]] = {}
        self._creates = 0

    async def create(self, event: DetectionEvent) -> str:
        key = (event.tenant_id, event.user_id)
        events = self._events.get(key)
        if events is None:
            events = deque(maxlen=self._max_per_user)
            self._events[key] = events
        events.append(event)

        if self._retention is not None:
            cutoff = event.detected_at - self._retention
            self._prune(key, cutoff)
            self._creates += 1
            if self._creates % self._sweep_every == 0:
                self.sweep(cutoff)
        return event.id

    def _prune(self, key: tuple[str, str], cutoff: datetime) -> None:
        events = self._events[key]
        while events and events[0].detected_at < cutoff:
            events.popleft()
        if not events:
            del self._events[key]

    def sweep(self, cutoff: datetime) -> int:
        """Drop every event older than ``cutoff``. Returns users evicted."""
        before = len(self._events)
        for key in list(self._events):
            self._prune(key, cutoff)
        return before - len(self._events)

    async def find_recent(
        self, tenant_id: str, user_id: str, since: datetime
    ) -> list[DetectionEvent]:
        matches = [e for e in self._events.get((tenant_id, user_id), ()) if e.detected_at >= since]
        return sorted(matches, key=lambda e: e.detected_at, reverse=True)

    def __len__(self) -> int:
        return sum(len(events) for events in self._events.values())


class InMemoryCaseRepository:
    """Verification cases keyed by id."""

    def __init__(self) -> None:
        self._cases: dict[str, VerificationCase] = {}

    async def get(self, case_id: str) -> VerificationCase | None:
        case = self._cases.get(case_id)
        return case.copy() if case else None

    async def get_active(self, tenant_id: str, user_id: str) -> VerificationCase | None:
        for case in self._cases.values():
            if case.tenant_id == tenant_id and case.user_id == user_id and case.is_active:
                return case.copy()
        return None

    async def list_for_user(self, tenant_id: str, user_id: str) -> list[VerificationCase]:
        cases = [
            c.copy()
            for c in self._cases.values()
            if c.tenant_id == tenant_id and c.user_id == user_id
        ]
        return sorted(cases, key=lambda c: c.created_at)

    async def create(self, case: VerificationCase) -> VerificationCase:
        if case.id in self._cases:
            raise ValueError(f"Verification case {case.id} already exists")
        self._cases[case.id] = case.copy()
        return case.copy()

    async def update(self, case: VerificationCase) -> VerificationCase:
        if case.id not in self._cases:
            raise KeyError(case.id)
        self._cases[case.id] = case.copy()
        return case.copy()


class InMemoryTenantSettingsStore:
    """Tenant heuristic overrides held in a dict."""

    def __init__(self, initial: dict[str, dict[str, Any]] | None = None) -> None:
        self._values: dict[str, dict[str, Any]] = copy.deepcopy(initial or {})

    async def load_all(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._values)

    async def save(self, tenant_id: str, values: dict[str, Any]) -> None:
        self._values[tenant_id] = copy.deepcopy(values)
