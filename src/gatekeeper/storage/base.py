"""Repository interfaces used by the detection and verification core."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from gatekeeper.detection.models import DetectionEvent
from gatekeeper.verification.models import VerificationCase


class EventRepository(Protocol):
    """Append-only store of detection events."""

    async def create(self, event: DetectionEvent) -> str:
        """Persist ``event`` and return its id."""
        ...

    async def find_recent(
        self, tenant_id: str, user_id: str, since: datetime
    ) -> list[DetectionEvent]:
        """Return events for the key detected at or after ``since``, newest first."""
        ...


class CaseRepository(Protocol):
    """Store of verification cases. Cases are never deleted."""

    async def get(self, case_id: str) -> VerificationCase | None: ...

    async def get_active(self, tenant_id: str, user_id: str) -> VerificationCase | None: ...

    async def list_for_user(self, tenant_id: str, user_id: str) -> list[VerificationCase]:
        """Return every case for the key, oldest first."""
        ...

    async def create(self, case: VerificationCase) -> VerificationCase: ...

    async def update(self, case: VerificationCase) -> VerificationCase: ...


class TenantSettingsStore(Protocol):
    """Persistence for per-tenant heuristic overrides."""

    async def load_all(self) -> dict[str, dict[str, Any]]: ...

    async def save(self, tenant_id: str, values: dict[str, Any]) -> None: ...
