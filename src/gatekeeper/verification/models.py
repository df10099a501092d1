"""Verification case data model and transition table."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

SYSTEM_ACTOR = "system"


class CaseStatus(StrEnum):
    """Lifecycle status of a verification case."""

    PENDING = "Pending"
    VERIFIED = "Verified"
    REJECTED = "Rejected"
    REOPENED = "Reopened"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({CaseStatus.PENDING, CaseStatus.REOPENED})
TERMINAL_STATUSES = frozenset({CaseStatus.VERIFIED, CaseStatus.REJECTED})


class CaseAction(StrEnum):
    """Moderator actions on a case."""

    VERIFY = "verify"
    REJECT = "reject"
    REOPEN = "reopen"
    ATTACH_THREAD = "attach_thread"


# action -> (statuses it is legal from, resulting status)
TRANSITIONS: dict[CaseAction, tuple[frozenset[CaseStatus], CaseStatus]] = {
    CaseAction.VERIFY: (ACTIVE_STATUSES, CaseStatus.VERIFIED),
    CaseAction.REJECT: (ACTIVE_STATUSES, CaseStatus.REJECTED),
    CaseAction.REOPEN: (TERMINAL_STATUSES, CaseStatus.REOPENED),
}


@dataclass(frozen=True)
class CaseHistoryEntry:
    """One status change in a case's audit trail."""

    status: CaseStatus
    actor_id: str
    note: str | None = None
    at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "actor_id": self.actor_id,
            "note": self.note,
            "at": self.at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CaseHistoryEntry:
        return cls(
            status=CaseStatus(data["status"]),
            actor_id=data["actor_id"],
            note=data.get("note"),
            at=datetime.fromisoformat(data["at"]),
        )


@dataclass
class VerificationCase:
    """Audit-tracked moderation lifecycle for one flagged user."""

    tenant_id: str
    user_id: str
    status: CaseStatus = CaseStatus.PENDING
    thread_ref: str | None = None
    linked_detection_event_ids: list[str] = field(default_factory=list)
    history: list[CaseHistoryEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def copy(self) -> VerificationCase:
        """Return an independent copy (lists are not shared)."""
        return VerificationCase(
            tenant_id=self.tenant_id,
            user_id=self.user_id,
            status=self.status,
            thread_ref=self.thread_ref,
            linked_detection_event_ids=list(self.linked_detection_event_ids),
            history=list(self.history),
            created_at=self.created_at,
            updated_at=self.updated_at,
            id=self.id,
        )
