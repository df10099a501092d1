"""Verification cases: the moderation lifecycle of a flagged user."""

from gatekeeper.verification.manager import (
    ModerationActionService,
    Notifier,
    ThreadManager,
    VerificationCaseManager,
)
from gatekeeper.verification.models import (
    CaseAction,
    CaseHistoryEntry,
    CaseStatus,
    VerificationCase,
)

__all__ = [
    "CaseAction",
    "CaseHistoryEntry",
    "CaseStatus",
    "ModerationActionService",
    "Notifier",
    "ThreadManager",
    "VerificationCase",
    "VerificationCaseManager",
]
