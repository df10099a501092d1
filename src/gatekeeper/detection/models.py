"""Data models for the detection pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4


class DetectionLabel(StrEnum):
    """Final classification of a detection pass."""

    OK = "OK"
    SUSPICIOUS = "SUSPICIOUS"


class DetectionKind(StrEnum):
    """What triggered a detection pass."""

    SUSPICIOUS_CONTENT = "SUSPICIOUS_CONTENT"
    SUSPICIOUS_JOIN = "SUSPICIOUS_JOIN"
    USER_REPORT = "USER_REPORT"
    MODERATOR_FLAG = "MODERATOR_FLAG"


class ConfidenceLevel(StrEnum):
    """Coarse bucket derived from a numeric confidence."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


_LOW_CEILING = 0.40
_MEDIUM_CEILING = 0.70


def confidence_level_for(confidence: float) -> ConfidenceLevel:
    """Map a confidence in [0, 1] to its level.

    ``<= 0.40`` is Low, ``<= 0.70`` is Medium, anything above is High.
    """
    if confidence <= _LOW_CEILING:
        return ConfidenceLevel.LOW
    if confidence <= _MEDIUM_CEILING:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.HIGH


@dataclass(frozen=True)
class MessageRef:
    """Location of the message that triggered a content detection."""

    channel_id: str
    message_id: str


@dataclass
class UserProfile:
    """Profile data handed to the classifier."""

    username: str
    account_created_at: datetime | None = None
    joined_server_at: datetime | None = None
    nickname: str | None = None
    recent_messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "nickname": self.nickname,
            "account_created_at": (
                self.account_created_at.isoformat() if self.account_created_at else None
            ),
            "joined_server_at": (
                self.joined_server_at.isoformat() if self.joined_server_at else None
            ),
            "recent_messages": list(self.recent_messages),
        }


@dataclass
class HeuristicSignal:
    """A single signal raised by a local heuristic."""

    name: str
    reason: str
    score: float  # 0.0 - 1.0
    # Context-only signals add confidence but never make a pass suspicious alone
    decisive: bool = True


@dataclass
class ClassifierResult:
    """Verdict returned by a classifier adapter.

    ``confidence`` is the probability that the profile is suspicious.
    """

    label: DetectionLabel
    confidence: float
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DetectionEvent:
    """Persisted record of one detection pass."""

    tenant_id: str
    user_id: str
    kind: DetectionKind
    label: DetectionLabel
    confidence: float
    reasons: tuple[str, ...] = ()
    used_classifier: bool = False
    detected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    trigger_content: str | None = None
    message_ref: MessageRef | None = None
    id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return confidence_level_for(self.confidence)


@dataclass
class DetectionResult:
    """Outcome of a detection pass as seen by the caller.

    ``detection_event_id`` is ``None`` when the event could not be stored.
    """

    label: DetectionLabel
    confidence: float
    confidence_level: ConfidenceLevel
    reasons: list[str]
    used_classifier: bool
    trigger_source: DetectionKind
    trigger_content: str | None = None
    detection_event_id: str | None = None

    @property
    def is_suspicious(self) -> bool:
        return self.label == DetectionLabel.SUSPICIOUS
