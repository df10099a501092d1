"""Detection package: heuristic signals plus optional profile classification.

Public API
----------
- :class:`DetectionOrchestrator` - run a detection pass for a message or join
- :class:`HeuristicEngine` - per-tenant rate windows and keyword matching
- :class:`TenantSettingsManager` - cached per-tenant heuristic settings
- :class:`DetectionResult`, :class:`DetectionEvent` - result types
"""

from gatekeeper.detection.heuristics import HeuristicEngine, HeuristicReport
from gatekeeper.detection.models import (
    ClassifierResult,
    ConfidenceLevel,
    DetectionEvent,
    DetectionKind,
    DetectionLabel,
    DetectionResult,
    MessageRef,
    UserProfile,
    confidence_level_for,
)
from gatekeeper.detection.orchestrator import DetectionOrchestrator
from gatekeeper.detection.settings import HeuristicSettings, TenantSettingsManager

__all__ = [
    "ClassifierResult",
    "ConfidenceLevel",
    "DetectionEvent",
    "DetectionKind",
    "DetectionLabel",
    "DetectionOrchestrator",
    "DetectionResult",
    "HeuristicEngine",
    "HeuristicReport",
    "HeuristicSettings",
    "MessageRef",
    "TenantSettingsManager",
    "UserProfile",
    "confidence_level_for",
]
