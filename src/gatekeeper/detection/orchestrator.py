"""Detection orchestrator.

Blends local heuristic signals with an optional profile classification:

1. Heuristics (message frequency, keywords) decide whether the pass is
   suspicious. Profile age signals add confidence and reasons only.
2. The classifier is called when a profile is supplied, unless the user
   already has a high-confidence event inside the lookback window.
   Joins always classify when a profile is present.
3. Classifier errors and timeouts fail open to ``OK``.
4. Every pass is persisted as a :class:`DetectionEvent`. Storage failures
   are logged and never change the verdict.
5. User reports and moderator flags are recorded directly as suspicious
   events with full confidence.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from gatekeeper.detection.forensics import log_detection_event
from gatekeeper.detection.heuristics import HeuristicReport, aggregate_score
from gatekeeper.detection.models import (
    ClassifierResult,
    DetectionEvent,
    DetectionKind,
    DetectionLabel,
    DetectionResult,
    HeuristicSignal,
    MessageRef,
    UserProfile,
    confidence_level_for,
)
from gatekeeper.logging import get_logger

if TYPE_CHECKING:
    from gatekeeper.config import Settings
    from gatekeeper.detection.classifier import ClassifierAdapter
    from gatekeeper.detection.heuristics import HeuristicEngine
    from gatekeeper.storage.base import EventRepository

log = get_logger("gatekeeper.detection.orchestrator")

RECENT_ACTIVITY_REASON = "Recent suspicious activity"
CLASSIFIER_UNAVAILABLE_REASON = "Classifier unavailable"
NEW_ACCOUNT_REASON = "New account"
RECENT_JOIN_REASON = "Recently joined server"

NEW_ACCOUNT_DAYS = 7
NEW_MEMBER_DAYS = 3

_NEW_ACCOUNT_SCORE = 0.30
_RECENT_JOIN_SCORE = 0.20
_FAIL_OPEN_CONFIDENCE = 0.1

MANUAL_CONFIDENCE = 1.0

_MANUAL_REASONS = {
    DetectionKind.USER_REPORT: "Reported by user {actor_id}",
    DetectionKind.MODERATOR_FLAG: "Manually flagged by moderator {actor_id}",
}
_MANUAL_DEFAULT_CONTENT = {
    DetectionKind.USER_REPORT: "User report",
    DetectionKind.MODERATOR_FLAG: "Manual moderator flag",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DetectionOrchestrator:
    """Run a detection pass for a message or a member join."""

    def __init__(
        self,
        heuristics: HeuristicEngine,
        events: EventRepository,
        *,
        classifier: ClassifierAdapter | None = None,
        classifier_timeout_seconds: float = 15.0,
        lookback_hours: float = 24.0,
        high_confidence_threshold: float = 0.8,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._heuristics = heuristics
        self._events = events
        self._classifier = classifier
        self._classifier_timeout = classifier_timeout_seconds
        self._lookback = timedelta(hours=lookback_hours)
        self._high_confidence = high_confidence_threshold
        self._now = now or _utcnow

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        heuristics: HeuristicEngine,
        events: EventRepository,
        classifier: ClassifierAdapter | None = None,
    ) -> DetectionOrchestrator:
        return cls(
            heuristics,
            events,
            classifier=classifier if settings.classifier_enabled else None,
            classifier_timeout_seconds=settings.classifier_timeout_seconds,
            lookback_hours=settings.classifier_lookback_hours,
            high_confidence_threshold=settings.high_confidence_threshold,
        )

    async def detect_message(
        self,
        tenant_id: str,
        user_id: str,
        content: str,
        profile: UserProfile | None = None,
        message_ref: MessageRef | None = None,
    ) -> DetectionResult:
        """Run a detection pass over a posted message."""
        report = self._heuristics.analyze_message(tenant_id, user_id, content)
        if profile is not None:
            # The classifier sees the message that triggered this pass
            profile = replace(profile, recent_messages=[*profile.recent_messages, content])
        return await self._run(
            DetectionKind.SUSPICIOUS_CONTENT,
            tenant_id,
            user_id,
            report,
            profile,
            always_classify=False,
            content=content,
            message_ref=message_ref,
        )

    async def detect_new_join(
        self, tenant_id: str, user_id: str, profile: UserProfile | None
    ) -> DetectionResult:
        """Run a detection pass for a member joining the tenant."""
        report = self._heuristics.analyze_join(tenant_id, user_id)
        return await self._run(
            DetectionKind.SUSPICIOUS_JOIN,
            tenant_id,
            user_id,
            report,
            profile,
            always_classify=True,
        )

    async def record_manual(
        self,
        kind: DetectionKind,
        tenant_id: str,
        user_id: str,
        actor_id: str,
        reason: str | None = None,
    ) -> DetectionResult:
        """Record a user report or a moderator flag as a suspicious event.

        Manual events skip heuristics and the classifier and carry full
        confidence. ``kind`` must be ``USER_REPORT`` or ``MODERATOR_FLAG``.
        """
        if kind not in _MANUAL_REASONS:
            raise ValueError(f"Not a manual detection kind: {kind}")

        summary = _MANUAL_REASONS[kind].format(actor_id=actor_id)
        if reason:
            summary = f"{summary}. Reason: {reason}"
        content = reason or _MANUAL_DEFAULT_CONTENT[kind]

        event = DetectionEvent(
            tenant_id=tenant_id,
            user_id=user_id,
            kind=kind,
            label=DetectionLabel.SUSPICIOUS,
            confidence=MANUAL_CONFIDENCE,
            reasons=(summary,),
            detected_at=self._now(),
            trigger_content=content,
        )
        event_id = await self._persist(event)
        log_detection_event(event, persisted=event_id is not None)

        return DetectionResult(
            label=DetectionLabel.SUSPICIOUS,
            confidence=MANUAL_CONFIDENCE,
            confidence_level=confidence_level_for(MANUAL_CONFIDENCE),
            reasons=[summary],
            used_classifier=False,
            trigger_source=kind,
            trigger_content=content,
            detection_event_id=event_id,
        )

    async def _run(
        self,
        kind: DetectionKind,
        tenant_id: str,
        user_id: str,
        report: HeuristicReport,
        profile: UserProfile | None,
        *,
        always_classify: bool,
        content: str | None = None,
        message_ref: MessageRef | None = None,
    ) -> DetectionResult:
        now = self._now()
        heuristic_suspicious = report.suspicious
        signals = list(report.signals)
        if profile is not None:
            signals.extend(self._profile_signals(profile, now))
        reasons = [s.reason for s in signals]
        confidence = aggregate_score(signals)

        verdict: ClassifierResult | None = None
        if profile is not None and self._classifier is not None:
            if always_classify or not await self._has_recent_high_confidence(
                tenant_id, user_id, now
            ):
                verdict = await self._classify(tenant_id, user_id, profile)
                if verdict is None:
                    reasons.append(CLASSIFIER_UNAVAILABLE_REASON)
                    confidence = max(confidence, _FAIL_OPEN_CONFIDENCE)
                else:
                    reasons.extend(r for r in verdict.reasons if r not in reasons)
                    confidence = max(confidence, verdict.confidence)
            else:
                reasons.append(RECENT_ACTIVITY_REASON)
                log.debug("classifier_skipped", tenant_id=tenant_id, user_id=user_id)

        suspicious = heuristic_suspicious or (
            verdict is not None and verdict.label == DetectionLabel.SUSPICIOUS
        )
        label = DetectionLabel.SUSPICIOUS if suspicious else DetectionLabel.OK

        event = DetectionEvent(
            tenant_id=tenant_id,
            user_id=user_id,
            kind=kind,
            label=label,
            confidence=confidence,
            reasons=tuple(reasons),
            used_classifier=verdict is not None,
            detected_at=now,
            trigger_content=content,
            message_ref=message_ref,
        )
        event_id = await self._persist(event)

        if suspicious:
            log_detection_event(event, persisted=event_id is not None)

        return DetectionResult(
            label=label,
            confidence=confidence,
            confidence_level=confidence_level_for(confidence),
            reasons=reasons,
            used_classifier=event.used_classifier,
            trigger_source=kind,
            trigger_content=content,
            detection_event_id=event_id,
        )

    def _profile_signals(self, profile: UserProfile, now: datetime) -> list[HeuristicSignal]:
        signals: list[HeuristicSignal] = []
        created = profile.account_created_at
        if created is not None and now - created <= timedelta(days=NEW_ACCOUNT_DAYS):
            signals.append(
                HeuristicSignal(
                    name="new_account",
                    reason=NEW_ACCOUNT_REASON,
                    score=_NEW_ACCOUNT_SCORE,
                    decisive=False,
                )
            )
        joined = profile.joined_server_at
        if joined is not None and now - joined <= timedelta(days=NEW_MEMBER_DAYS):
            signals.append(
                HeuristicSignal(
                    name="recent_join",
                    reason=RECENT_JOIN_REASON,
                    score=_RECENT_JOIN_SCORE,
                    decisive=False,
                )
            )
        return signals

    async def _has_recent_high_confidence(
        self, tenant_id: str, user_id: str, now: datetime
    ) -> bool:
        try:
            recent = await self._events.find_recent(tenant_id, user_id, now - self._lookback)
        except Exception:
            log.exception("recent_events_lookup_failed", tenant_id=tenant_id, user_id=user_id)
            return False
        return any(e.confidence >= self._high_confidence for e in recent)

    async def _classify(
        self, tenant_id: str, user_id: str, profile: UserProfile
    ) -> ClassifierResult | None:
        """Call the classifier, returning ``None`` on any failure."""
        assert self._classifier is not None
        try:
            return await asyncio.wait_for(
                self._classifier.classify(profile), timeout=self._classifier_timeout
            )
        except TimeoutError:
            log.warning(
                "classifier_timeout",
                tenant_id=tenant_id,
                user_id=user_id,
                timeout_seconds=self._classifier_timeout,
            )
        except Exception as e:
            log.warning(
                "classifier_failed",
                tenant_id=tenant_id,
                user_id=user_id,
                error=str(e),
            )
        return None

    async def _persist(self, event: DetectionEvent) -> str | None:
        try:
            return await self._events.create(event)
        except Exception:
            log.exception(
                "detection_event_persist_failed",
                tenant_id=event.tenant_id,
                user_id=event.user_id,
                kind=event.kind.value,
            )
            return None
