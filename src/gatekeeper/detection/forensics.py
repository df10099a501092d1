"""Forensic logging for suspicious detections.

All WARNING+ events land in the rotating log file when file logging is on.
"""

from __future__ import annotations

import hashlib

from gatekeeper.detection.models import DetectionEvent
from gatekeeper.logging import get_logger

log = get_logger("gatekeeper.detection.forensics")


def log_detection_event(event: DetectionEvent, *, persisted: bool) -> None:
    """Log a detailed forensic record for a suspicious detection."""
    content = event.trigger_content or ""
    content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest() if content else None

    log.warning(
        "detection_event",
        event_id=event.id if persisted else None,
        tenant_id=event.tenant_id,
        user_id=event.user_id,
        kind=event.kind.value,
        label=event.label.value,
        timestamp=event.detected_at.isoformat(),
        confidence=round(event.confidence, 4),
        confidence_level=event.confidence_level.value,
        used_classifier=event.used_classifier,
        reasons=list(event.reasons),
        content_hash=content_hash,
        content_length=len(content),
        content_preview=content[:200] or None,
        channel_id=event.message_ref.channel_id if event.message_ref else None,
        message_id=event.message_ref.message_id if event.message_ref else None,
    )
