"""Notification dispatcher for routing case alerts to admin channels."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from gatekeeper.logging import get_logger
from gatekeeper.verification.models import CaseStatus, VerificationCase

log = get_logger("gatekeeper.notifications.dispatcher")


class NotificationType(Enum):
    """Types of notifications."""

    CASE_CREATED = "case_created"
    CASE_VERIFIED = "case_verified"
    CASE_REJECTED = "case_rejected"
    CASE_REOPENED = "case_reopened"


class NotificationPriority(Enum):
    """Priority levels for notifications."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_TRANSITION_TYPES = {
    CaseStatus.VERIFIED: (NotificationType.CASE_VERIFIED, NotificationPriority.LOW),
    CaseStatus.REJECTED: (NotificationType.CASE_REJECTED, NotificationPriority.MEDIUM),
    CaseStatus.REOPENED: (NotificationType.CASE_REOPENED, NotificationPriority.HIGH),
}


@dataclass
class Notification:
    """A notification to be sent."""

    type: NotificationType
    tenant_id: str
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Send a notification.

        Returns:
            True if sent successfully, False otherwise.
        """
        pass

    @abstractmethod
    def supports_priority(self, priority: NotificationPriority) -> bool:
        pass


class NotificationDispatcher:
    """Dispatches case notifications to registered channels.

    Implements the case manager's ``Notifier`` interface.
    """

    def __init__(self) -> None:
        self._channels: list[NotificationChannel] = []
        self._type_filters: dict[NotificationType, bool] = {}

    def register_channel(self, channel: NotificationChannel) -> None:
        self._channels.append(channel)
        log.info("channel_registered", channel=channel.__class__.__name__)

    def set_type_enabled(self, notification_type: NotificationType, enabled: bool) -> None:
        self._type_filters[notification_type] = enabled

    def is_type_enabled(self, notification_type: NotificationType) -> bool:
        """Check if a notification type is enabled (default is True)."""
        return self._type_filters.get(notification_type, True)

    async def dispatch(self, notification: Notification) -> int:
        """Dispatch a notification to all appropriate channels.

        Returns:
            Number of channels that successfully received the notification.
        """
        if not self.is_type_enabled(notification.type):
            log.debug("notification_filtered", type=notification.type.value)
            return 0

        sent_count = 0
        for channel in self._channels:
            if channel.supports_priority(notification.priority):
                try:
                    if await channel.send(notification):
                        sent_count += 1
                except Exception as e:
                    log.error(
                        "channel_send_failed",
                        channel=channel.__class__.__name__,
                        error=str(e),
                    )

        if sent_count > 0:
            log.info(
                "notification_dispatched",
                type=notification.type.value,
                priority=notification.priority.value,
                channels=sent_count,
            )
        else:
            log.warning(
                "notification_not_sent",
                type=notification.type.value,
                reason="no channels available",
            )
        return sent_count

    async def on_case_created(
        self, case: VerificationCase, detection_event_id: str | None
    ) -> None:
        notification = Notification(
            type=NotificationType.CASE_CREATED,
            tenant_id=case.tenant_id,
            title="User Flagged for Verification",
            message=f"User <@{case.user_id}> was flagged and restricted pending review.",
            priority=NotificationPriority.HIGH,
            metadata={
                "case_id": case.id,
                "user_id": case.user_id,
                "detection_event_id": detection_event_id,
                "thread_ref": case.thread_ref,
            },
        )
        await self.dispatch(notification)

    async def on_case_transitioned(
        self, case: VerificationCase, previous_status: CaseStatus, actor_id: str
    ) -> None:
        notification_type, priority = _TRANSITION_TYPES[case.status]
        notification = Notification(
            type=notification_type,
            tenant_id=case.tenant_id,
            title=f"Verification Case {case.status.value}",
            message=(
                f"Case for <@{case.user_id}> moved from {previous_status.value} "
                f"to {case.status.value} by <@{actor_id}>."
            ),
            priority=priority,
            metadata={
                "case_id": case.id,
                "user_id": case.user_id,
                "actor_id": actor_id,
                "previous_status": previous_status.value,
            },
        )
        await self.dispatch(notification)
