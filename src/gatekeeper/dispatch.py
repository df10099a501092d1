"""Typed inbound event dispatch.

The gateway adapter turns platform events into :class:`MessageReceived`,
:class:`MemberJoined`, :class:`UserReported`, :class:`ModeratorFlagRequested`
and :class:`ModeratorActionRequested` and hands them to :class:`EventDispatcher`,
which calls the orchestrator and the case manager directly.

Events for the same ``(tenant_id, user_id)`` are processed one at a time in
arrival order. A detection, once started, runs to completion in its own task
even if the caller is cancelled, so its event is always recorded.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gatekeeper.detection.models import DetectionKind, DetectionResult, MessageRef, UserProfile
from gatekeeper.errors import GatekeeperError
from gatekeeper.locks import KeyedLock
from gatekeeper.logging import get_logger
from gatekeeper.verification.manager import MODERATOR_FLAG_NOTE, VerificationCaseManager
from gatekeeper.verification.models import CaseAction, VerificationCase

if TYPE_CHECKING:
    from collections.abc import Coroutine
    from typing import Any

    from gatekeeper.detection.orchestrator import DetectionOrchestrator

log = get_logger("gatekeeper.dispatch")

# Graceful shutdown: max seconds to wait for in-flight detections.
_DRAIN_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class MessageReceived:
    tenant_id: str
    user_id: str
    content: str
    profile: UserProfile | None = None
    message_ref: MessageRef | None = None


@dataclass(frozen=True)
class MemberJoined:
    tenant_id: str
    user_id: str
    profile: UserProfile | None = None


@dataclass(frozen=True)
class UserReported:
    """A member reported another member to the moderators."""

    tenant_id: str
    user_id: str
    reporter_id: str
    reason: str | None = None


@dataclass(frozen=True)
class ModeratorFlagRequested:
    """A moderator opened a case for a user by hand."""

    tenant_id: str
    user_id: str
    actor_id: str
    reason: str | None = None


@dataclass(frozen=True)
class ModeratorActionRequested:
    case_id: str
    action: CaseAction
    actor_id: str
    note: str | None = None
    thread_ref: str | None = None


@dataclass
class ModeratorActionResult:
    """Explicit outcome of a moderator action, reported back to the moderator."""

    success: bool
    case: VerificationCase | None = None
    error: str | None = None


class EventDispatcher:
    """Route typed events to the detection and verification core."""

    def __init__(
        self,
        orchestrator: DetectionOrchestrator,
        cases: VerificationCaseManager,
    ) -> None:
        self._orchestrator = orchestrator
        self._cases = cases
        self._locks = KeyedLock()
        self._in_flight: set[asyncio.Task[DetectionResult]] = set()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def on_message(self, event: MessageReceived) -> DetectionResult:
        return await self._run_detection(self._handle_message(event))

    async def on_member_join(self, event: MemberJoined) -> DetectionResult:
        return await self._run_detection(self._handle_join(event))

    async def on_user_reported(self, event: UserReported) -> DetectionResult:
        """Record a member report and flag the reported user."""
        return await self._run_detection(self._handle_report(event))

    async def _run_detection(
        self, work: Coroutine[Any, Any, DetectionResult]
    ) -> DetectionResult:
        task = asyncio.ensure_future(work)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    async def _handle_message(self, event: MessageReceived) -> DetectionResult:
        async with self._locks.hold((event.tenant_id, event.user_id)):
            result = await self._orchestrator.detect_message(
                event.tenant_id,
                event.user_id,
                event.content,
                profile=event.profile,
                message_ref=event.message_ref,
            )
            if result.is_suspicious:
                await self._flag(event.tenant_id, event.user_id, result)
            return result

    async def _handle_join(self, event: MemberJoined) -> DetectionResult:
        async with self._locks.hold((event.tenant_id, event.user_id)):
            await self._restore_restriction(event.tenant_id, event.user_id)
            result = await self._orchestrator.detect_new_join(
                event.tenant_id, event.user_id, event.profile
            )
            if result.is_suspicious:
                await self._flag(event.tenant_id, event.user_id, result)
            return result

    async def _handle_report(self, event: UserReported) -> DetectionResult:
        async with self._locks.hold((event.tenant_id, event.user_id)):
            result = await self._orchestrator.record_manual(
                DetectionKind.USER_REPORT,
                event.tenant_id,
                event.user_id,
                event.reporter_id,
                event.reason,
            )
            await self._flag(event.tenant_id, event.user_id, result)
            return result

    async def _restore_restriction(self, tenant_id: str, user_id: str) -> None:
        try:
            await self._cases.restore_restriction(tenant_id, user_id)
        except Exception:
            log.exception("restriction_restore_failed", tenant_id=tenant_id, user_id=user_id)

    async def _flag(self, tenant_id: str, user_id: str, result: DetectionResult) -> None:
        try:
            await self._cases.flag(tenant_id, user_id, result.detection_event_id)
        except Exception:
            log.exception(
                "flag_failed",
                tenant_id=tenant_id,
                user_id=user_id,
                detection_event_id=result.detection_event_id,
            )

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def drain(self, timeout: float = _DRAIN_TIMEOUT_SECONDS) -> None:
        """Wait for in-flight detections to finish, cancelling stragglers."""
        if not self._in_flight:
            return
        pending = set(self._in_flight)
        log.info("dispatcher_draining", in_flight=len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        for task in still_running:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if still_running:
            log.warning("dispatcher_drain_timeout", cancelled=len(still_running))

    # ------------------------------------------------------------------
    # Moderator actions
    # ------------------------------------------------------------------

    async def on_moderator_action(self, request: ModeratorActionRequested) -> ModeratorActionResult:
        """Apply a moderator action and report success or failure explicitly."""
        try:
            match request.action:
                case CaseAction.VERIFY:
                    case = await self._cases.verify(
                        request.case_id, request.actor_id, request.note
                    )
                case CaseAction.REJECT:
                    case = await self._cases.reject(
                        request.case_id, request.actor_id, request.note
                    )
                case CaseAction.REOPEN:
                    case = await self._cases.reopen(
                        request.case_id, request.actor_id, request.note
                    )
                case CaseAction.ATTACH_THREAD:
                    if not request.thread_ref:
                        return ModeratorActionResult(
                            success=False, error="A thread reference is required"
                        )
                    case = await self._cases.attach_thread(request.case_id, request.thread_ref)
        except GatekeeperError as e:
            log.info(
                "moderator_action_rejected",
                case_id=request.case_id,
                action=request.action.value,
                actor_id=request.actor_id,
                error=str(e),
            )
            return ModeratorActionResult(success=False, error=str(e))
        except Exception:
            log.exception(
                "moderator_action_failed",
                case_id=request.case_id,
                action=request.action.value,
            )
            return ModeratorActionResult(success=False, error="Internal error")

        return ModeratorActionResult(success=True, case=case)

    async def on_moderator_flag(self, request: ModeratorFlagRequested) -> ModeratorActionResult:
        """Open (or extend) a case for a user on a moderator's say-so."""
        async with self._locks.hold((request.tenant_id, request.user_id)):
            result = await self._orchestrator.record_manual(
                DetectionKind.MODERATOR_FLAG,
                request.tenant_id,
                request.user_id,
                request.actor_id,
                request.reason,
            )
            try:
                case = await self._cases.flag(
                    request.tenant_id,
                    request.user_id,
                    result.detection_event_id,
                    actor_id=request.actor_id,
                    note=request.reason or MODERATOR_FLAG_NOTE,
                )
            except GatekeeperError as e:
                log.warning(
                    "moderator_flag_failed",
                    tenant_id=request.tenant_id,
                    user_id=request.user_id,
                    actor_id=request.actor_id,
                    error=str(e),
                )
                return ModeratorActionResult(success=False, error=str(e))
            except Exception:
                log.exception(
                    "moderator_flag_failed",
                    tenant_id=request.tenant_id,
                    user_id=request.user_id,
                )
                return ModeratorActionResult(success=False, error="Internal error")

        log.info(
            "moderator_flag_applied",
            case_id=case.id,
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            actor_id=request.actor_id,
        )
        return ModeratorActionResult(success=True, case=case)
