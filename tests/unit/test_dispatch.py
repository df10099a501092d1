"""Unit tests for the typed event dispatcher."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from gatekeeper.detection.heuristics import HeuristicEngine
from gatekeeper.detection.models import (
    ConfidenceLevel,
    DetectionKind,
    DetectionLabel,
    DetectionResult,
    MessageRef,
)
from gatekeeper.detection.orchestrator import DetectionOrchestrator
from gatekeeper.dispatch import (
    EventDispatcher,
    MemberJoined,
    MessageReceived,
    ModeratorActionRequested,
    ModeratorActionResult,
    ModeratorFlagRequested,
    UserReported,
)
from gatekeeper.errors import CasePersistenceError
from gatekeeper.storage.memory import InMemoryCaseRepository, InMemoryEventRepository
from gatekeeper.verification.manager import VerificationCaseManager
from gatekeeper.verification.models import CaseAction, CaseStatus

EPOCH = datetime(2000, 1, 1, tzinfo=UTC)


def _result(label: DetectionLabel, event_id: str | None = "evt-1") -> DetectionResult:
    return DetectionResult(
        label=label,
        confidence=0.65 if label == DetectionLabel.SUSPICIOUS else 0.0,
        confidence_level=ConfidenceLevel.MEDIUM
        if label == DetectionLabel.SUSPICIOUS
        else ConfidenceLevel.LOW,
        reasons=[],
        used_classifier=False,
        trigger_source=DetectionKind.SUSPICIOUS_CONTENT,
        detection_event_id=event_id,
    )


@pytest.fixture
def orchestrator(heuristics: HeuristicEngine, event_repo: InMemoryEventRepository):
    return DetectionOrchestrator(heuristics, event_repo)


@pytest.fixture
def dispatcher(
    orchestrator: DetectionOrchestrator, case_manager: VerificationCaseManager
) -> EventDispatcher:
    return EventDispatcher(orchestrator, case_manager)


class TestDetectionEvents:
    """Tests for on_message / on_member_join."""

    @pytest.mark.asyncio
    async def test_suspicious_message_flags_user(
        self,
        dispatcher: EventDispatcher,
        case_repo: InMemoryCaseRepository,
        event_repo: InMemoryEventRepository,
        moderation,
    ) -> None:
        result = await dispatcher.on_message(
            MessageReceived(
                tenant_id="g1",
                user_id="u1",
                content="Claim your FREE DISCORD NITRO now",
                message_ref=MessageRef(channel_id="c1", message_id="m1"),
            )
        )

        assert result.is_suspicious
        assert len(event_repo) == 1
        [case] = await case_repo.list_for_user("g1", "u1")
        assert case.status == CaseStatus.PENDING
        assert case.linked_detection_event_ids == [result.detection_event_id]
        moderation.apply_restriction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ok_message_does_not_flag(
        self,
        dispatcher: EventDispatcher,
        case_repo: InMemoryCaseRepository,
        event_repo: InMemoryEventRepository,
    ) -> None:
        result = await dispatcher.on_message(
            MessageReceived(tenant_id="g1", user_id="u1", content="hello, how are you")
        )

        assert not result.is_suspicious
        assert len(event_repo) == 1
        assert await case_repo.list_for_user("g1", "u1") == []

    @pytest.mark.asyncio
    async def test_repeated_flags_share_one_case(
        self, dispatcher: EventDispatcher, case_repo: InMemoryCaseRepository
    ) -> None:
        await asyncio.gather(
            *(
                dispatcher.on_message(
                    MessageReceived(tenant_id="g1", user_id="u1", content=f"free nitro {i}")
                )
                for i in range(3)
            )
        )

        [case] = await case_repo.list_for_user("g1", "u1")
        assert len(case.linked_detection_event_ids) == 3

    @pytest.mark.asyncio
    async def test_join_without_profile_is_ok(
        self, dispatcher: EventDispatcher, case_repo: InMemoryCaseRepository
    ) -> None:
        result = await dispatcher.on_member_join(MemberJoined(tenant_id="g1", user_id="u1"))
        assert result.label == DetectionLabel.OK
        assert await case_repo.list_for_user("g1", "u1") == []

    @pytest.mark.asyncio
    async def test_flag_failure_still_returns_result(
        self, case_manager: VerificationCaseManager
    ) -> None:
        orchestrator = AsyncMock()
        orchestrator.detect_message = AsyncMock(return_value=_result(DetectionLabel.SUSPICIOUS))
        failing_flag = AsyncMock(side_effect=RuntimeError("db down"))
        case_manager.flag = failing_flag  # type: ignore[method-assign]
        dispatcher = EventDispatcher(orchestrator, case_manager)

        result = await dispatcher.on_message(
            MessageReceived(tenant_id="g1", user_id="u1", content="x")
        )
        assert result.is_suspicious

    @pytest.mark.asyncio
    async def test_detection_survives_caller_cancellation(
        self, case_manager: VerificationCaseManager, case_repo: InMemoryCaseRepository
    ) -> None:
        release = asyncio.Event()

        async def slow_detect(*args, **kwargs) -> DetectionResult:
            await release.wait()
            return _result(DetectionLabel.SUSPICIOUS)

        orchestrator = AsyncMock()
        orchestrator.detect_message = slow_detect
        dispatcher = EventDispatcher(orchestrator, case_manager)

        caller = asyncio.create_task(
            dispatcher.on_message(MessageReceived(tenant_id="g1", user_id="u1", content="x"))
        )
        await asyncio.sleep(0)
        assert dispatcher.in_flight == 1

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        await dispatcher.drain()

        assert dispatcher.in_flight == 0
        assert len(await case_repo.list_for_user("g1", "u1")) == 1

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(self, case_manager: VerificationCaseManager) -> None:
        async def hang(*args, **kwargs) -> DetectionResult:
            await asyncio.Event().wait()
            raise AssertionError("unreachable")

        orchestrator = AsyncMock()
        orchestrator.detect_message = hang
        dispatcher = EventDispatcher(orchestrator, case_manager)

        caller = asyncio.create_task(
            dispatcher.on_message(MessageReceived(tenant_id="g1", user_id="u1", content="x"))
        )
        await asyncio.sleep(0)

        await dispatcher.drain(timeout=0.01)

        assert dispatcher.in_flight == 0
        with pytest.raises(asyncio.CancelledError):
            await caller

    @pytest.mark.asyncio
    async def test_drain_with_nothing_in_flight(self, dispatcher: EventDispatcher) -> None:
        await dispatcher.drain()
        assert dispatcher.in_flight == 0


class TestModeratorActions:
    """Tests for on_moderator_action."""

    @pytest.mark.asyncio
    async def test_verify_success(
        self, dispatcher: EventDispatcher, case_manager: VerificationCaseManager
    ) -> None:
        case = await case_manager.flag("g1", "u1", "evt-1")
        result = await dispatcher.on_moderator_action(
            ModeratorActionRequested(case.id, CaseAction.VERIFY, "mod-1", note="ok")
        )

        assert result.success is True
        assert result.error is None
        assert result.case is not None
        assert result.case.status == CaseStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_illegal_transition_reported(
        self, dispatcher: EventDispatcher, case_manager: VerificationCaseManager
    ) -> None:
        case = await case_manager.flag("g1", "u1", "evt-1")
        result = await dispatcher.on_moderator_action(
            ModeratorActionRequested(case.id, CaseAction.REOPEN, "mod-1")
        )

        assert result.success is False
        assert result.case is None
        assert "while it is Pending" in (result.error or "")

    @pytest.mark.asyncio
    async def test_unknown_case_reported(self, dispatcher: EventDispatcher) -> None:
        result = await dispatcher.on_moderator_action(
            ModeratorActionRequested("missing", CaseAction.REJECT, "mod-1")
        )
        assert result.success is False
        assert result.error

    @pytest.mark.asyncio
    async def test_attach_thread_requires_ref(
        self, dispatcher: EventDispatcher, case_manager: VerificationCaseManager
    ) -> None:
        case = await case_manager.flag("g1", "u1", "evt-1")
        result = await dispatcher.on_moderator_action(
            ModeratorActionRequested(case.id, CaseAction.ATTACH_THREAD, "mod-1")
        )
        assert result.success is False

        result = await dispatcher.on_moderator_action(
            ModeratorActionRequested(
                case.id, CaseAction.ATTACH_THREAD, "mod-1", thread_ref="thread-7"
            )
        )
        assert result.success is True
        assert result.case is not None
        assert result.case.thread_ref == "thread-7"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(
        self, orchestrator: DetectionOrchestrator
    ) -> None:
        cases = AsyncMock()
        cases.verify = AsyncMock(side_effect=RuntimeError("boom"))
        dispatcher = EventDispatcher(orchestrator, cases)

        result = await dispatcher.on_moderator_action(
            ModeratorActionRequested("case-1", CaseAction.VERIFY, "mod-1")
        )
        assert result.success is False
        assert result.error == "Internal error"


class TestManualFlags:
    """Tests for user reports and moderator flags."""

    @pytest.mark.asyncio
    async def test_user_report_records_event_and_flags(
        self,
        dispatcher: EventDispatcher,
        case_repo: InMemoryCaseRepository,
        event_repo: InMemoryEventRepository,
        moderation,
    ) -> None:
        result = await dispatcher.on_user_reported(
            UserReported(tenant_id="g1", user_id="u1", reporter_id="u9", reason="DM scam")
        )

        assert result.is_suspicious
        assert result.confidence == 1.0
        assert result.trigger_source == DetectionKind.USER_REPORT
        assert result.reasons == ["Reported by user u9. Reason: DM scam"]
        [event] = await event_repo.find_recent("g1", "u1", EPOCH)
        assert event.kind == DetectionKind.USER_REPORT
        [case] = await case_repo.list_for_user("g1", "u1")
        assert case.linked_detection_event_ids == [result.detection_event_id]
        assert case.history[0].actor_id == "system"
        moderation.apply_restriction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repeated_reports_share_one_case(
        self, dispatcher: EventDispatcher, case_repo: InMemoryCaseRepository
    ) -> None:
        first = await dispatcher.on_user_reported(
            UserReported(tenant_id="g1", user_id="u1", reporter_id="u8")
        )
        second = await dispatcher.on_user_reported(
            UserReported(tenant_id="g1", user_id="u1", reporter_id="u9")
        )

        [case] = await case_repo.list_for_user("g1", "u1")
        assert case.linked_detection_event_ids == [
            first.detection_event_id,
            second.detection_event_id,
        ]

    @pytest.mark.asyncio
    async def test_moderator_flag_opens_case(
        self,
        dispatcher: EventDispatcher,
        event_repo: InMemoryEventRepository,
        moderation,
    ) -> None:
        result = await dispatcher.on_moderator_flag(
            ModeratorFlagRequested(
                tenant_id="g1", user_id="u1", actor_id="mod-1", reason="Phishing links"
            )
        )

        assert result.success
        assert result.case is not None
        assert result.case.status == CaseStatus.PENDING
        entry = result.case.history[0]
        assert entry.actor_id == "mod-1"
        assert entry.note == "Phishing links"
        [event] = await event_repo.find_recent("g1", "u1", EPOCH)
        assert event.kind == DetectionKind.MODERATOR_FLAG
        assert event.confidence == 1.0
        assert event.reasons == ("Manually flagged by moderator mod-1. Reason: Phishing links",)
        moderation.apply_restriction.assert_awaited_once_with("g1", "u1", "Phishing links")

    @pytest.mark.asyncio
    async def test_moderator_flag_without_reason_uses_default_note(
        self, dispatcher: EventDispatcher
    ) -> None:
        result = await dispatcher.on_moderator_flag(
            ModeratorFlagRequested(tenant_id="g1", user_id="u1", actor_id="mod-1")
        )

        assert result.case is not None
        assert result.case.history[0].note == "Flagged by moderator"

    @pytest.mark.asyncio
    async def test_moderator_flag_persistence_failure(
        self, dispatcher: EventDispatcher, case_manager: VerificationCaseManager
    ) -> None:
        case_manager.flag = AsyncMock(  # type: ignore[method-assign]
            side_effect=CasePersistenceError("case-1", RuntimeError("db down"))
        )

        result = await dispatcher.on_moderator_flag(
            ModeratorFlagRequested(tenant_id="g1", user_id="u1", actor_id="mod-1")
        )

        assert not result.success
        assert "case-1" in (result.error or "")

    @pytest.mark.asyncio
    async def test_moderator_flag_unexpected_error(
        self, dispatcher: EventDispatcher, case_manager: VerificationCaseManager
    ) -> None:
        case_manager.flag = AsyncMock(side_effect=KeyError("x"))  # type: ignore[method-assign]

        result = await dispatcher.on_moderator_flag(
            ModeratorFlagRequested(tenant_id="g1", user_id="u1", actor_id="mod-1")
        )

        assert result == ModeratorActionResult(success=False, error="Internal error")


class TestRejoin:
    @pytest.mark.asyncio
    async def test_join_with_active_case_restores_restriction(
        self, dispatcher: EventDispatcher, moderation
    ) -> None:
        flagged = await dispatcher.on_moderator_flag(
            ModeratorFlagRequested(tenant_id="g1", user_id="u1", actor_id="mod-1")
        )
        assert flagged.case is not None
        moderation.apply_restriction.reset_mock()

        await dispatcher.on_member_join(MemberJoined(tenant_id="g1", user_id="u1"))

        moderation.apply_restriction.assert_awaited_once_with(
            "g1", "u1", f"Verification case {flagged.case.id}: rejoined"
        )

    @pytest.mark.asyncio
    async def test_join_without_case_leaves_member_alone(
        self, dispatcher: EventDispatcher, moderation
    ) -> None:
        await dispatcher.on_member_join(MemberJoined(tenant_id="g1", user_id="u1"))

        moderation.apply_restriction.assert_not_called()

    @pytest.mark.asyncio
    async def test_restore_failure_does_not_block_detection(
        self, dispatcher: EventDispatcher, case_manager: VerificationCaseManager
    ) -> None:
        case_manager.restore_restriction = AsyncMock(  # type: ignore[method-assign]
            side_effect=RuntimeError("db down")
        )

        result = await dispatcher.on_member_join(MemberJoined(tenant_id="g1", user_id="u1"))

        assert not result.is_suspicious
