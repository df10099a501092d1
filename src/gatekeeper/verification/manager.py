"""Verification case state machine.

States and legal moderator actions::

    Pending  --verify--> Verified  --reopen--> Reopened
    Pending  --reject--> Rejected  --reopen--> Reopened
    Reopened --verify--> Verified
    Reopened --reject--> Rejected

Moderator transitions are *effect-then-commit*: the restriction change or
ban must succeed before the new status is written. If it fails a
:class:`~gatekeeper.errors.ModerationActionError` is raised and the case is
left as it was. Thread lock/unlock is best effort and only logged. A user
who has left the tenant counts as unrestricted; a restriction for an absent
user is applied by :meth:`VerificationCaseManager.restore_restriction` when
they rejoin.

Every mutation holds a per-``(tenant_id, user_id)`` lock so two concurrent
flags for the same user can never open two cases.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from gatekeeper.errors import (
    CaseNotFoundError,
    CasePersistenceError,
    GatekeeperError,
    IllegalTransitionError,
    ModerationActionError,
)
from gatekeeper.locks import KeyedLock
from gatekeeper.logging import get_logger
from gatekeeper.verification.models import (
    SYSTEM_ACTOR,
    TRANSITIONS,
    CaseAction,
    CaseHistoryEntry,
    CaseStatus,
    VerificationCase,
)

if TYPE_CHECKING:
    from gatekeeper.storage.base import CaseRepository

log = get_logger("gatekeeper.verification.manager")

FLAG_NOTE = "Flagged by automated detection"
MODERATOR_FLAG_NOTE = "Flagged by moderator"


class ModerationActionService(Protocol):
    """Role restriction and ban actions on a tenant member."""

    async def apply_restriction(self, tenant_id: str, user_id: str, reason: str) -> None: ...

    async def remove_restriction(self, tenant_id: str, user_id: str, reason: str) -> None: ...

    async def ban(self, tenant_id: str, user_id: str, reason: str) -> None: ...


class ThreadManager(Protocol):
    """Lifecycle of the discussion thread attached to a case."""

    async def create(self, case: VerificationCase) -> str | None:
        """Open a thread for ``case`` and return its reference."""
        ...

    async def lock_and_archive(self, tenant_id: str, thread_ref: str) -> None: ...

    async def unlock_and_unarchive(self, tenant_id: str, thread_ref: str) -> None: ...


class Notifier(Protocol):
    """Admin-facing notifications about case changes."""

    async def on_case_created(
        self, case: VerificationCase, detection_event_id: str | None
    ) -> None: ...

    async def on_case_transitioned(
        self, case: VerificationCase, previous_status: CaseStatus, actor_id: str
    ) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class VerificationCaseManager:
    """Create, link and transition verification cases."""

    def __init__(
        self,
        cases: CaseRepository,
        moderation: ModerationActionService,
        threads: ThreadManager | None = None,
        notifier: Notifier | None = None,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._cases = cases
        self._moderation = moderation
        self._threads = threads
        self._notifier = notifier
        self._now = now or _utcnow
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_case(self, case_id: str) -> VerificationCase:
        """Return the case or raise :class:`CaseNotFoundError`."""
        case = await self._cases.get(case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    async def get_active_case(self, tenant_id: str, user_id: str) -> VerificationCase | None:
        return await self._cases.get_active(tenant_id, user_id)

    async def get_history(self, tenant_id: str, user_id: str) -> list[VerificationCase]:
        """Every case ever opened for the user in this tenant, oldest first."""
        return await self._cases.list_for_user(tenant_id, user_id)

    # ------------------------------------------------------------------
    # Flagging
    # ------------------------------------------------------------------

    async def flag(
        self,
        tenant_id: str,
        user_id: str,
        detection_event_id: str | None,
        *,
        actor_id: str = SYSTEM_ACTOR,
        note: str = FLAG_NOTE,
    ) -> VerificationCase:
        """Open a case for a suspicious user, or link the event to the active one.

        ``actor_id`` and ``note`` go into the first history entry of a new case.

        Raises:
            CasePersistenceError: If the case itself could not be stored.
        """
        async with self._locks.hold((tenant_id, user_id)):
            active = await self._cases.get_active(tenant_id, user_id)
            if active is not None:
                return await self._link_event(active, detection_event_id)

            now = self._now()
            case = VerificationCase(
                tenant_id=tenant_id,
                user_id=user_id,
                linked_detection_event_ids=[detection_event_id] if detection_event_id else [],
                history=[CaseHistoryEntry(CaseStatus.PENDING, actor_id, note, now)],
                created_at=now,
                updated_at=now,
            )
            try:
                case = await self._cases.create(case)
            except Exception as e:
                log.exception("case_create_failed", tenant_id=tenant_id, user_id=user_id)
                raise CasePersistenceError(case.id, e) from e
            log.info(
                "case_created",
                case_id=case.id,
                tenant_id=tenant_id,
                user_id=user_id,
                detection_event_id=detection_event_id,
            )

            try:
                await self._moderation.apply_restriction(tenant_id, user_id, note)
            except Exception as e:
                log.error("case_restriction_failed", case_id=case.id, error=str(e))

            case = await self._open_thread(case)
            await self._notify_created(case, detection_event_id)
            return case

    async def restore_restriction(
        self, tenant_id: str, user_id: str
    ) -> VerificationCase | None:
        """Re-apply the restriction when a user with an active case rejoins.

        The restriction cannot be applied while the user is away from the
        tenant, so it is applied here instead. Failures are logged.
        """
        async with self._locks.hold((tenant_id, user_id)):
            active = await self._cases.get_active(tenant_id, user_id)
            if active is None:
                return None
            try:
                await self._moderation.apply_restriction(
                    tenant_id, user_id, f"Verification case {active.id}: rejoined"
                )
            except Exception as e:
                log.error("case_restriction_restore_failed", case_id=active.id, error=str(e))
            else:
                log.info("case_restriction_restored", case_id=active.id)
            return active

    async def _link_event(
        self, case: VerificationCase, detection_event_id: str | None
    ) -> VerificationCase:
        if not detection_event_id or detection_event_id in case.linked_detection_event_ids:
            return case
        updated = case.copy()
        updated.linked_detection_event_ids.append(detection_event_id)
        updated.updated_at = self._now()
        try:
            updated = await self._cases.update(updated)
        except Exception as e:
            log.exception("case_link_failed", case_id=case.id)
            raise CasePersistenceError(case.id, e) from e
        log.info("case_event_linked", case_id=case.id, detection_event_id=detection_event_id)
        return updated

    async def _open_thread(self, case: VerificationCase) -> VerificationCase:
        if self._threads is None:
            return case
        try:
            thread_ref = await self._threads.create(case)
        except Exception as e:
            log.error("case_thread_create_failed", case_id=case.id, error=str(e))
            return case
        if not thread_ref:
            return case
        updated = case.copy()
        updated.thread_ref = thread_ref
        updated.updated_at = self._now()
        try:
            return await self._cases.update(updated)
        except Exception as e:
            log.error("case_thread_attach_failed", case_id=case.id, error=str(e))
            return case

    # ------------------------------------------------------------------
    # Moderator actions
    # ------------------------------------------------------------------

    async def verify(
        self, case_id: str, actor_id: str, note: str | None = None
    ) -> VerificationCase:
        """Clear the user: lift the restriction and close the thread."""
        return await self._transition(case_id, CaseAction.VERIFY, actor_id, note)

    async def reject(
        self, case_id: str, actor_id: str, note: str | None = None
    ) -> VerificationCase:
        """Ban the user and close the thread."""
        return await self._transition(case_id, CaseAction.REJECT, actor_id, note)

    async def reopen(
        self, case_id: str, actor_id: str, note: str | None = None
    ) -> VerificationCase:
        """Restrict the user again and reopen the thread."""
        return await self._transition(case_id, CaseAction.REOPEN, actor_id, note)

    async def attach_thread(self, case_id: str, thread_ref: str) -> VerificationCase:
        """Set the case's thread. Only legal while the case is active."""
        key = await self._key_for(case_id)
        async with self._locks.hold(key):
            case = await self.get_case(case_id)
            if not case.is_active:
                raise IllegalTransitionError(case_id, CaseAction.ATTACH_THREAD, case.status)
            updated = case.copy()
            updated.thread_ref = thread_ref
            updated.updated_at = self._now()
            try:
                updated = await self._cases.update(updated)
            except Exception as e:
                log.exception("case_update_failed", case_id=case_id)
                raise CasePersistenceError(case_id, e) from e
            log.info("case_thread_attached", case_id=case_id, thread_ref=thread_ref)
            return updated

    async def _key_for(self, case_id: str) -> tuple[str, str]:
        case = await self.get_case(case_id)
        return case.tenant_id, case.user_id

    async def _transition(
        self, case_id: str, action: CaseAction, actor_id: str, note: str | None
    ) -> VerificationCase:
        allowed, target = TRANSITIONS[action]
        key = await self._key_for(case_id)
        async with self._locks.hold(key):
            # Re-read under the lock; another action may have landed first
            case = await self.get_case(case_id)
            if case.status not in allowed:
                raise IllegalTransitionError(case_id, action, case.status)
            if action == CaseAction.REOPEN:
                other = await self._cases.get_active(case.tenant_id, case.user_id)
                if other is not None and other.id != case.id:
                    raise IllegalTransitionError(
                        case_id,
                        action,
                        case.status,
                        detail=f"user already has active case {other.id}",
                    )

            await self._apply_moderation(action, case, actor_id)
            await self._update_thread(action, case)

            previous = case.status
            updated = case.copy()
            updated.status = target
            updated.updated_at = self._now()
            updated.history.append(CaseHistoryEntry(target, actor_id, note, updated.updated_at))
            try:
                updated = await self._cases.update(updated)
            except Exception as e:
                log.exception("case_update_failed", case_id=case_id, action=action.value)
                raise CasePersistenceError(case_id, e) from e

            log.info(
                "case_transitioned",
                case_id=case_id,
                action=action.value,
                previous_status=previous.value,
                status=target.value,
                actor_id=actor_id,
            )
            await self._notify_transitioned(updated, previous, actor_id)
            return updated

    async def _apply_moderation(
        self, action: CaseAction, case: VerificationCase, actor_id: str
    ) -> None:
        reason = f"Verification case {case.id}: {action.value} by {actor_id}"
        try:
            if action == CaseAction.VERIFY:
                await self._moderation.remove_restriction(case.tenant_id, case.user_id, reason)
            elif action == CaseAction.REJECT:
                await self._moderation.ban(case.tenant_id, case.user_id, reason)
            elif action == CaseAction.REOPEN:
                await self._moderation.apply_restriction(case.tenant_id, case.user_id, reason)
        except GatekeeperError:
            raise
        except Exception as e:
            log.error(
                "case_moderation_failed",
                case_id=case.id,
                action=action.value,
                error=str(e),
            )
            raise ModerationActionError(action.value, case.tenant_id, case.user_id, e) from e

    async def _update_thread(self, action: CaseAction, case: VerificationCase) -> None:
        if self._threads is None or not case.thread_ref:
            return
        try:
            if action == CaseAction.REOPEN:
                await self._threads.unlock_and_unarchive(case.tenant_id, case.thread_ref)
            else:
                await self._threads.lock_and_archive(case.tenant_id, case.thread_ref)
        except Exception as e:
            log.warning(
                "case_thread_update_failed",
                case_id=case.id,
                thread_ref=case.thread_ref,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _notify_created(self, case: VerificationCase, detection_event_id: str | None) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.on_case_created(case, detection_event_id)
        except Exception as e:
            log.warning("case_notification_failed", case_id=case.id, error=str(e))

    async def _notify_transitioned(
        self, case: VerificationCase, previous: CaseStatus, actor_id: str
    ) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.on_case_transitioned(case, previous, actor_id)
        except Exception as e:
            log.warning("case_notification_failed", case_id=case.id, error=str(e))
