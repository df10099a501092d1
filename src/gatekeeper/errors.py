"""Exception hierarchy for Gatekeeper."""

from __future__ import annotations


class GatekeeperError(Exception):
    """Base exception for all Gatekeeper errors."""

    pass


class InvalidSettingsError(GatekeeperError, ValueError):
    """Raised when a tenant settings update fails validation."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class ClassifierError(GatekeeperError):
    """Raised by classifier adapters when a classification cannot be produced."""

    pass


class CaseNotFoundError(GatekeeperError):
    """Raised when a verification case id does not exist."""

    def __init__(self, case_id: str):
        super().__init__(f"Verification case {case_id} not found")
        self.case_id = case_id


class IllegalTransitionError(GatekeeperError):
    """Raised when a moderator action is not allowed from the case's current status."""

    def __init__(self, case_id: str, action: str, status: str, detail: str | None = None):
        message = f"Cannot {action} case {case_id} while it is {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.case_id = case_id
        self.action = action
        self.status = status


class ModerationActionError(GatekeeperError):
    """Raised when a restriction, unrestriction or ban could not be carried out."""

    def __init__(self, action: str, tenant_id: str, user_id: str, cause: Exception | None = None):
        message = f"Failed to {action} user {user_id} in tenant {tenant_id}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.action = action
        self.tenant_id = tenant_id
        self.user_id = user_id


class CasePersistenceError(GatekeeperError):
    """Raised when a case transition took effect but could not be stored."""

    def __init__(self, case_id: str, cause: Exception | None = None):
        message = f"Failed to persist verification case {case_id}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.case_id = case_id
