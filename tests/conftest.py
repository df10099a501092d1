"""Pytest fixtures for Gatekeeper tests."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from gatekeeper.config import Settings
from gatekeeper.detection.heuristics import HeuristicEngine
from gatekeeper.detection.settings import TenantSettingsManager
from gatekeeper.storage.memory import (
    InMemoryCaseRepository,
    InMemoryEventRepository,
    InMemoryTenantSettingsStore,
)
from gatekeeper.verification.manager import VerificationCaseManager

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: float = 1_000_000.0) -> None:
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Make sure cached settings never leak between runs."""
    from gatekeeper.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Settings with built-in defaults, ignoring any local .env file."""
    return Settings(_env_file=None, environment="test", log_level="DEBUG")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings_store() -> InMemoryTenantSettingsStore:
    return InMemoryTenantSettingsStore()


@pytest.fixture
def tenant_settings(
    settings: Settings, settings_store: InMemoryTenantSettingsStore
) -> TenantSettingsManager:
    return TenantSettingsManager(settings, settings_store)


@pytest.fixture
def heuristics(tenant_settings: TenantSettingsManager, clock: FakeClock) -> HeuristicEngine:
    return HeuristicEngine(tenant_settings, clock=clock)


@pytest.fixture
def event_repo() -> InMemoryEventRepository:
    return InMemoryEventRepository()


@pytest.fixture
def case_repo() -> InMemoryCaseRepository:
    return InMemoryCaseRepository()


@pytest.fixture
def moderation() -> AsyncMock:
    """Mock ModerationActionService."""
    return AsyncMock()


@pytest.fixture
def threads() -> AsyncMock:
    """Mock ThreadManager that creates ``thread-1``."""
    mock = AsyncMock()
    mock.create = AsyncMock(return_value="thread-1")
    return mock


@pytest.fixture
def notifier() -> AsyncMock:
    """Mock Notifier."""
    return AsyncMock()


@pytest.fixture
def case_manager(
    case_repo: InMemoryCaseRepository,
    moderation: AsyncMock,
    threads: AsyncMock,
    notifier: AsyncMock,
) -> VerificationCaseManager:
    return VerificationCaseManager(case_repo, moderation, threads=threads, notifier=notifier)
