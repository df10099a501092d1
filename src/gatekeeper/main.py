"""Main entry point for Gatekeeper."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta

import discord

from gatekeeper.config import Settings, get_settings
from gatekeeper.detection.classifier import OpenAIProfileClassifier
from gatekeeper.detection.heuristics import HeuristicEngine
from gatekeeper.detection.orchestrator import DetectionOrchestrator
from gatekeeper.detection.settings import TenantSettingsManager
from gatekeeper.discord.actions import DiscordModerationService
from gatekeeper.discord.bot import GatekeeperBot
from gatekeeper.discord.threads import DiscordThreadManager
from gatekeeper.dispatch import EventDispatcher
from gatekeeper.logging import get_logger, setup_logging
from gatekeeper.notifications import DiscordNotifier, NotificationDispatcher
from gatekeeper.storage.base import CaseRepository, EventRepository, TenantSettingsStore
from gatekeeper.storage.memory import (
    InMemoryCaseRepository,
    InMemoryEventRepository,
    InMemoryTenantSettingsStore,
)
from gatekeeper.storage.postgres import (
    PostgresCaseRepository,
    PostgresEventRepository,
    PostgresStorage,
    PostgresTenantSettingsStore,
)
from gatekeeper.verification.manager import VerificationCaseManager

log = get_logger("gatekeeper.main")


@dataclass
class Services:
    """Everything the bot needs, wired once at start-up."""

    tenant_settings: TenantSettingsManager
    heuristics: HeuristicEngine
    orchestrator: DetectionOrchestrator
    cases: VerificationCaseManager
    notifications: NotificationDispatcher
    dispatcher: EventDispatcher
    classifier: OpenAIProfileClassifier | None = None
    storage: PostgresStorage | None = None

    async def close(self) -> None:
        if self.classifier is not None:
            await self.classifier.close()
        if self.storage is not None:
            await self.storage.close()


async def _build_repositories(
    settings: Settings,
) -> tuple[EventRepository, CaseRepository, TenantSettingsStore, PostgresStorage | None]:
    if settings.postgres_dsn is None:
        log.warning("using_in_memory_storage", reason="POSTGRES_DSN not set")
        return (
            InMemoryEventRepository(
                retention=timedelta(hours=settings.classifier_lookback_hours)
            ),
            InMemoryCaseRepository(),
            InMemoryTenantSettingsStore(),
            None,
        )

    storage = PostgresStorage(dsn=settings.postgres_dsn)
    await storage.initialize()
    return (
        PostgresEventRepository(storage.pool),
        PostgresCaseRepository(storage.pool),
        PostgresTenantSettingsStore(storage.pool),
        storage,
    )


def _build_classifier(settings: Settings) -> OpenAIProfileClassifier | None:
    if not settings.classifier_enabled:
        log.info("classifier_disabled", reason="CLASSIFIER_ENABLED is false")
        return None
    if settings.openai_api_key is None:
        log.warning("classifier_disabled", reason="OPENAI_API_KEY not set")
        return None
    return OpenAIProfileClassifier(
        api_key=settings.openai_api_key.get_secret_value(),
        model=settings.openai_model,
    )


async def build_services(settings: Settings, client: discord.Client) -> Services:
    """Compose the detection and verification core for ``client``."""
    events, case_repo, settings_store, storage = await _build_repositories(settings)

    tenant_settings = TenantSettingsManager(settings, settings_store)
    await tenant_settings.initialize()

    heuristics = HeuristicEngine(
        tenant_settings,
        sweep_interval_seconds=settings.rate_window_sweep_interval_seconds,
    )
    classifier = _build_classifier(settings)
    orchestrator = DetectionOrchestrator.from_settings(settings, heuristics, events, classifier)

    notifications = NotificationDispatcher()
    notifications.register_channel(
        DiscordNotifier(client, admin_channel_id=settings.admin_channel_id)
    )

    cases = VerificationCaseManager(
        case_repo,
        DiscordModerationService(client, settings.restricted_role_name),
        threads=DiscordThreadManager(client, settings.verification_channel_name),
        notifier=notifications,
    )

    return Services(
        tenant_settings=tenant_settings,
        heuristics=heuristics,
        orchestrator=orchestrator,
        cases=cases,
        notifications=notifications,
        dispatcher=EventDispatcher(orchestrator, cases),
        classifier=classifier,
        storage=storage,
    )


async def main() -> None:
    """Main application entry point."""
    settings = get_settings()
    setup_logging(settings)
    log.info(
        "starting_gatekeeper",
        environment=settings.environment,
        classifier_enabled=settings.classifier_enabled,
        postgres=settings.postgres_dsn is not None,
    )

    if settings.discord_token is None:
        log.error("discord_token_missing")
        raise SystemExit(1)

    bot = GatekeeperBot(allow_bot_messages=settings.allow_bot_messages)
    services = await build_services(settings, bot)
    bot.set_dispatcher(services.dispatcher)
    log.info("services_initialized")

    try:
        await bot.start(settings.discord_token.get_secret_value())
    except KeyboardInterrupt:
        log.info("shutdown_requested")
    finally:
        await bot.close()
        await services.close()
        log.info("gatekeeper_stopped")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
