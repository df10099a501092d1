"""Per-tenant heuristic settings with global defaults.

Typical lifecycle::

    provider = TenantSettingsManager(settings, store)
    await provider.initialize()

    # Fast synchronous reads (never blocks on storage)
    effective = provider.get_heuristic_settings("guild-1")

    # Async, validated writes
    await provider.update_heuristic_settings("guild-1", {"message_threshold": 8})

Stored values are re-validated on every read. A stored field that no longer
passes validation is replaced by the global default instead of failing the
read, while writes with an invalid field are rejected outright.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from gatekeeper.config import (
    MAX_MESSAGE_THRESHOLD,
    MAX_SUSPICIOUS_KEYWORDS,
    MAX_TIME_WINDOW_MS,
    MIN_MESSAGE_THRESHOLD,
    MIN_TIME_WINDOW_MS,
)
from gatekeeper.errors import InvalidSettingsError
from gatekeeper.locks import KeyedLock
from gatekeeper.logging import get_logger

if TYPE_CHECKING:
    from gatekeeper.config import Settings
    from gatekeeper.storage.base import TenantSettingsStore

log = get_logger("gatekeeper.detection.settings")


def normalize_keywords(value: Any) -> list[str]:
    """Trim, lower-case and de-duplicate a keyword list, preserving order.

    Raises:
        ValueError: If ``value`` is not a list of strings or is too long.
    """
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ValueError("suspicious_keywords must be a list of strings")
    keywords: list[str] = []
    seen: set[str] = set()
    for raw in value:
        if not isinstance(raw, str):
            raise ValueError(f"suspicious_keywords entries must be strings, got: {raw!r}")
        keyword = raw.strip().lower()
        if keyword and keyword not in seen:
            seen.add(keyword)
            keywords.append(keyword)
    if len(keywords) > MAX_SUSPICIOUS_KEYWORDS:
        raise ValueError(
            f"suspicious_keywords may hold at most {MAX_SUSPICIOUS_KEYWORDS} entries, "
            f"got: {len(keywords)}"
        )
    return keywords


class HeuristicSettings(BaseModel):
    """Effective heuristic configuration for one tenant."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    message_threshold: int
    time_window_ms: int
    suspicious_keywords: list[str]

    @field_validator("message_threshold", mode="before")
    @classmethod
    def validate_threshold(cls, v: Any) -> int:
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError(f"message_threshold must be an integer, got: {v!r}")
        if not MIN_MESSAGE_THRESHOLD <= v <= MAX_MESSAGE_THRESHOLD:
            raise ValueError(
                f"message_threshold must be between {MIN_MESSAGE_THRESHOLD} "
                f"and {MAX_MESSAGE_THRESHOLD}, got: {v}"
            )
        return v

    @field_validator("time_window_ms", mode="before")
    @classmethod
    def validate_time_window(cls, v: Any) -> int:
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError(f"time_window_ms must be an integer, got: {v!r}")
        if not MIN_TIME_WINDOW_MS <= v <= MAX_TIME_WINDOW_MS:
            raise ValueError(
                f"time_window_ms must be between {MIN_TIME_WINDOW_MS} "
                f"and {MAX_TIME_WINDOW_MS}, got: {v}"
            )
        return v

    @field_validator("suspicious_keywords", mode="before")
    @classmethod
    def validate_keywords(cls, v: Any) -> list[str]:
        return normalize_keywords(v)


_FIELDS = tuple(HeuristicSettings.model_fields)


class ConfigProvider(Protocol):
    """Source of effective per-tenant heuristic settings."""

    def get_heuristic_settings(self, tenant_id: str) -> HeuristicSettings:
        """Return the effective settings for ``tenant_id`` (never raises)."""
        ...

    async def update_heuristic_settings(
        self, tenant_id: str, partial: Mapping[str, Any]
    ) -> HeuristicSettings:
        """Validate, persist and return the merged settings."""
        ...


class TenantSettingsManager:
    """In-memory-cached, store-backed tenant settings.

    All *reads* go through the cache and are synchronous. All *writes*
    persist to the store first and then update the cache.
    """

    def __init__(self, settings: Settings, store: TenantSettingsStore | None = None) -> None:
        self._defaults = HeuristicSettings(
            message_threshold=settings.default_message_threshold,
            time_window_ms=settings.default_time_window_ms,
            suspicious_keywords=settings.default_suspicious_keywords,
        )
        self._store = store
        self._cache: dict[str, dict[str, Any]] = {}
        self._locks = KeyedLock()

    @property
    def defaults(self) -> HeuristicSettings:
        return self._defaults

    async def initialize(self) -> None:
        """Pre-load every stored tenant override into the cache."""
        await self.refresh()
        log.info("tenant_settings.initialized", cached_tenants=len(self._cache))

    async def refresh(self) -> None:
        """Reload the cache from the store."""
        if self._store is None:
            return
        stored = await self._store.load_all()
        self._cache = {tenant: dict(values) for tenant, values in stored.items()}

    def get_heuristic_settings(self, tenant_id: str) -> HeuristicSettings:
        """Return effective settings, falling back to defaults field by field."""
        stored = self._cache.get(tenant_id)
        if not stored:
            return self._defaults

        effective = self._defaults.model_dump()
        for name in _FIELDS:
            if name not in stored:
                continue
            candidate = {**effective, name: stored[name]}
            try:
                effective = HeuristicSettings.model_validate(candidate).model_dump()
            except ValidationError:
                log.debug(
                    "tenant_settings.invalid_stored_value",
                    tenant_id=tenant_id,
                    field=name,
                )
        return HeuristicSettings.model_validate(effective)

    async def update_heuristic_settings(
        self, tenant_id: str, partial: Mapping[str, Any]
    ) -> HeuristicSettings:
        """Merge ``partial`` into the tenant's settings and persist them.

        Raises:
            InvalidSettingsError: If ``partial`` holds unknown keys or any
                value fails validation. Nothing is persisted in that case.
        """
        unknown = sorted(set(partial) - set(_FIELDS))
        if unknown:
            raise InvalidSettingsError(
                f"Unknown heuristic settings: {', '.join(unknown)}",
                errors=[f"{name}: unknown setting" for name in unknown],
            )

        # Concurrent updates for one tenant merge one after another
        async with self._locks.hold(tenant_id):
            merged = {**self.get_heuristic_settings(tenant_id).model_dump(), **partial}
            try:
                updated = HeuristicSettings.model_validate(merged)
            except ValidationError as e:
                errors = [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ]
                raise InvalidSettingsError("Invalid heuristic settings", errors=errors) from e

            values = updated.model_dump()
            if self._store is not None:
                await self._store.save(tenant_id, values)
            self._cache[tenant_id] = values
        log.info(
            "tenant_settings.updated",
            tenant_id=tenant_id,
            fields=sorted(partial),
        )
        return updated
