"""PostgreSQL repositories over a shared ``asyncpg`` pool.

:class:`PostgresStorage` owns the pool and the idempotent schema; the
repository classes only read from and write to those tables.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg  # type: ignore[import-untyped,import-not-found]

from gatekeeper.detection.models import (
    DetectionEvent,
    DetectionKind,
    DetectionLabel,
    MessageRef,
)
from gatekeeper.logging import get_logger
from gatekeeper.verification.models import CaseHistoryEntry, CaseStatus, VerificationCase

log = get_logger("gatekeeper.storage.postgres")

# ---------------------------------------------------------------------------
# SQL schema
# ---------------------------------------------------------------------------
SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS detection_events (
    id                TEXT         PRIMARY KEY,
    tenant_id         TEXT         NOT NULL,
    user_id           TEXT         NOT NULL,
    kind              TEXT         NOT NULL,
    label             TEXT         NOT NULL,
    confidence        DOUBLE PRECISION NOT NULL,
    reasons           JSONB        NOT NULL DEFAULT '[]',
    used_classifier   BOOLEAN      NOT NULL DEFAULT FALSE,
    trigger_content   TEXT,
    channel_id        TEXT,
    message_id        TEXT,
    detected_at       TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_detection_events_key
    ON detection_events (tenant_id, user_id, detected_at DESC);

CREATE TABLE IF NOT EXISTS verification_cases (
    id                          TEXT         PRIMARY KEY,
    tenant_id                   TEXT         NOT NULL,
    user_id                     TEXT         NOT NULL,
    status                      TEXT         NOT NULL,
    thread_ref                  TEXT,
    linked_detection_event_ids  JSONB        NOT NULL DEFAULT '[]',
    history                     JSONB        NOT NULL DEFAULT '[]',
    created_at                  TIMESTAMPTZ  NOT NULL DEFAULT now(),
    updated_at                  TIMESTAMPTZ  NOT NULL DEFAULT now()
);

-- At most one non-terminal case per (tenant, user)
CREATE UNIQUE INDEX IF NOT EXISTS idx_verification_cases_active
    ON verification_cases (tenant_id, user_id)
    WHERE status IN ('Pending', 'Reopened');

CREATE INDEX IF NOT EXISTS idx_verification_cases_key
    ON verification_cases (tenant_id, user_id, created_at);

CREATE TABLE IF NOT EXISTS tenant_settings (
    tenant_id            TEXT         PRIMARY KEY,
    message_threshold    INTEGER,
    time_window_ms       INTEGER,
    suspicious_keywords  JSONB,
    updated_at           TIMESTAMPTZ  NOT NULL DEFAULT now()
);
"""


def _json_value(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _row_to_event(row: asyncpg.Record) -> DetectionEvent:
    message_ref = None
    if row["channel_id"] is not None and row["message_id"] is not None:
        message_ref = MessageRef(channel_id=row["channel_id"], message_id=row["message_id"])
    return DetectionEvent(
        id=row["id"],
        tenant_id=row["tenant_id"],
        user_id=row["user_id"],
        kind=DetectionKind(row["kind"]),
        label=DetectionLabel(row["label"]),
        confidence=row["confidence"],
        reasons=tuple(_json_value(row["reasons"]) or ()),
        used_classifier=row["used_classifier"],
        trigger_content=row["trigger_content"],
        message_ref=message_ref,
        detected_at=row["detected_at"],
    )


def _row_to_case(row: asyncpg.Record) -> VerificationCase:
    return VerificationCase(
        id=row["id"],
        tenant_id=row["tenant_id"],
        user_id=row["user_id"],
        status=CaseStatus(row["status"]),
        thread_ref=row["thread_ref"],
        linked_detection_event_ids=list(_json_value(row["linked_detection_event_ids"]) or []),
        history=[CaseHistoryEntry.from_dict(h) for h in _json_value(row["history"]) or []],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresStorage:
    """Connection pool and schema owner."""

    def __init__(self, dsn: str | None = None, pool: asyncpg.Pool | None = None) -> None:
        if dsn is None and pool is None:
            raise ValueError("Either dsn or pool must be provided")
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = pool
        self._owns_pool = pool is None

    @property
    def pool(self) -> asyncpg.Pool:
        """Return the connection pool, raising if not yet initialised."""
        assert self._pool is not None, "Storage not initialized; call initialize() first"
        return self._pool

    async def initialize(self) -> None:
        """Create the connection pool (if needed) and the tables."""
        if self._pool is None:
            if self._dsn is None:
                raise RuntimeError("Cannot initialize without dsn or pool")
            self._pool = await asyncpg.create_pool(dsn=self._dsn)
            log.info("postgres_pool_created")
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        log.info("postgres_storage_initialized")

    async def close(self) -> None:
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            self._pool = None
            log.info("postgres_pool_closed")


class PostgresEventRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create(self, event: DetectionEvent) -> str:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO detection_events
                    (id, tenant_id, user_id, kind, label, confidence, reasons,
                     used_classifier, trigger_content, channel_id, message_id, detected_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12)
                """,
                event.id,
                event.tenant_id,
                event.user_id,
                event.kind.value,
                event.label.value,
                event.confidence,
                json.dumps(list(event.reasons)),
                event.used_classifier,
                event.trigger_content,
                event.message_ref.channel_id if event.message_ref else None,
                event.message_ref.message_id if event.message_ref else None,
                event.detected_at,
            )
        log.debug("detection_event_stored", event_id=event.id, kind=event.kind.value)
        return event.id

    async def find_recent(
        self, tenant_id: str, user_id: str, since: datetime
    ) -> list[DetectionEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM detection_events
                WHERE tenant_id = $1 AND user_id = $2 AND detected_at >= $3
                ORDER BY detected_at DESC
                """,
                tenant_id,
                user_id,
                since,
            )
        return [_row_to_event(r) for r in rows]


class PostgresCaseRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, case_id: str) -> VerificationCase | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM verification_cases WHERE id = $1", case_id)
        return _row_to_case(row) if row else None

    async def get_active(self, tenant_id: str, user_id: str) -> VerificationCase | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM verification_cases
                WHERE tenant_id = $1 AND user_id = $2
                  AND status IN ('Pending', 'Reopened')
                """,
                tenant_id,
                user_id,
            )
        return _row_to_case(row) if row else None

    async def list_for_user(self, tenant_id: str, user_id: str) -> list[VerificationCase]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM verification_cases
                WHERE tenant_id = $1 AND user_id = $2
                ORDER BY created_at ASC
                """,
                tenant_id,
                user_id,
            )
        return [_row_to_case(r) for r in rows]

    async def create(self, case: VerificationCase) -> VerificationCase:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO verification_cases
                    (id, tenant_id, user_id, status, thread_ref,
                     linked_detection_event_ids, history, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9)
                RETURNING *
                """,
                case.id,
                case.tenant_id,
                case.user_id,
                case.status.value,
                case.thread_ref,
                json.dumps(case.linked_detection_event_ids),
                json.dumps([h.to_dict() for h in case.history]),
                case.created_at,
                case.updated_at,
            )
        return _row_to_case(row)

    async def update(self, case: VerificationCase) -> VerificationCase:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE verification_cases
                SET status = $2,
                    thread_ref = $3,
                    linked_detection_event_ids = $4::jsonb,
                    history = $5::jsonb,
                    updated_at = $6
                WHERE id = $1
                RETURNING *
                """,
                case.id,
                case.status.value,
                case.thread_ref,
                json.dumps(case.linked_detection_event_ids),
                json.dumps([h.to_dict() for h in case.history]),
                case.updated_at,
            )
        if row is None:
            raise KeyError(case.id)
        return _row_to_case(row)


class PostgresTenantSettingsStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def load_all(self) -> dict[str, dict[str, Any]]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM tenant_settings")
        result: dict[str, dict[str, Any]] = {}
        for row in rows:
            values: dict[str, Any] = {}
            if row["message_threshold"] is not None:
                values["message_threshold"] = row["message_threshold"]
            if row["time_window_ms"] is not None:
                values["time_window_ms"] = row["time_window_ms"]
            if row["suspicious_keywords"] is not None:
                values["suspicious_keywords"] = _json_value(row["suspicious_keywords"])
            result[row["tenant_id"]] = values
        return result

    async def save(self, tenant_id: str, values: dict[str, Any]) -> None:
        keywords = values.get("suspicious_keywords")
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO tenant_settings
                    (tenant_id, message_threshold, time_window_ms, suspicious_keywords)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (tenant_id) DO UPDATE
                SET message_threshold = EXCLUDED.message_threshold,
                    time_window_ms = EXCLUDED.time_window_ms,
                    suspicious_keywords = EXCLUDED.suspicious_keywords,
                    updated_at = now()
                """,
                tenant_id,
                values.get("message_threshold"),
                values.get("time_window_ms"),
                json.dumps(keywords) if keywords is not None else None,
            )
        log.debug("tenant_settings_stored", tenant_id=tenant_id)
