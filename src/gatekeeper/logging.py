"""Logging configuration for Gatekeeper.

Every gateway event runs with ``request_id``, ``tenant_id`` and ``user_id``
bound through :func:`bind_event_context`, so all log lines for one detection
or moderator action can be joined up. Message previews in forensic records
can be dropped with ``LOG_MESSAGE_CONTENT=false``.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

if TYPE_CHECKING:
    from gatekeeper.config import Settings

# Event keys that carry user-written message text
_CONTENT_KEYS = ("content_preview", "trigger_content")


def drop_message_content(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Processor that removes message text from an event."""
    for key in _CONTENT_KEYS:
        event_dict.pop(key, None)
    return event_dict


def bind_event_context(tenant_id: str, user_id: str) -> str:
    """Bind the tenant and user of the current event; returns its request id."""
    request_id = str(uuid4())[:12]
    structlog.contextvars.bind_contextvars(
        request_id=request_id, tenant_id=tenant_id, user_id=user_id
    )
    return request_id


def clear_event_context() -> None:
    structlog.contextvars.clear_contextvars()


def setup_logging(settings: Settings) -> None:
    """Configure structured logging with console and file outputs."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    log_to_file = settings.log_to_file

    if log_to_file:
        try:
            Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Continue with console-only logging
            print(f"Warning: Could not create log directory: {e}", file=sys.stderr)
            log_to_file = False

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=[],
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    logging.root.addHandler(console_handler)

    file_handler = None
    if log_to_file:
        try:
            file_handler = RotatingFileHandler(
                filename=settings.log_file_path,
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(log_level)
            logging.root.addHandler(file_handler)
        except OSError as e:
            print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)
            file_handler = None

    context_processors: list[Any] = [structlog.contextvars.merge_contextvars]
    if not settings.log_message_content:
        context_processors.append(drop_message_content)

    structlog.configure(
        processors=[
            *context_processors,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Console: colored in dev, JSON in prod
    console_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            (
                structlog.dev.ConsoleRenderer(colors=True)  # type: ignore[list-item]
                if settings.is_development
                else structlog.processors.JSONRenderer()
            ),
        ]
    )
    console_handler.setFormatter(console_formatter)

    # File: always JSON for easy parsing
    if file_handler:
        file_formatter = structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ]
        )
        file_handler.setFormatter(file_formatter)

    # Reduce noise from third-party packages
    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
