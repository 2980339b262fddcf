#!/usr/bin/env python3
"""
Structured Logging Module using structlog

This module provides production-grade structured logging with:
- Tenant and operation correlation through context variables
- Stage/sub-stage codes per component (TR, RL, CP, BQ, C, CI, SV)
- JSON formatting for log aggregation
- Automatic redaction of credential material and e-mail addresses

Architectural Decision: structlog for production logging
- Context-aware logging with automatic field injection
- JSON output for log aggregation
- Async-safe: context variables follow asyncio tasks

Author: System Architect
Date: 2026-10-19
"""

import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from structlog.types import EventDict, WrappedLogger

# Context variables for correlation (copied into every asyncio task)
tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)
op_id_ctx: ContextVar[str | None] = ContextVar("op_id", default=None)

_SECRET_FIELDS = frozenset({"private_key", "credentials", "token", "access_token", "client_secret"})
_EMAIL_RE = re.compile(r"\b[\w.-]+@[\w.-]+\.\w+\b")
_PRIVATE_KEY_RE = re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S)


def add_correlation_ids(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add tenant and operation ids from context variables.

    STAGE-L.1: Correlation injection
    """
    tenant_id = tenant_id_ctx.get()
    if tenant_id and "tenant_id" not in event_dict:
        event_dict["tenant_id"] = tenant_id
    op_id = op_id_ctx.get()
    if op_id and "op_id" not in event_dict:
        event_dict["op_id"] = op_id
    return event_dict


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO timestamp to log event.

    STAGE-L.2: Timestamp injection
    """
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact credential material from log events.

    STAGE-L.3: Secret redaction

    Redacted:
    - Values of credential-like fields (private_key, token, ...) -> [REDACTED]
    - PEM private keys inside messages -> [REDACTED]
    - E-mail addresses (service accounts, users) -> [EMAIL]
    """
    for field in _SECRET_FIELDS.intersection(event_dict):
        event_dict[field] = "[REDACTED]"

    message = event_dict.get("event", "")
    if isinstance(message, str):
        message = _PRIVATE_KEY_RE.sub("[REDACTED]", message)
        message = _EMAIL_RE.sub("[EMAIL]", message)
        event_dict["event"] = message

    return event_dict


def add_log_level_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Upper-case the log level.

    STAGE-L.4: Log level injection
    """
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Setup structured logging with structlog.

    STAGE-L: Logging initialization

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
    """
    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper())
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_correlation_ids,
            add_timestamp,
            structlog.stdlib.add_log_level,
            add_log_level_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("message", key="value", stage="BQ.1")
    """
    return structlog.get_logger(name)


def bind_log_context(tenant_id: str | None = None, op_id: str | None = None) -> None:
    """
    Set correlation ids for the current task.

    Called by the service facade at the start of every operation and by the
    batch queue around each drained operation.
    """
    if tenant_id is not None:
        tenant_id_ctx.set(tenant_id)
    if op_id is not None:
        op_id_ctx.set(op_id)


def get_log_context() -> dict[str, str | None]:
    """Return the current correlation ids."""
    return {"tenant_id": tenant_id_ctx.get(), "op_id": op_id_ctx.get()}


def clear_log_context() -> None:
    """Clear correlation ids from the current context."""
    tenant_id_ctx.set(None)
    op_id_ctx.set(None)


def log_stage(
    logger: structlog.stdlib.BoundLogger, stage: str, message: str, level: str = "info", **kwargs
) -> None:
    """
    Log a message with stage information.

    Args:
        logger: Logger instance
        stage: Stage identifier (e.g., "BQ.3", "C.1")
        message: Log message
        level: Log level (debug, info, warning, error, critical)
        **kwargs: Additional fields to log

    Usage:
        log_stage(logger, "C.1", "Cache hit", cache_key="t1:rows:USERS:ab12")
    """
    log_func = getattr(logger, level.lower())
    log_func(message, stage=stage, **kwargs)
