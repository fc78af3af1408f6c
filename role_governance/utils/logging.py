"""
Structured Logging Utilities for the Role Governance Engine

This module configures structlog for the engine and exposes the helpers every
service uses to obtain a bound logger. The engine is a library invoked
in-process by a request-handling layer, so request correlation data is carried
through ``structlog.contextvars`` rather than a framework request object: the
host binds actor/session/network context once per request and every log line
emitted by the permission checker, role change processor and audit service
picks it up automatically.

Key Features:
- Structured JSON logging with Python structlog
- Console rendering for local development
- Context variable binding for request correlation (actor, IP, session)
- Audit event helper producing a consistent ``category=audit`` record shape
"""

import logging
import sys
import uuid
from enum import Enum
from typing import Any, Dict, Optional

import structlog


class LogCategory(Enum):
    """Log categories used for routing and filtering."""
    APPLICATION = "application"
    SECURITY = "security"
    AUDIT = "audit"
    PERFORMANCE = "performance"
    ERROR = "error"


_configured = False


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure structlog processors and the standard library bridge.

    Safe to call more than once; the most recent call wins.

    Args:
        level: Minimum log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines when True, colored console output otherwise
    """
    global _configured

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    _configured = True


def is_configured() -> bool:
    return _configured


def get_logger(name: Optional[str] = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Return a structlog logger bound with the given component name.

    Args:
        name: Logger / component name, usually ``__name__``
        **initial_values: Additional key-value pairs bound to every event
    """
    if name:
        initial_values.setdefault("logger_name", name)
    return structlog.get_logger(**initial_values)


def bind_request_context(
    actor_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    session_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> str:
    """
    Bind request correlation data for the current execution context.

    Returns:
        str: The correlation id in effect (generated when not supplied)
    """
    correlation_id = correlation_id or str(uuid.uuid4())
    values: Dict[str, Any] = {"correlation_id": correlation_id}
    if actor_id:
        values["actor_id"] = actor_id
    if ip_address:
        values["ip_address"] = ip_address
    if user_agent:
        values["user_agent"] = user_agent
    if session_id:
        values["session_id"] = session_id
    structlog.contextvars.bind_contextvars(**values)
    return correlation_id


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def log_audit_event(
    logger: Any,
    event: str,
    action: str,
    subject_user_id: str,
    actor_id: str,
    outcome: str = "success",
    **details: Any,
) -> None:
    """Emit an audit-category event with a consistent field layout."""
    logger.info(
        event,
        category=LogCategory.AUDIT.value,
        action=action,
        subject_user_id=subject_user_id,
        actor_id=actor_id,
        outcome=outcome,
        **details,
    )


def log_security_event(logger: Any, event: str, severity: str, **details: Any) -> None:
    """Emit a security-category warning used for suspicious activity."""
    logger.warning(
        event,
        category=LogCategory.SECURITY.value,
        severity=severity,
        **details,
    )
