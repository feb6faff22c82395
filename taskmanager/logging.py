from __future__ import annotations

import logging
import sys
from typing import Any, Dict

import structlog

REDACTED = "***REDACTED***"
_SENSITIVE_PARTS = ("password", "token", "secret", "hash", "otp", "authorization")
_PASSTHROUGH_KEYS = {"event", "level", "logger", "timestamp"}


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential material before it reaches a renderer."""
    for key in list(event_dict.keys()):
        if key in _PASSTHROUGH_KEYS:
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _SENSITIVE_PARTS):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
