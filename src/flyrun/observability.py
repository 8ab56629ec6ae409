"""Structured logging setup with correlation scopes and secret redaction."""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import IO, Any, Final

import structlog

from flyrun.config import RunnerConfig

REDACTED_VALUE: Final[str] = "***REDACTED***"
LOGGER_NAME: Final[str] = "flyrun"

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")


def configure_logging(
    config: RunnerConfig | None = None,
    *,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Route ``flyrun`` structlog events through a stdlib handler and return its logger."""

    cfg = config if config is not None else RunnerConfig()
    level = logging.getLevelName(cfg.log_level)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger = logging.getLogger(LOGGER_NAME)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False

    renderer: Any
    if cfg.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_event,
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    return logger


def reset_logging() -> None:
    """Drop handlers installed by ``configure_logging`` and restore structlog defaults."""

    logger = logging.getLogger(LOGGER_NAME)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.propagate = True
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@contextmanager
def run_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields (``checker``, ``run_id``) for log events in scope."""

    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def redact_text(text: str) -> str:
    """Mask secret assignments and bearer tokens in free text."""

    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {REDACTED_VALUE}", text)
    return _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{REDACTED_VALUE}", redacted
    )


def redact_event(
    logger: object,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor applying ``redact_text`` to string values."""

    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            event_dict[key] = redact_text(value)
    return event_dict


__all__ = [
    "LOGGER_NAME",
    "REDACTED_VALUE",
    "configure_logging",
    "redact_event",
    "redact_text",
    "reset_logging",
    "run_scope",
]
