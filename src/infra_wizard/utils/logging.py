from __future__ import annotations

import logging
import sys
from collections.abc import Iterable, MutableMapping
from typing import Any, cast

import structlog

REDACTED = "***"

# Event keys whose values must never reach a log sink.
SECRET_KEYS = frozenset(
    {
        "secret_access_key",
        "secretAccessKey",
        "session_token",
        "sessionToken",
        "access_token",
        "accessToken",
        "password",
        "token",
    }
)


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor that masks values stored under :data:`SECRET_KEYS`."""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def mask(text: str, secrets: Iterable[str | None]) -> str:
    """Replace every non-empty secret occurring in *text* with ``***``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def configure_logging(level: str = "INFO", json: bool = True) -> None:
    """Configure structlog for infra-wizard.

    In production (json=True) uses JSONRenderer for machine-parseable output.
    In development (json=False) uses ConsoleRenderer for human-readable output.

    Args:
        level: Standard logging level string, e.g. "DEBUG", "INFO", "WARNING".
        json: If True, render log entries as JSON. If False, use coloured console output.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # uvicorn installs its own handlers; route them through the structured one.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a named structlog logger."""
    return cast(structlog.BoundLogger, structlog.get_logger(name))
