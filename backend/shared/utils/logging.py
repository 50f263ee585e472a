"""
Structured logging for the SweatProof services.

structlog sits on top of stdlib logging, so uvicorn and library records go
through the same processor chain. Every line carries the service name and
instance id. Request-scoped fields (request_id, prediction_id, item_id) are
bound with log_context() and ride along via contextvars until the block exits.
"""
from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, MutableMapping, Optional

import structlog
from shared.config import Environment, Settings, get_settings

REDACTED = "[redacted]"

# Keys whose values never reach a log sink.
SECRET_KEYS = frozenset(
    {
        "authorization",
        "bot_private_key",
        "encryption_key",
        "openai_api_key",
        "private_key",
        "redis_url",
    }
)

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "asyncio")


class ServiceContext:
    """
    Stamps service and instance_id onto each event.

    A processor rather than bound contextvars: values bound during startup
    are not visible in tasks the server spawns per request.
    """

    def __init__(self, service: str, instance_id: str, extra: Optional[dict[str, Any]] = None) -> None:
        self._static = {"service": service, "instance_id": instance_id or None, **(extra or {})}

    def __call__(self, logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        for key, value in self._static.items():
            if value is not None:
                event_dict.setdefault(key, value)
        return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def drop_color_message(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    # uvicorn duplicates its message with ANSI codes under this key
    event_dict.pop("color_message", None)
    return event_dict


def build_processors(service_name: str, settings: Settings, extra_context: Optional[dict[str, Any]] = None) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        ServiceContext(service_name, settings.instance_id, extra_context),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        drop_color_message,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(
    service_name: str,
    settings: Optional[Settings] = None,
    extra_context: Optional[dict[str, Any]] = None,
) -> None:
    """
    Configure structured logging for a service.

    Args:
        service_name: api or notifier.
        settings: Defaults to get_settings(); the API passes its container's settings.
        extra_context: Static fields added to every entry.
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    shared_processors = build_processors(service_name, settings, extra_context)

    if settings.environment == Environment.DEV:
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Bind fields to every log line emitted inside the block. None values are skipped."""
    bound = {key: value for key, value in values.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
