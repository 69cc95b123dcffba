"""Structured JSON logging shared by the mirror's entry points and library modules."""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog

DEFAULT_LOG_LEVEL = "INFO"
SERVICE_NAME = "waifu-mirror"

_configured = False
_service = SERVICE_NAME


def _add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", _service)
    return event_dict


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv("LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, name, logging.INFO)


def configure_logging(
    level: Optional[str] = None,
    force: bool = False,
    service: Optional[str] = None,
) -> None:
    """Route stdlib logging and structlog through one JSON renderer.

    Library modules call this implicitly via :func:`get_logger` at import
    time, so only the first call takes effect unless ``force`` is set. Entry
    points pass ``force=True`` to apply the configured level and the
    ``service`` name stamped on every event.
    """

    global _configured, _service
    if _configured and not force:
        return

    if service:
        _service = service

    numeric = _resolve_level(level)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric, force=force)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Attach ``values`` to every event logged in this task until exit."""

    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    configure_logging()
    logger = structlog.get_logger(name)
    return logger.bind(**initial_values) if initial_values else logger


__all__ = ["DEFAULT_LOG_LEVEL", "configure_logging", "get_logger", "log_context"]
