"""
Structured logging for the reconciliation service.

Every event is one JSON object on stdout. The request id and the
``session_id``/``checkout_ref`` of the payment being handled travel in
contextvars, so the callback, poll and sweep lines for one session can be
joined on those keys.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from stk_reconciliation.config import get_settings

NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite", "asyncio")


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp the service name, environment and Daraja environment on each event."""
    settings = get_settings()
    event_dict.setdefault("app_name", settings.app_name)
    event_dict.setdefault("app_env", settings.app_env)
    event_dict.setdefault("mpesa_environment", settings.mpesa_environment)
    return event_dict


@contextmanager
def session_context(
    session_id: Optional[str] = None, checkout_ref: Optional[str] = None
) -> Iterator[None]:
    """
    Bind the payment being handled to every log event in the block.

    Unset ids are left out; nested blocks restore the outer values on exit.
    """
    bound = {
        key: value
        for key, value in (("session_id", session_id), ("checkout_ref", checkout_ref))
        if value
    }
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def _processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_app_context,
        structlog.processors.JSONRenderer(),
    ]


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"timestamp": "@timestamp", "name": "logger"},
        )
    )
    return handler


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once: the root handlers are replaced, not added to.
    """
    settings = get_settings()

    structlog.configure(
        processors=_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(_json_handler())

    # Per-request HTTP and SQL chatter drowns out payment events
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        mpesa_environment=settings.mpesa_environment,
    )
