"""structlog setup shared by the API process and ad-hoc jobs such as reconciliation."""

from __future__ import annotations

import logging
import logging.config
from collections.abc import MutableMapping
from threading import Lock
from typing import Any

import structlog
import structlog.contextvars
import structlog.stdlib
from structlog.types import EventDict, Processor

from taxcomply.core.config import Settings
from taxcomply.core.constants import REQUEST_ID_CTX_KEY, SERVICE_NAME

# Event keys that may carry a full bank account number.
SENSITIVE_ACCOUNT_KEYS = frozenset(
    {
        "account_number",
        "destination_account_number",
        "requested_account_number",
        "destinationAccountNumber",
    }
)

_configured = False
_lock = Lock()


def mask_account_number(account_number: str | None) -> str | None:
    """Keep the first four digits of an account number for log output."""
    if not account_number:
        return account_number
    return f"{account_number[:4]}******"


def redact_account_numbers(
    _: Any, __: str, event_dict: MutableMapping[str, Any]
) -> EventDict:
    for key in SENSITIVE_ACCOUNT_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = mask_account_number(value)
    return event_dict  # type: ignore[return-value]


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_account_numbers,
    ]


def configure_logging(settings: Settings) -> None:
    """Route structlog and stdlib records through one JSON handler.

    Safe to call repeatedly; only the first call has an effect.
    """

    global _configured
    with _lock:
        if _configured:
            return

        level = logging.getLevelNamesMapping().get(
            settings.log_level.upper(), logging.INFO
        )

        structlog.configure(
            processors=[
                *_shared_processors(),
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        def _route(logger_level: int) -> dict[str, Any]:
            return {"handlers": ["json"], "level": logger_level, "propagate": False}

        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "json": {
                        "()": structlog.stdlib.ProcessorFormatter,
                        "foreign_pre_chain": _shared_processors(),
                        "processors": [
                            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                            structlog.processors.dict_tracebacks,
                            structlog.processors.JSONRenderer(),
                        ],
                    }
                },
                "handlers": {
                    "json": {
                        "class": "logging.StreamHandler",
                        "formatter": "json",
                        "level": level,
                    }
                },
                "root": {"handlers": ["json"], "level": level},
                "loggers": {
                    "uvicorn.error": _route(level),
                    "uvicorn.access": _route(level),
                    "sqlalchemy.engine": _route(
                        logging.INFO if settings.database.echo else logging.WARNING
                    ),
                    "httpx": _route(logging.WARNING),
                },
            }
        )

        structlog.contextvars.bind_contextvars(service=SERVICE_NAME)
        _configured = True


def bind_request_context(request_id: str, **kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**{REQUEST_ID_CTX_KEY: request_id}, **kwargs)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=SERVICE_NAME)