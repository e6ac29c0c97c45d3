"""structlog setup for the sealmail process.

Key material and credentials must never reach the log output: named fields
are masked and bearer tokens are scrubbed from any string value.  Records
from the libraries underneath (uvicorn, httpx, aiosqlite) run through the
same processors so they render in the same format.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

SENSITIVE_KEYS = frozenset({"credential", "jwt", "usk", "key", "pub_sign_key", "priv_sign_key", "authorization"})

_BEARER = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)

# httpx logs every request line at INFO; uvicorn logs every bridge poll.
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


def redact_sensitive(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credentials and key material that slipped into a log call."""
    for name, value in event_dict.items():
        if name.lower() in SENSITIVE_KEYS:
            event_dict[name] = "***"
        elif isinstance(value, str):
            event_dict[name] = _BEARER.sub(r"\1***", value)
    return event_dict


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Route structlog and stdlib logging through one handler on stdout.

    *json* selects JSON lines (the default) or the console renderer;
    *level* is a level name, case-insensitive.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    # uvicorn installs its own handlers unless told otherwise; hand them to root.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
