"""
Structured logging for the extraction engine.

structlog renders JSON in production and colored console lines in
development. Every entry logged while a request is running carries that
request's ``request_id``, so interleaved concurrent extractions can be
told apart. Transcript text, evidence snippets and quotes are shortened
before rendering.

Usage:
    from formfill.logging_config import get_logger, request_scope

    logger = get_logger(__name__)
    with request_scope():
        logger.info("extraction_started", fields=12, transcript=preview(text))
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

import structlog

from formfill.config import get_settings

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Event keys whose string values may hold raw transcript text
TEXT_KEYS = frozenset({"transcript", "snippet", "evidence", "quote"})
PREVIEW_CHARS = 120

QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


@contextmanager
def request_scope(request_id: Optional[str] = None) -> Iterator[str]:
    """Tag every log entry inside the block with one request id."""
    rid = request_id or new_request_id()
    token = request_id_var.set(rid)
    try:
        yield rid
    finally:
        request_id_var.reset(token)


def preview(text: Optional[str], limit: int = PREVIEW_CHARS) -> Optional[str]:
    """Shorten text for log output; transcripts are never logged in full."""
    if text is None or len(text) <= limit:
        return text
    return f"{text[:limit]}… [{len(text)} chars]"


def _add_request_id(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    request_id = request_id_var.get("")
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def _shorten_text(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in TEXT_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = preview(value)
    return event_dict


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Route structlog and stdlib logging through one stdout handler.

    ``level`` and ``json_output`` default to the configured log level and
    to JSON-in-production.
    """
    settings = get_settings()
    if json_output is None:
        json_output = settings.is_production

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_request_id,
        _shorten_text,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or settings.log_level).upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
