"""
Structured logging configuration using structlog.
JSON lines in production, console renderer when DEBUG.

Subscriber phone numbers are masked in every event before rendering;
statement text and counterparties routinely carry them.
"""

import logging
import re
import sys

import structlog

from ledgerline.config import settings

# +2547XXXXXXXX, 2547XXXXXXXX, 07XXXXXXXX, 01XXXXXXXX
_PHONE = re.compile(r"(?<!\d)(\+?254|0)([17]\d{2})\d{3}(\d{3})(?!\d)")


def mask_phone(text: str) -> str:
    """0712345678 -> 0712***678"""
    return _PHONE.sub(lambda m: f"{m.group(1)}{m.group(2)}***{m.group(3)}", text)


def mask_phone_numbers(_logger, _method, event_dict: dict) -> dict:
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = mask_phone(value)
    return event_dict


def setup_logging() -> None:
    """Configure structlog and route stdlib logging through it."""

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if settings.LOG_MASK_PHONES:
        shared_processors.append(mask_phone_numbers)

    renderer = structlog.dev.ConsoleRenderer() if settings.DEBUG else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in ("uvicorn.access", "anthropic", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.DB_ECHO else logging.WARNING)
