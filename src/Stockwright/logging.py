"""structlog on top of stdlib logging.

Every record, including those from httpx and openai, goes through one
``ProcessorFormatter`` per handler, so the console and the rotating JSONL
file always agree on shape. Per-turn context (``session_id``) is attached with
``structlog.contextvars.bound_contextvars`` in the pipeline.
"""

import logging
import os
from logging.handlers import RotatingFileHandler

import structlog
from structlog.contextvars import merge_contextvars

from Stockwright.config import Settings

_SENSITIVE_SUFFIXES = ("_key", "_token", "_secret", "_password")
_THIRD_PARTY = ("httpx", "httpcore", "openai", "aiosqlite", "asyncio")


def _formatter(style: str) -> structlog.stdlib.ProcessorFormatter:
    final = (
        structlog.dev.ConsoleRenderer(colors=False)
        if style == "pretty"
        else structlog.processors.JSONRenderer()
    )
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[structlog.processors.add_log_level, merge_contextvars],
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            final,
        ],
    )


def _handlers(settings: Settings, level: int) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if settings.logging_console != "none":
        console = logging.StreamHandler()
        console.setFormatter(_formatter(settings.logging_console))
        handlers.append(console)
    if settings.logging_to_file:
        path = settings.logging_file_path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        jsonl = RotatingFileHandler(
            path,
            maxBytes=settings.logging_max_bytes,
            backupCount=settings.logging_backup_count,
        )
        jsonl.setFormatter(_formatter("json"))
        handlers.append(jsonl)
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def setup_logging(settings: Settings | None = None) -> None:
    """Install root handlers from ``settings`` and point structlog at them.

    Without settings this gives JSON on stderr at INFO and no file.
    """
    settings = settings or Settings(logging_to_file=False)
    level = logging.getLevelName(settings.logging_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.captureWarnings(True)
    logging.basicConfig(level=level, handlers=_handlers(settings, level), force=True)
    for name in _THIRD_PARTY:
        library_logger = logging.getLogger(name)
        library_logger.handlers.clear()
        library_logger.propagate = True

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def redact_settings(settings: Settings) -> dict:
    """Settings as a plain dict with credentials masked, for startup logs."""
    return {
        name: "[REDACTED]" if name.endswith(_SENSITIVE_SUFFIXES) else value
        for name, value in settings.model_dump().items()
    }
