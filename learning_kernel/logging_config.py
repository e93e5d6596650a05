"""Structured logging setup for the learning kernel."""

import logging
import os
import sys
from typing import Optional

import structlog

_CONFIGURED = False
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "keyvalue"


def _resolve_level(level: Optional[str]) -> int:
    candidate = level or os.getenv("LOG_LEVEL") or DEFAULT_LOG_LEVEL
    value = logging.getLevelName(candidate.upper())
    if isinstance(value, int):
        return value
    return logging.INFO


def _resolve_format(fmt: Optional[str]) -> str:
    candidate = (fmt or os.getenv("LOG_FORMAT") or DEFAULT_LOG_FORMAT).strip().lower()
    if candidate in {"json", "keyvalue", "console"}:
        return candidate
    return DEFAULT_LOG_FORMAT


def _renderer_for_format(resolved_format: str) -> structlog.types.Processor:
    if resolved_format == "json":
        return structlog.processors.JSONRenderer()
    if resolved_format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.KeyValueRenderer(
        key_order=["timestamp", "level", "event", "logger", "session_id", "agent_id"]
    )


def configure_logging(*, level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure structlog on top of stdlib logging once per process."""
    global _CONFIGURED

    if _CONFIGURED:
        return

    resolved_level = _resolve_level(level)

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(logging.Formatter(fmt="%(message)s"))
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(resolved_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer_for_format(_resolve_format(fmt)),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolved_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True
