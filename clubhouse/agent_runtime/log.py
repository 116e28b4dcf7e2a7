"""Logging configuration using loguru.

Intercepts stdlib logging so that modules using ``logging.getLogger`` and
third-party libraries all flow through loguru with a unified format.

``app_log`` is the namespaced sink used by the execution managers: records
carry a ``namespace`` (e.g. ``core:headless``) and optional ``meta`` mapping
as loguru extras.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from typing import Any

from loguru import logger


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        # Map stdlib level name -> loguru level
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk the call stack so loguru reports the real call-site
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru as the sole logging sink.

    Call this once at process startup.
    """
    level = level.upper()

    logger.remove()
    logger.configure(extra={"namespace": "app", "meta": {}})
    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<magenta>{extra[namespace]}</magenta> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
    )

    # Intercept all stdlib logging
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    logger.info("Logging initialised (level={})", level)


_LEVELS = {"debug": "DEBUG", "info": "INFO", "warn": "WARNING", "warning": "WARNING", "error": "ERROR"}


def app_log(namespace: str, level: str, message: str, meta: Mapping[str, Any] | None = None) -> None:
    """Emit a namespaced log record with optional structured metadata."""
    meta = dict(meta or {})
    bound = logger.bind(namespace=namespace, meta=meta)
    suffix = " ".join(f"{k}={v!r}" for k, v in meta.items())
    text = f"{message} ({suffix})" if suffix else message
    # depth=1 attributes the record to the caller, not this helper
    bound.opt(depth=1).log(_LEVELS.get(level.lower(), level.upper()), "{}", text)
