# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge for the native host.

stdout carries the native-messaging wire, so log output is only ever sent to
stderr or to a log file. Console rendering by default, JSON lines on request.

Leaf module: no scrapebridge imports. Safe to call early in startup.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog


def configure(*, json_output: bool = False, level: str = "INFO", log_file: str = "") -> None:
    """Configure structlog with stdlib bridge.

    Args:
        json_output: True for JSON lines, False for human-readable console output.
        level: Root logger level (default INFO).
        log_file: Append to this file instead of stderr. Parent dirs are created.
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        # No ANSI colours in a file or when stderr is piped to the browser.
        renderer = structlog.dev.ConsoleRenderer(colors=not log_file and sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler: logging.Handler
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
