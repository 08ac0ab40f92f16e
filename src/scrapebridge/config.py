# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Startup configuration for the native host.

Sources, highest priority first: CLI flags, ``SCRAPER_*`` environment
variables, a JSON config file (``--config`` / ``SCRAPER_CONFIG``), defaults.
The result is a frozen :class:`BridgeConfig`, read once and never mutated.

Chrome starts native hosts with the caller origin as a positional argument
(plus ``--parent-window=`` on Windows), so unknown arguments are ignored.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .framing import MAX_FRAME_BYTES
from .gateway import DEFAULT_TIMEOUT_MS

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3002

# Smallest ceiling that still leaves room for RESULT metadata (task id,
# URLs, status, truncation tags) once the HTML itself is dropped.
MIN_FRAME_BYTES = 4 * 1024

_TRUE_VALUES = ("1", "true", "yes")

# config.json key → BridgeConfig field
_FILE_KEYS: dict[str, str] = {
    "host": "host",
    "port": "port",
    "authToken": "auth_token",
    "timeoutMs": "default_timeout_ms",
    "maxFrameBytes": "max_frame_bytes",
    "logLevel": "log_level",
    "logFile": "log_file",
}


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    """Immutable host configuration."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    auth_token: str = ""
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_frame_bytes: int = MAX_FRAME_BYTES
    log_level: str = "INFO"
    log_file: str = ""
    json_logs: bool = False

    @property
    def auth_enabled(self) -> bool:
        return bool(self.auth_token)

    def validate(self) -> BridgeConfig:
        """Return self, or raise :class:`ConfigError` naming the bad field."""
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"port must be between 1 and 65535, got {self.port}")
        if self.default_timeout_ms <= 0:
            raise ConfigError(f"default timeout must be positive, got {self.default_timeout_ms} ms")
        if self.max_frame_bytes < MIN_FRAME_BYTES:
            raise ConfigError(
                f"max frame size {self.max_frame_bytes} is below the {MIN_FRAME_BYTES}-byte metadata overhead"
            )
        if logging.getLevelName(self.log_level.upper()) == f"Level {self.log_level.upper()}":
            raise ConfigError(f"unknown log level {self.log_level!r}")
        return self


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scrapebridge-host",
        description="Native messaging host exposing a browser extension scraper over HTTP",
    )
    parser.add_argument("--config", default=None, help="Path to a JSON config file")
    parser.add_argument("--host", default=None, help=f"HTTP listen address (default: {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=None, help=f"HTTP port (default: {DEFAULT_PORT})")
    parser.add_argument(
        "--auth-token",
        default=None,
        help="Bearer token required on every request (default: none, API unprotected)",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help=f"Default per-request timeout in ms (default: {DEFAULT_TIMEOUT_MS})",
    )
    parser.add_argument(
        "--max-frame-bytes",
        type=int,
        default=None,
        help=f"Largest accepted native-messaging frame (default: {MAX_FRAME_BYTES})",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    parser.add_argument("--log-file", default=None, help="Append logs to this file instead of stderr")
    parser.add_argument("--json-logs", action="store_true", default=False, help="Emit JSON log lines")
    return parser


def _load_file(path: str) -> dict[str, Any]:
    """Read the JSON config file. Unreadable files are logged and ignored."""
    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a JSON object, ignoring", path)
        return {}
    return {field: data[key] for key, field in _FILE_KEYS.items() if key in data}


def load_config(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> BridgeConfig:
    """Resolve configuration from argv, environment and config file.

    Raises:
        ConfigError: a value is malformed or out of range.
    """
    env = os.environ if environ is None else environ
    args, _ = _build_parser().parse_known_args(argv)

    values: dict[str, Any] = {}

    config_path = args.config or env.get("SCRAPER_CONFIG", "").strip()
    if config_path:
        values.update(_load_file(config_path))
        logger.info("Loaded config from %s", config_path)

    env_host = env.get("SCRAPER_HOST", "").strip()
    if env_host:
        values["host"] = env_host

    env_token = env.get("SCRAPER_AUTH_TOKEN", "").strip()
    if env_token:
        values["auth_token"] = env_token

    for name, field in (
        ("SCRAPER_PORT", "port"),
        ("SCRAPER_TIMEOUT_MS", "default_timeout_ms"),
        ("SCRAPER_MAX_FRAME_BYTES", "max_frame_bytes"),
    ):
        raw = env.get(name, "").strip()
        if raw:
            values[field] = raw

    env_level = env.get("SCRAPER_LOG_LEVEL", "").strip()
    if env_level:
        values["log_level"] = env_level

    env_log_file = env.get("SCRAPER_LOG_FILE", "").strip()
    if env_log_file:
        values["log_file"] = env_log_file

    env_json = env.get("SCRAPER_JSON_LOGS", "").strip().lower()
    values["json_logs"] = args.json_logs or env_json in _TRUE_VALUES

    for field in ("host", "port", "auth_token", "log_level", "log_file"):
        flag = getattr(args, field)
        if flag is not None:
            values[field] = flag
    if args.timeout_ms is not None:
        values["default_timeout_ms"] = args.timeout_ms
    if args.max_frame_bytes is not None:
        values["max_frame_bytes"] = args.max_frame_bytes

    try:
        for field in ("port", "default_timeout_ms", "max_frame_bytes"):
            if field in values:
                values[field] = int(values[field])
        for field in ("host", "auth_token", "log_level", "log_file"):
            if field in values:
                values[field] = str(values[field])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid config value: {exc}") from exc

    return BridgeConfig(**values).validate()
