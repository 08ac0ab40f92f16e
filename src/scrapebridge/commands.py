# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Command vocabulary and wire encoding shared by both ends of the bridge.

Commands are plain JSON objects discriminated by ``type``. They stay dicts
on purpose: the peer is a browser extension that adds fields freely
(``title``, ``timestamp``, ...), and the bridge forwards what it does not
understand.

Leaf module: no scrapebridge imports.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

Command = dict[str, Any]


class CommandType(StrEnum):
    SCRAPE = "SCRAPE"
    RESULT = "RESULT"
    STATUS = "STATUS"
    PING = "PING"
    PONG = "PONG"
    CANCEL = "CANCEL"


class PeerStatus(StrEnum):
    READY = "ready"
    PROCESSING = "processing"


def encode(command: Command) -> bytes:
    """Serialize a command to its UTF-8 wire body.

    Compact separators and raw UTF-8 (no ``\\u`` escapes) match what the
    extension's ``JSON.stringify`` produces, so byte sizes agree on both ends.
    Text holding lone surrogates cannot be UTF-8 encoded; such commands are
    written with ``\\uXXXX`` escapes instead, as ``JSON.stringify`` does.
    """
    try:
        return json.dumps(command, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except UnicodeEncodeError:
        return json.dumps(command, separators=(",", ":"), ensure_ascii=True).encode("ascii")


def encoded_size(command: Command) -> int:
    return len(encode(command))


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ── Constructors ─────────────────────────────────────────────────────


def scrape(task_id: str, target: str, options: dict[str, Any] | None = None) -> Command:
    # ``url`` duplicates ``target`` for extensions that read the older key.
    return {
        "type": CommandType.SCRAPE.value,
        "taskId": task_id,
        "target": target,
        "url": target,
        "options": dict(options or {}),
    }


def result(
    task_id: str,
    *,
    success: bool,
    url: str = "",
    final_url: str = "",
    status_code: int = 0,
    html: str | None = None,
    title: str | None = None,
    error: str | None = None,
) -> Command:
    command: Command = {
        "type": CommandType.RESULT.value,
        "taskId": task_id,
        "success": success,
        "url": url,
        "final_url": final_url or url,
        "status_code": status_code,
    }
    if html is not None:
        command["html"] = html
    if title is not None:
        command["title"] = title
    if error is not None:
        command["error"] = error
    command["timestamp"] = utc_timestamp()
    return command


def status(value: PeerStatus, task_id: str | None = None) -> Command:
    command: Command = {"type": CommandType.STATUS.value, "status": value.value}
    if task_id is not None:
        command["taskId"] = task_id
    command["timestamp"] = utc_timestamp()
    return command


def ping() -> Command:
    return {"type": CommandType.PING.value}


def pong() -> Command:
    return {"type": CommandType.PONG.value, "timestamp": utc_timestamp()}
