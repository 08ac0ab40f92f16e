# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""CommandRouter: dispatch inbound peer commands by ``type``.

``RESULT``  → unbound payload → :class:`ScrapeOutcome` → correlation table.
``PING``    → ``PONG`` reply.
``STATUS``  → peer status snapshot (observability only).
``PONG``    → liveness timestamp (observability only).
anything else → logged and dropped.

A malformed RESULT never raises into the read loop: it resolves its
request with an error outcome instead.
"""

from __future__ import annotations

import logging
import time

from . import FailureReason, ScrapeOutcome
from .commands import Command, CommandType, pong
from .correlation import CorrelationTable
from .errors import BridgeError, DecompressionFailure, PeerReportedFailure
from .framing import FramedTransport
from .governor import Tier, tier_of, unbound

logger = logging.getLogger(__name__)


class CommandRouter:
    def __init__(self, table: CorrelationTable, transport: FramedTransport | None = None) -> None:
        self._table = table
        self._transport = transport

        self.peer_status: str = "unknown"
        self.peer_task_id: str | None = None
        self.last_pong: float | None = None
        self.routed = 0
        self.dropped = 0

    async def route(self, command: Command) -> None:
        kind = command.get("type")
        if kind == CommandType.RESULT:
            self._on_result(command)
        elif kind == CommandType.PING:
            await self._on_ping()
        elif kind == CommandType.STATUS:
            self.peer_status = str(command.get("status", "unknown"))
            self.peer_task_id = command.get("taskId")
            logger.info("Extension status: %s (task=%s)", self.peer_status, self.peer_task_id)
        elif kind == CommandType.PONG:
            self.last_pong = time.time()
            logger.debug("PONG %s", command.get("timestamp"))
        else:
            self.dropped += 1
            logger.warning("Dropping command with unknown type %r", kind)
            return
        self.routed += 1

    def _on_result(self, command: Command) -> None:
        task_id = command.get("taskId")
        if not isinstance(task_id, str) or task_id not in self._table:
            # The HTTP caller already got its timeout response and moved on.
            logger.info("No pending request found for taskId: %s", task_id)
            return
        self._table.resolve(task_id, outcome_from_result(command))

    async def _on_ping(self) -> None:
        if self._transport is None:
            return
        try:
            await self._transport.write(pong())
        except BridgeError as exc:
            logger.warning("Could not answer PING: %s", exc)


def outcome_from_result(command: Command) -> ScrapeOutcome:
    """Translate a RESULT command into the outcome the gateway returns."""
    final_url = command.get("final_url") or command.get("url") or ""

    if not command.get("success"):
        failure = PeerReportedFailure(str(command.get("error") or "Scrape failed"))
        return ScrapeOutcome.from_error(failure, final_url=final_url)

    try:
        restored = unbound(command)
    except DecompressionFailure as exc:
        logger.error("Failed to decompress HTML for task %s: %s", command.get("taskId"), exc)
        return ScrapeOutcome.failure(
            f"{FailureReason.DECOMPRESSION_FAILED}: {exc}",
            reason=FailureReason.DECOMPRESSION_FAILED,
            final_url=final_url,
        )

    html = restored.get("html")
    if not isinstance(html, str):
        html = ""
    tier = tier_of(command)
    if tier is Tier.COMPRESSED:
        logger.info("Decompressed HTML: %s bytes -> %d chars", command.get("original_html_bytes"), len(html))

    status_code = command.get("status_code")
    return ScrapeOutcome(
        html=html,
        status_code=status_code if isinstance(status_code, int) else 200,
        final_url=final_url,
        truncated=tier in (Tier.TRUNCATED, Tier.DROPPED),
        original_bytes=command.get("original_html_bytes"),
    )
