# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""ScrapeGateway: turn one HTTP scrape call into a round trip to the peer.

For each call: validate, mint a task id, register it in the correlation
table, send ``SCRAPE``, then suspend until the router resolves the entry or
its timer expires. Every path returns a :class:`ScrapeOutcome`; timeouts,
peer failures and channel loss are outcomes, not exceptions, so the HTTP
binding can always answer deterministically.

No HTTP imports; ``server.py`` owns the Starlette binding.
"""

from __future__ import annotations

import dataclasses
import logging
import secrets
import time
from typing import Any

import structlog

from . import FailureReason, ScrapeOutcome
from .commands import scrape as scrape_command
from .correlation import CorrelationTable
from .errors import BridgeError, ChannelClosed, ClientError, CorrelationTimeout
from .framing import FramedTransport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60_000
MAX_TIMEOUT_MS = 24 * 60 * 60 * 1000


def new_task_id() -> str:
    """``task_<epoch ms>_<8 hex>``: time-ordered, with a random suffix for same-ms calls."""
    return f"task_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class ScrapeGateway:
    def __init__(
        self,
        transport: FramedTransport,
        table: CorrelationTable,
        *,
        default_timeout_ms: float = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self._transport = transport
        self._table = table
        self._default_timeout_ms = default_timeout_ms
        self._channel_error: ChannelClosed | None = None

    @property
    def table(self) -> CorrelationTable:
        return self._table

    @property
    def channel_open(self) -> bool:
        return self._channel_error is None

    def channel_lost(self, exc: ChannelClosed) -> None:
        """Fail every later call immediately with *exc*; the peer is not coming back."""
        if self._channel_error is None:
            self._channel_error = exc

    async def scrape(self, target: str | None, options: dict[str, Any] | None = None) -> ScrapeOutcome:
        if not target:
            return ScrapeOutcome.from_error(ClientError("URL is required"))

        options = dict(options or {})
        timeout_ms = options.get("timeout") or self._default_timeout_ms
        valid = not isinstance(timeout_ms, bool) and isinstance(timeout_ms, int | float)
        if not valid or not 0 < timeout_ms <= MAX_TIMEOUT_MS:
            return ScrapeOutcome.from_error(
                ClientError(f"options.timeout must be in (0, {MAX_TIMEOUT_MS}] milliseconds"), final_url=target
            )
        if self._channel_error is not None:
            return ScrapeOutcome.from_error(self._channel_error, final_url=target)

        task_id = self._allocate_task_id()
        with structlog.contextvars.bound_contextvars(task_id=task_id):
            outcome = await self._round_trip(task_id, target, options, timeout_ms)
            if not outcome.final_url:
                outcome = dataclasses.replace(outcome, final_url=target)
            logger.info("Scrape result: %s -> %s", task_id, "success" if outcome.ok else f"error ({outcome.reason})")
        return outcome

    async def _round_trip(
        self, task_id: str, target: str, options: dict[str, Any], timeout_ms: float
    ) -> ScrapeOutcome:
        completion = self._table.register(task_id, timeout_ms)
        logger.info("Scrape request: %s -> %s (timeout=%sms)", task_id, target, timeout_ms)
        try:
            try:
                await self._transport.write(scrape_command(task_id, target, options))
            except BridgeError as exc:
                logger.error("Could not send SCRAPE for %s: %s", task_id, exc)
                return ScrapeOutcome.from_error(exc, final_url=target)

            try:
                return await completion
            except CorrelationTimeout:
                return ScrapeOutcome.failure("Request timeout", reason=FailureReason.TIMEOUT, final_url=target)
            except ChannelClosed as exc:
                return ScrapeOutcome.from_error(exc, final_url=target)
        finally:
            # No-op after resolution; cleans up on send failure or cancellation.
            self._table.discard(task_id)

    def health(self) -> dict[str, int]:
        return {"pending": len(self._table)}

    def _allocate_task_id(self) -> str:
        task_id = new_task_id()
        while task_id in self._table:
            task_id = new_task_id()
        return task_id

