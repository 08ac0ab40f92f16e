# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""BridgeContext: the host's runtime state, owned in one place.

Holds the transport, correlation table, router and gateway for a single
native-messaging channel, and runs the frame read loop. Used as an async
context manager so every exit path fails pending requests and closes the
transport::

    async with BridgeContext(config, transport) as ctx:
        app = create_app(ctx.gateway, auth_token=config.auth_token, router=ctx.router)
        ...
        await ctx.pump()
"""

from __future__ import annotations

import logging
import time
from types import TracebackType

from .config import BridgeConfig
from .correlation import CorrelationTable
from .errors import ChannelClosed, DecodeError, FrameTooLarge
from .framing import FramedTransport
from .gateway import ScrapeGateway
from .router import CommandRouter

logger = logging.getLogger(__name__)

OVERSIZE_LOG_WINDOW_S = 5.0


class _OversizeLogThrottle:
    """Collapse bursts of oversized-frame errors into one log line per window."""

    def __init__(self, window: float = OVERSIZE_LOG_WINDOW_S) -> None:
        self._window = window
        self._count = 0
        self._last_logged = float("-inf")

    def record(self, exc: FrameTooLarge) -> None:
        self._count += 1
        now = time.monotonic()
        if now - self._last_logged > self._window:
            logger.warning("Error: %s (count=%d)", exc, self._count)
            self._last_logged = now
            self._count = 0


class BridgeContext:
    def __init__(self, config: BridgeConfig, transport: FramedTransport) -> None:
        self.config = config
        self.transport = transport
        self.table = CorrelationTable()
        self.router = CommandRouter(self.table, transport)
        self.gateway = ScrapeGateway(transport, self.table, default_timeout_ms=config.default_timeout_ms)
        self._oversize = _OversizeLogThrottle()

    async def __aenter__(self) -> BridgeContext:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        self.gateway.channel_lost(ChannelClosed("bridge shutting down"))
        self.table.close_all(ChannelClosed("bridge shutting down"))
        await self.transport.close()

    async def pump(self) -> None:
        """Route inbound frames until the peer closes the stream.

        Oversized and malformed frames are logged and skipped. Returns on
        clean EOF; re-raises :class:`ChannelClosed` when the stream breaks
        mid-frame. Either way, pending requests are failed first and the
        gateway refuses new ones.
        """
        try:
            while True:
                try:
                    command = await self.transport.read_next()
                except FrameTooLarge as exc:
                    self._oversize.record(exc)
                    continue
                except DecodeError as exc:
                    logger.warning("Dropping malformed frame: %s", exc)
                    continue
                if command is None:
                    logger.info("Extension disconnected (stdin closed)")
                    return
                logger.debug("Received from extension: %s", command.get("type"))
                await self.router.route(command)
        finally:
            # From here on the gateway fails new requests immediately.
            self.gateway.channel_lost(ChannelClosed("Extension disconnected"))
            self.table.close_all(ChannelClosed("Extension disconnected"))
