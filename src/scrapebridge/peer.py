# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Peer side of the bridge: the task executor the browser extension runs.

The real peer is a browser extension; this module is its behaviour in
Python, for local rigs and end-to-end tests. Page rendering is not done
here: callers supply a *render* coroutine, and the executor handles the
protocol around it:

- ``SCRAPE``: reject without a URL or while busy, otherwise announce
  ``STATUS processing``, render, send a governed ``RESULT``, announce
  ``STATUS ready``. At most one task runs at a time; the bridge does not
  queue, the peer refuses.
- ``PING``: answer ``PONG``.
- ``CANCEL``: logged only.

:class:`PeerSession` keeps the executor connected, reconnecting with a
:class:`ReconnectPolicy` and an explicit :class:`ConnectionState` machine.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from . import commands
from .commands import Command, CommandType, PeerStatus
from .errors import BridgeError, ChannelClosed, DecodeError, FrameTooLarge
from .framing import MAX_FRAME_BYTES, FramedTransport
from .governor import PAYLOAD_TOO_LARGE, bound

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RenderedPage:
    """What a renderer hands back for one URL."""

    html: str
    status_code: int = 200
    final_url: str = ""
    title: str | None = None


Renderer = Callable[[str, dict[str, Any]], Awaitable[RenderedPage]]


def status_from_error(message: str) -> int:
    """Best-effort HTTP status for a failed render, from its error text."""
    if "net::ERR_" in message:
        return 0
    for code in (403, 404, 500):
        if str(code) in message:
            return code
    return 0


class PeerTaskExecutor:
    """Serve bridge commands over *transport* using *render* for page work."""

    def __init__(self, transport: FramedTransport, render: Renderer, *, ceiling: int = MAX_FRAME_BYTES) -> None:
        self._transport = transport
        self._render = render
        self._ceiling = ceiling
        self._busy = False
        self._tasks: set[asyncio.Task] = set()

        self.completed = 0
        self.errors = 0

    @property
    def processing(self) -> bool:
        return self._busy

    async def run(self) -> None:
        """Handle commands until EOF, then wait for the in-flight task."""
        try:
            while True:
                try:
                    command = await self._transport.read_next()
                except (FrameTooLarge, DecodeError) as exc:
                    logger.warning("Dropping frame: %s", exc)
                    continue
                if command is None:
                    break
                await self.handle(command)
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            for task in self._tasks:
                task.cancel()

    async def handle(self, command: Command) -> None:
        kind = command.get("type")
        if kind == CommandType.SCRAPE:
            await self._on_scrape(command)
        elif kind == CommandType.PING:
            await self._send(commands.pong())
        elif kind == CommandType.CANCEL:
            logger.info("Cancel requested for %s", command.get("taskId"))
        else:
            logger.warning("Unknown message type: %r", kind)

    async def _on_scrape(self, command: Command) -> None:
        task_id = str(command.get("taskId", ""))
        url = command.get("target") or command.get("url") or ""
        options = command.get("options") or {}

        if not url:
            await self._send(commands.result(task_id, success=False, error="URL is required"))
            return
        if self._busy:
            await self._send(
                commands.result(task_id, success=False, url=url, error="Already processing another task")
            )
            return

        # Claimed before the task starts so a second SCRAPE right behind sees it.
        self._busy = True
        task = asyncio.create_task(self._execute(task_id, url, options))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, task_id: str, url: str, options: dict[str, Any]) -> None:
        try:
            await self._send(commands.status(PeerStatus.PROCESSING, task_id))
            try:
                page = await self._render(url, options)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001  any renderer failure becomes a RESULT
                self.errors += 1
                message = str(exc) or type(exc).__name__
                logger.error("Task %s failed: %s", task_id, message)
                reply = commands.result(
                    task_id,
                    success=False,
                    url=url,
                    status_code=status_from_error(message),
                    error=message,
                )
            else:
                self.completed += 1
                reply = commands.result(
                    task_id,
                    success=True,
                    url=url,
                    final_url=page.final_url or url,
                    status_code=page.status_code,
                    html=page.html,
                    title=page.title,
                )
                logger.info("Task completed: %s status=%d", task_id, page.status_code)
            await self._send_result(task_id, url, reply)
        finally:
            self._busy = False
            await self._send(commands.status(PeerStatus.READY))

    async def _send_result(self, task_id: str, url: str, reply: Command) -> None:
        """Send *reply* governed; anything that stops it goes out as a bare failure."""
        try:
            await self._transport.write(bound(reply, self._ceiling))
            return
        except FrameTooLarge as exc:
            logger.error("Result for %s still too large after governing: %s", task_id, exc)
            error = PAYLOAD_TOO_LARGE
        except ChannelClosed as exc:
            logger.warning("Could not send RESULT for %s: %s", task_id, exc)
            return
        except Exception as exc:  # noqa: BLE001  any failure here becomes a bare RESULT
            logger.exception("Could not build RESULT for %s", task_id)
            error = f"result encoding failed: {type(exc).__name__}"
        await self._send(commands.result(task_id, success=False, url=url, error=error))

    async def _send(self, command: Command) -> None:
        try:
            await self._transport.write(command)
        except BridgeError as exc:
            logger.warning("Could not send %s: %s", command.get("type"), exc)


# ── Connection management ────────────────────────────────────────────


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionEvent(StrEnum):
    CONNECT = "connect"
    ESTABLISHED = "established"
    FAILED = "failed"
    LOST = "lost"
    STOP = "stop"


_TRANSITIONS: dict[tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (ConnectionState.DISCONNECTED, ConnectionEvent.CONNECT): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTING, ConnectionEvent.ESTABLISHED): ConnectionState.CONNECTED,
    (ConnectionState.CONNECTING, ConnectionEvent.FAILED): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTED, ConnectionEvent.LOST): ConnectionState.DISCONNECTED,
    (ConnectionState.DISCONNECTED, ConnectionEvent.STOP): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTING, ConnectionEvent.STOP): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTED, ConnectionEvent.STOP): ConnectionState.DISCONNECTED,
}


def advance(state: ConnectionState, event: ConnectionEvent) -> ConnectionState:
    """Next state, or ValueError for a transition the table does not allow."""
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise ValueError(f"invalid transition: {state} --{event}-->") from None


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    """Delay before reconnect attempt *n* (0-based): ``base * factor**n``, capped.

    Defaults reproduce the extension: a fixed 3 s interval, retried forever.
    """

    base_delay: float = 3.0
    factor: float = 1.0
    max_delay: float | None = None
    max_attempts: int | None = None

    def delay(self, attempt: int) -> float | None:
        """Seconds to wait, or None once ``max_attempts`` is used up."""
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return None
        delay = self.base_delay * (self.factor**attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class PeerSession:
    """Keep a :class:`PeerTaskExecutor` connected through disconnects."""

    def __init__(
        self,
        connect: Callable[[], Awaitable[FramedTransport]],
        render: Renderer,
        *,
        policy: ReconnectPolicy | None = None,
        ceiling: int = MAX_FRAME_BYTES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._connect = connect
        self._render = render
        self._policy = policy or ReconnectPolicy()
        self._ceiling = ceiling
        self._sleep = sleep
        self._stopped = False

        self.state = ConnectionState.DISCONNECTED
        self.connections = 0

    def stop(self) -> None:
        self._stopped = True
        self.state = advance(self.state, ConnectionEvent.STOP)

    async def run(self) -> None:
        """Connect, serve, reconnect. Returns on stop() or when the policy gives up."""
        attempt = 0
        while not self._stopped:
            self.state = advance(self.state, ConnectionEvent.CONNECT)
            try:
                transport = await self._connect()
            except (OSError, BridgeError) as exc:
                if self._stopped:
                    break
                logger.warning("Failed to connect to native host: %s", exc)
                self.state = advance(self.state, ConnectionEvent.FAILED)
            else:
                if self._stopped:
                    await transport.close()
                    break
                self.state = advance(self.state, ConnectionEvent.ESTABLISHED)
                self.connections += 1
                attempt = 0
                try:
                    await PeerTaskExecutor(transport, self._render, ceiling=self._ceiling).run()
                except ChannelClosed as exc:
                    logger.warning("Native host disconnected: %s", exc)
                finally:
                    await transport.close()
                    if self.state is ConnectionState.CONNECTED:
                        self.state = advance(self.state, ConnectionEvent.LOST)

            if self._stopped:
                break
            delay = self._policy.delay(attempt)
            if delay is None:
                logger.warning("Giving up after %d reconnect attempts", attempt)
                return
            attempt += 1
            await self._sleep(delay)
