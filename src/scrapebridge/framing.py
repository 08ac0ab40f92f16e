# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Length-prefixed JSON framing over an asyncio byte stream.

Wire unit: 4-byte little-endian unsigned length ``N`` followed by ``N`` bytes
of UTF-8 JSON (Chrome Native Messaging format).

Reading is a single suspending operation, :meth:`FramedTransport.read_next`,
which waits for the length prefix and then for the full body. Frames larger
than ``max_frame_bytes`` are consumed in 64 KiB chunks and discarded, so the
stream stays aligned on the next frame boundary and no buffer is ever sized
to an untrusted length.

Dependencies: commands.py, errors.py.
"""

from __future__ import annotations

import asyncio
import json
import logging
import struct
import sys
from collections.abc import AsyncIterator
from typing import Protocol

from .commands import Command, encode
from .errors import ChannelClosed, DecodeError, FrameTooLarge

logger = logging.getLogger(__name__)

MAX_FRAME_BYTES = 1024 * 1024  # 1 MiB, Chrome's host→extension limit
_HEADER = struct.Struct("<I")
_DISCARD_CHUNK = 64 * 1024


class FrameWriter(Protocol):
    """The subset of ``asyncio.StreamWriter`` the transport needs."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...


class FramedTransport:
    """Duplex command channel over a reader/writer pair.

    ``write`` is serialized by a lock so concurrent callers never interleave
    bytes. Only one ``read_next`` may be active at a time.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: FrameWriter,
        *,
        max_frame_bytes: int = MAX_FRAME_BYTES,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._max_frame_bytes = max_frame_bytes
        self._write_lock = asyncio.Lock()
        self._reading = False
        self._closed = False

        self.frames_read = 0
        self.frames_written = 0
        self.bytes_discarded = 0

    @property
    def max_frame_bytes(self) -> int:
        return self._max_frame_bytes

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Writing ──────────────────────────────────────────────────────

    async def write(self, command: Command) -> None:
        """Send one command as a single frame.

        Raises:
            FrameTooLarge: the encoded body exceeds ``max_frame_bytes``.
            ChannelClosed: the transport was closed or the pipe is gone.
        """
        body = encode(command)
        if len(body) > self._max_frame_bytes:
            raise FrameTooLarge(
                f"Outbound frame too large: {len(body)} > {self._max_frame_bytes}",
                length=len(body),
                limit=self._max_frame_bytes,
            )
        async with self._write_lock:
            if self._closed:
                raise ChannelClosed("Transport is closed")
            try:
                self._writer.write(_HEADER.pack(len(body)) + body)
                await self._writer.drain()
            except ConnectionError as exc:
                raise ChannelClosed(f"Write failed: {exc}") from exc
            self.frames_written += 1
        logger.debug("Sent frame type=%s bytes=%d", command.get("type"), len(body))

    # ── Reading ──────────────────────────────────────────────────────

    async def read_next(self) -> Command | None:
        """Return the next command, or ``None`` on clean EOF.

        Raises:
            FrameTooLarge: declared length over the limit (body already drained).
            DecodeError: body is not a JSON object (frame consumed).
            ChannelClosed: the stream ended inside a frame.
            RuntimeError: called while another read is in progress.
        """
        if self._reading:
            raise RuntimeError("read_next() is already in progress")
        self._reading = True
        try:
            return await self._read_frame()
        finally:
            self._reading = False

    async def _read_frame(self) -> Command | None:
        try:
            header = await self._reader.readexactly(_HEADER.size)
        except asyncio.IncompleteReadError as exc:
            if not exc.partial:
                return None
            raise ChannelClosed("Stream ended inside a frame header") from exc

        (length,) = _HEADER.unpack(header)
        if length > self._max_frame_bytes:
            await self._discard(length)
            raise FrameTooLarge(
                f"Message too large: {length} > {self._max_frame_bytes}",
                length=length,
                limit=self._max_frame_bytes,
            )

        try:
            body = await self._reader.readexactly(length)
        except asyncio.IncompleteReadError as exc:
            raise ChannelClosed(f"Stream ended inside a frame body ({len(exc.partial)}/{length} bytes)") from exc

        self.frames_read += 1
        return _decode(body)

    async def _discard(self, length: int) -> None:
        remaining = length
        while remaining > 0:
            try:
                chunk = await self._reader.readexactly(min(remaining, _DISCARD_CHUNK))
            except asyncio.IncompleteReadError as exc:
                self.bytes_discarded += len(exc.partial)
                raise ChannelClosed("Stream ended while discarding an oversized frame") from exc
            remaining -= len(chunk)
            self.bytes_discarded += len(chunk)

    async def frames(self) -> AsyncIterator[Command]:
        """Iterate commands until EOF. Errors propagate; iterate again to resume."""
        while True:
            command = await self.read_next()
            if command is None:
                return
            yield command

    def __aiter__(self) -> AsyncIterator[Command]:
        return self.frames()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._writer.close()
        except OSError as exc:
            logger.debug("Writer close failed: %s", exc)


def _decode(body: bytes) -> Command:
    try:
        command = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # No payload echo: bodies can be large and contain page content.
        raise DecodeError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(command, dict):
        raise DecodeError(f"Frame is not a JSON object: {type(command).__name__}")
    return command


async def open_stdio_transport(*, max_frame_bytes: int = MAX_FRAME_BYTES) -> FramedTransport:
    """Attach a transport to this process's stdin/stdout pipes.

    Chrome launches the native host with the extension port on stdio, so
    nothing else in the process may write to stdout.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer)
    write_transport, write_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout.buffer
    )
    writer = asyncio.StreamWriter(write_transport, write_protocol, reader, loop)
    return FramedTransport(reader, writer, max_frame_bytes=max_frame_bytes)
