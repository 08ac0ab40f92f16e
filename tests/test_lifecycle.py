# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the host process lifecycle: stdio channel + uvicorn listener.

stdio is replaced with an in-memory transport; uvicorn binds a real
loopback port.
"""

from __future__ import annotations

import asyncio
import logging
import socket

import httpx
import pytest
import structlog

from scrapebridge.config import BridgeConfig
from scrapebridge.errors import BridgeError, ChannelClosed
from scrapebridge.server import _run_bridge, main
from tests._bridge_helpers import recording_transport

PARTIAL_HEADER = b"\x10\x00"


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def stdio(monkeypatch):
    """Replace the stdin/stdout channel; returns the (transport, reader) pairs opened."""
    opened: list[tuple] = []
    chunks: list[bytes] = []

    async def fake_open(*, max_frame_bytes):
        transport, reader, _ = recording_transport(*chunks, max_frame_bytes=max_frame_bytes, eof=bool(chunks))
        opened.append((transport, reader))
        return transport

    monkeypatch.setattr("scrapebridge.server.open_stdio_transport", fake_open)
    return opened, chunks


@pytest.fixture
def _reset_logging():
    root = logging.getLogger()
    old_handlers = root.handlers[:]
    old_level = root.level
    yield
    for handler in root.handlers:
        if handler not in old_handlers:
            handler.close()
    root.handlers = old_handlers
    root.setLevel(old_level)
    structlog.reset_defaults()


# ---------------------------------------------------------------------------
# _run_bridge
# ---------------------------------------------------------------------------


class TestRunBridge:
    async def test_listener_serves_until_stdin_eof(self, stdio):
        opened, _ = stdio
        port = _free_port()
        run = asyncio.create_task(_run_bridge(BridgeConfig(host="127.0.0.1", port=port)))

        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}", trust_env=False) as client:
            for _ in range(100):
                try:
                    resp = await client.get("/health")
                    break
                except httpx.ConnectError:
                    await asyncio.sleep(0.05)
            else:
                pytest.fail("listener never came up")
            assert resp.status_code == 200
            assert resp.json()["pending"] == 0

            transport, reader = opened[0]
            reader.feed_eof()
            await asyncio.wait_for(run, 10)

            assert transport.closed

        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}", trust_env=False) as fresh:
            with pytest.raises(httpx.ConnectError):
                await fresh.get("/health")

    async def test_mid_frame_eof_raises_channel_closed(self, stdio):
        opened, chunks = stdio
        chunks.append(PARTIAL_HEADER)

        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(_run_bridge(BridgeConfig(host="127.0.0.1", port=_free_port())), 10)
        assert opened[0][0].closed

    async def test_bind_failure_is_bridge_error(self, stdio):
        opened, _ = stdio
        with socket.socket() as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen()
            port = busy.getsockname()[1]

            with pytest.raises(BridgeError, match="failed to start"):
                await asyncio.wait_for(_run_bridge(BridgeConfig(host="127.0.0.1", port=port)), 10)
        assert opened[0][0].closed


# ---------------------------------------------------------------------------
# main() exit codes
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("_reset_logging")
class TestMainExitCodes:
    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for name in ("SCRAPER_CONFIG", "SCRAPER_HOST", "SCRAPER_PORT", "SCRAPER_AUTH_TOKEN", "SCRAPER_LOG_FILE"):
            monkeypatch.delenv(name, raising=False)

    def _argv(self, tmp_path, port: int) -> list[str]:
        return ["--host", "127.0.0.1", "--port", str(port), "--log-file", str(tmp_path / "host.log")]

    def test_clean_eof_exits_0(self, stdio, tmp_path):
        _, chunks = stdio
        chunks.append(b"")
        main(self._argv(tmp_path, _free_port()))
        assert "Native host stopped" in (tmp_path / "host.log").read_text()

    def test_broken_channel_exits_1(self, stdio, tmp_path):
        _, chunks = stdio
        chunks.append(PARTIAL_HEADER)
        with pytest.raises(SystemExit) as exc_info:
            main(self._argv(tmp_path, _free_port()))
        assert exc_info.value.code == 1
        assert "Native messaging channel broke" in (tmp_path / "host.log").read_text()

    def test_bind_failure_exits_1(self, stdio, tmp_path):
        _, chunks = stdio
        chunks.append(b"")
        with socket.socket() as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen()
            with pytest.raises(SystemExit) as exc_info:
                main(self._argv(tmp_path, busy.getsockname()[1]))
        assert exc_info.value.code == 1
