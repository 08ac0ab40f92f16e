# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the HTTP binding: POST /scrape and GET /health over ASGI."""

from __future__ import annotations

import asyncio
import random
import string

import httpx
import pytest

from scrapebridge import commands
from scrapebridge.config import BridgeConfig
from scrapebridge.context import BridgeContext
from scrapebridge.errors import ChannelClosed
from scrapebridge.governor import bound
from scrapebridge.server import ScrapeResponse, create_app

TOKEN = "s3cret-token"


@pytest.fixture
async def bridge(transports):
    """A running host context plus the peer end of its channel."""
    host, peer = transports
    ctx = BridgeContext(BridgeConfig(), host)
    pump = asyncio.create_task(ctx.pump())
    responders: list[asyncio.Task] = []
    yield ctx, peer, responders
    for task in responders:
        task.cancel()
    await asyncio.gather(*responders, return_exceptions=True)
    await peer.close()
    await pump
    await ctx.close()


def _respond(bridge, reply) -> None:
    """Answer each SCRAPE on the peer side with ``reply(command)``."""
    _, peer, responders = bridge

    async def serve():
        async for command in peer:
            if command["type"] == "SCRAPE":
                await peer.write(reply(command))

    responders.append(asyncio.create_task(serve()))


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


@pytest.fixture
def client(bridge):
    ctx, _, _ = bridge
    return _client(create_app(ctx.gateway, router=ctx.router))


# ---------------------------------------------------------------------------
# POST /scrape
# ---------------------------------------------------------------------------


class TestScrapeEndpoint:
    async def test_success(self, bridge, client):
        _respond(
            bridge,
            lambda c: commands.result(
                c["taskId"], success=True, url=c["target"], status_code=200, html="<html></html>"
            ),
        )
        resp = await client.post("/scrape", json={"url": "https://example.com"})

        assert resp.status_code == 200
        assert resp.json() == {
            "html": "<html></html>",
            "status_code": 200,
            "content_size": 13,
            "final_url": "https://example.com",
        }

    async def test_timeout(self, client):
        resp = await client.post("/scrape", json={"url": "https://example.com", "options": {"timeout": 50}})

        assert resp.status_code == 500
        assert resp.json() == {
            "error": "Request timeout",
            "status_code": 0,
            "content_size": 0,
            "final_url": "https://example.com",
        }

    async def test_peer_failure_is_500(self, bridge, client):
        _respond(
            bridge,
            lambda c: commands.result(
                c["taskId"], success=False, url=c["target"], status_code=404, error="HTTP 404 Not Found"
            ),
        )
        resp = await client.post("/scrape", json={"url": "https://example.com/missing"})

        assert resp.status_code == 500
        assert resp.json() == {
            "error": "HTTP 404 Not Found",
            "status_code": 0,
            "content_size": 0,
            "final_url": "https://example.com/missing",
        }

    async def test_final_url_follows_redirect(self, bridge, client):
        _respond(
            bridge,
            lambda c: commands.result(
                c["taskId"], success=True, url=c["target"], final_url="https://example.com/home", html="<p/>"
            ),
        )
        resp = await client.post("/scrape", json={"url": "https://example.com"})
        assert resp.json()["final_url"] == "https://example.com/home"

    async def test_truncated_result_is_flagged(self, bridge, client):
        rng = random.Random(1)
        html = "".join(rng.choice(string.ascii_letters) for _ in range(60_000))
        _respond(
            bridge,
            lambda c: bound(
                commands.result(c["taskId"], success=True, url=c["target"], status_code=200, html=html), 8192
            ),
        )
        resp = await client.post("/scrape", json={"url": "https://example.com"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["truncated"] is True
        assert data["original_html_bytes"] == 60_000
        assert data["content_size"] == len(data["html"])

    async def test_options_forwarded_to_peer(self, bridge, client):
        seen: list[dict] = []

        def reply(command):
            seen.append(command["options"])
            return commands.result(command["taskId"], success=True, url=command["target"], html="")

        _respond(bridge, reply)
        resp = await client.post(
            "/scrape", json={"url": "https://example.com", "options": {"waitFor": 250, "selector": "#main"}}
        )
        assert resp.status_code == 200
        assert seen == [{"waitFor": 250, "selector": "#main"}]

    async def test_null_options_accepted(self, bridge, client):
        _respond(bridge, lambda c: commands.result(c["taskId"], success=True, url=c["target"], html="x"))
        resp = await client.post("/scrape", json={"url": "https://example.com", "options": None})
        assert resp.status_code == 200

    async def test_lone_surrogate_in_page_is_escaped(self, bridge, client):
        _respond(
            bridge,
            lambda c: commands.result(
                c["taskId"], success=True, url=c["target"], status_code=200, html="<p>a\ud83d</p>"
            ),
        )
        resp = await client.post("/scrape", json={"url": "https://example.com"})

        assert resp.status_code == 200
        assert b"\\ud83d" in resp.content
        assert resp.json()["html"] == "<p>a\ud83d</p>"
        assert resp.json()["content_size"] == 9


class TestScrapeResponse:
    def test_plain_text_rendered_as_utf8(self):
        assert ScrapeResponse({"html": "日本"}).body == '{"html":"日本"}'.encode()

    def test_surrogates_fall_back_to_escapes(self):
        assert ScrapeResponse({"html": "a\udc80"}).body == b'{"html":"a\\udc80"}'


class TestScrapeValidation:
    async def test_missing_url(self, client):
        resp = await client.post("/scrape", json={})
        assert resp.status_code == 400
        assert resp.json() == {"error": "URL is required", "status_code": 0, "content_size": 0, "final_url": None}

    async def test_invalid_json(self, client):
        resp = await client.post("/scrape", content=b"{nope", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid JSON body"

    async def test_empty_body(self, client):
        resp = await client.post("/scrape")
        assert resp.status_code == 400

    @pytest.mark.parametrize(
        "body",
        [
            [],
            {"url": 123},
            {"url": "https://example.com", "options": {"timeout": -5}},
            {"url": "https://example.com", "options": {"timeout": 86_400_001}},
            {"url": "https://example.com", "options": {"timeout": 10**400}},
            {"url": "https://example.com", "options": "fast"},
        ],
        ids=["array", "url-not-string", "negative-timeout", "timeout-over-a-day", "huge-timeout", "options-not-object"],
    )
    async def test_schema_errors(self, client, body):
        resp = await client.post("/scrape", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("Invalid request body")

    async def test_get_not_allowed(self, client):
        resp = await client.get("/scrape")
        assert resp.status_code == 405


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


class TestHealthEndpoint:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["pending"] == 0
        assert data["peer_status"] == "unknown"
        assert data["timestamp"].endswith("Z")

    async def test_health_reflects_peer_status(self, bridge, client):
        ctx, peer, _ = bridge
        await peer.write(commands.status(commands.PeerStatus.READY))
        for _ in range(50):
            if ctx.router.peer_status == "ready":
                break
            await asyncio.sleep(0)

        resp = await client.get("/health")
        assert resp.json()["peer_status"] == "ready"

    async def test_health_counts_pending(self, bridge, client):
        scrape = asyncio.create_task(client.post("/scrape", json={"url": "https://example.com"}))
        for _ in range(100):
            resp = await client.get("/health")
            if resp.json()["pending"] == 1:
                break
            await asyncio.sleep(0)
        assert resp.json()["pending"] == 1

        ctx, _, _ = bridge
        ctx.table.close_all(ChannelClosed("Extension disconnected"))
        resp = await scrape
        assert resp.status_code == 500
        assert resp.json()["error"] == "Extension disconnected"


# ---------------------------------------------------------------------------
# Bearer auth
# ---------------------------------------------------------------------------


class TestAuth:
    @pytest.fixture
    def secured(self, bridge):
        ctx, _, _ = bridge
        return _client(create_app(ctx.gateway, auth_token=TOKEN, router=ctx.router))

    async def test_missing_header(self, secured):
        resp = await secured.get("/health")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Authorization header required", "status_code": 0}

    async def test_wrong_scheme(self, secured):
        resp = await secured.get("/health", headers={"Authorization": f"Basic {TOKEN}"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid authorization format. Use: Bearer <token>"

    async def test_wrong_token(self, secured):
        resp = await secured.post(
            "/scrape", json={"url": "https://example.com"}, headers={"Authorization": "Bearer nope"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid token"

    async def test_correct_token(self, secured):
        resp = await secured.get("/health", headers={"Authorization": f"Bearer {TOKEN}"})
        assert resp.status_code == 200

    async def test_no_token_means_open(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
