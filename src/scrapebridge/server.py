# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""scrapebridge native host: HTTP API in front of the browser extension.

Chrome launches this process when the extension calls ``connectNative()``.
The extension side of the channel is stdin/stdout; HTTP clients talk to
the Starlette app served here by uvicorn.

Endpoints:
- POST /scrape: render a URL in the browser and return its HTML
- GET /health: liveness plus the number of in-flight requests

Lifecycle: the HTTP server runs while ``BridgeContext.pump`` reads frames.
When the extension disconnects, pending requests fail immediately, the
listener shuts down and the process exits. All logging goes to stderr or
the configured log file; stdout belongs to the wire protocol.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import sys
from contextlib import suppress
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from . import FailureReason
from .commands import utc_timestamp
from .config import BridgeConfig, load_config
from .context import BridgeContext
from .errors import BridgeError, ChannelClosed, ConfigError
from .framing import open_stdio_transport
from .gateway import MAX_TIMEOUT_MS, ScrapeGateway
from .router import CommandRouter

# Logging configured in main() via logging_config.configure()
logger = logging.getLogger("scrapebridge.server")

_GRACEFUL_SHUTDOWN_S = 5


# ── Request models ───────────────────────────────────────────────────


class ScrapeOptions(BaseModel):
    """Per-request options, forwarded to the extension as given."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    wait_for: int | None = Field(default=None, alias="waitFor", ge=0, description="Extra settle time in ms")
    timeout: int | None = Field(default=None, gt=0, le=MAX_TIMEOUT_MS, description="Request deadline in ms")


class ScrapeRequest(BaseModel):
    url: str | None = None
    options: ScrapeOptions | None = None


# ── Handlers ─────────────────────────────────────────────────────────


class ScrapeResponse(JSONResponse):
    """JSON body that tolerates lone surrogates in page text.

    DOM strings may hold unpaired surrogates, which UTF-8 cannot encode; those
    bodies are sent with ``\\uXXXX`` escapes, as ``JSON.stringify`` would.
    """

    def render(self, content: Any) -> bytes:
        try:
            return super().render(content)
        except UnicodeEncodeError:
            return json.dumps(content, ensure_ascii=True, allow_nan=False, separators=(",", ":")).encode("ascii")


def _error_response(message: str, status_code: int, *, final_url: str | None = None) -> ScrapeResponse:
    return ScrapeResponse(
        {"error": message, "status_code": 0, "content_size": 0, "final_url": final_url},
        status_code=status_code,
    )


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "body"
    return f"Invalid request body: {location}: {first.get('msg', 'invalid value')}"


async def _scrape(request: Request) -> ScrapeResponse:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error_response("Invalid JSON body", 400)

    try:
        body = ScrapeRequest.model_validate(payload)
    except ValidationError as exc:
        return _error_response(_describe_validation_error(exc), 400)

    gateway: ScrapeGateway = request.app.state.gateway
    client = request.client.host if request.client else ""
    with structlog.contextvars.bound_contextvars(client_ip=client, url=body.url or ""):
        options = body.options.model_dump(by_alias=True, exclude_none=True) if body.options else {}
        outcome = await gateway.scrape(body.url, options)

    if outcome.reason == FailureReason.CLIENT_ERROR:
        return _error_response(outcome.error or "Bad request", 400, final_url=outcome.final_url or None)
    return ScrapeResponse(outcome.to_dict(), status_code=200 if outcome.ok else 500)


async def _health(request: Request) -> JSONResponse:
    gateway: ScrapeGateway = request.app.state.gateway
    router: CommandRouter | None = request.app.state.router
    return JSONResponse(
        {
            "status": "ok",
            **gateway.health(),
            "peer_status": router.peer_status if router is not None else "unknown",
            "timestamp": utc_timestamp(),
        }
    )


async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return _error_response("Internal server error", 500)


def create_app(gateway: ScrapeGateway, *, auth_token: str = "", router: CommandRouter | None = None):
    """Build the ASGI app. Wrapped in Bearer auth when *auth_token* is set."""
    app = Starlette(
        routes=[
            Route("/scrape", _scrape, methods=["POST"]),
            Route("/health", _health, methods=["GET"]),
        ],
        exception_handlers={Exception: _internal_error},
    )
    app.state.gateway = gateway
    app.state.router = router

    if not auth_token:
        return app

    from .auth_middleware import BearerAuthMiddleware

    return BearerAuthMiddleware(app, auth_token)


# ── Process lifecycle ────────────────────────────────────────────────


async def _run_bridge(config: BridgeConfig) -> None:
    """Serve HTTP until the extension disconnects.

    Raises:
        ChannelClosed: the stream broke inside a frame.
        BridgeError: the HTTP listener never came up.
    """
    import uvicorn

    transport = await open_stdio_transport(max_frame_bytes=config.max_frame_bytes)
    async with BridgeContext(config, transport) as ctx:
        app = create_app(ctx.gateway, auth_token=config.auth_token, router=ctx.router)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=config.host,
                port=config.port,
                log_config=None,  # keep uvicorn on our stderr/file handler
                lifespan="off",
                timeout_graceful_shutdown=_GRACEFUL_SHUTDOWN_S,
            )
        )

        async def _pump_then_stop() -> None:
            try:
                await ctx.pump()
            finally:
                server.should_exit = True

        pump = asyncio.create_task(_pump_then_stop())
        try:
            await server.serve()
        except SystemExit as exc:
            # uvicorn exits the process itself when the bind fails.
            raise BridgeError(f"HTTP listener failed to start on {config.host}:{config.port}") from exc
        finally:
            if not pump.done():
                pump.cancel()
            with suppress(asyncio.CancelledError):
                await pump

        if not server.started:
            raise BridgeError(f"HTTP listener failed to start on {config.host}:{config.port}")
    logger.info("Native host stopped")


def main(argv: list[str] | None = None) -> None:
    """Entry point for the native host."""
    import anyio

    try:
        config = load_config(argv if argv is not None else sys.argv[1:])
    except ConfigError as exc:
        print(f"scrapebridge-host: configuration error: {exc}", file=sys.stderr)
        sys.exit(2)

    # Configure structlog BEFORE any log output
    from .logging_config import configure as configure_logging

    configure_logging(json_output=config.json_logs, level=config.log_level, log_file=config.log_file)

    logger.info(
        "Native host starting (host=%s, port=%d, timeout=%dms, max_frame=%d)",
        config.host,
        config.port,
        config.default_timeout_ms,
        config.max_frame_bytes,
    )
    if not config.auth_enabled:
        logger.warning("SECURITY: SCRAPER_AUTH_TOKEN not set - API will be unprotected!")

    try:
        anyio.run(functools.partial(_run_bridge, config))
    except ChannelClosed as exc:
        logger.error("Native messaging channel broke: %s", exc)
        sys.exit(1)
    except BridgeError as exc:
        logger.error("Fatal error: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
