# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""ASGI authentication middleware: static Bearer token for the HTTP API.

Pure ASGI middleware (no ``BaseHTTPMiddleware``). Installed only when a
token is configured; without one the API is open (the host logs a warning
at startup).

Auth flow:
1. Extract ``Authorization: Bearer <token>`` header.
2. Compare against the configured secret in constant time.
3. On success: call inner app.
4. On failure: 401 JSON ``{"error": ..., "status_code": 0}`` and a log line.

Every HTTP path is protected, ``/health`` included.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "


@dataclass
class _AuthFailure(Exception):
    """Module-private exception carrying rejection context. Never escapes."""

    reason: str
    message: str


class BearerAuthMiddleware:
    """Pure ASGI middleware enforcing a single shared Bearer token.

    Constructor:
        ``BearerAuthMiddleware(app, token)``

    Non-HTTP scopes (e.g. lifespan) pass through unconditionally.
    """

    def __init__(self, app, token: str) -> None:
        if not token:
            raise ValueError("BearerAuthMiddleware requires a non-empty token")
        self.app = app
        self._token = token.encode("utf-8")

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        try:
            self._authenticate(scope)
        except _AuthFailure as failure:
            logger.warning("Auth rejected: %s %s reason=%s", scope.get("method", ""), scope.get("path", ""), failure.reason)
            response = JSONResponse({"error": failure.message, "status_code": 0}, status_code=401)
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)

    def _authenticate(self, scope) -> None:
        raw_headers: list[tuple[bytes, bytes]] = scope.get("headers", [])

        auth_value: str | None = None
        for name, value in raw_headers:
            if name.lower() == b"authorization":
                auth_value = value.decode("latin-1")
                break

        if auth_value is None:
            raise _AuthFailure(reason="missing", message="Authorization header required")

        if not auth_value.startswith(_BEARER_PREFIX):
            raise _AuthFailure(reason="malformed", message="Invalid authorization format. Use: Bearer <token>")

        presented = auth_value[len(_BEARER_PREFIX) :].encode("utf-8")
        if not hmac.compare_digest(presented, self._token):
            raise _AuthFailure(reason="mismatch", message="Invalid token")
