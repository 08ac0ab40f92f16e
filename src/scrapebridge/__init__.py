# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""scrapebridge: HTTP front end for a browser extension scraper.

An HTTP client posts a URL; the request travels as a ``SCRAPE`` command over
Chrome Native Messaging (4-byte length-prefixed JSON on stdin/stdout) to a
browser extension, which renders the page and answers with a ``RESULT``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

__version__ = "0.3.0"


class FailureReason(StrEnum):
    """Why a scrape did not produce content."""

    CLIENT_ERROR = "client_error"
    TIMEOUT = "timeout"
    PEER_FAILURE = "peer_failure"
    DECOMPRESSION_FAILED = "decompression_failed"
    CHANNEL_CLOSED = "channel_closed"


@dataclass(frozen=True, slots=True)
class ScrapeOutcome:
    """Final result of one scrape request, as handed back to the HTTP layer."""

    html: str | None = None
    error: str | None = None
    status_code: int = 0
    final_url: str = ""
    reason: str = ""  # FailureReason value, empty on success
    truncated: bool = False
    original_bytes: int | None = None  # size before the peer shrank the payload

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def content_size(self) -> int:
        return len(self.html) if self.html else 0

    def to_dict(self) -> dict[str, Any]:
        if not self.ok:
            return {
                "error": self.error,
                "status_code": 0,
                "content_size": 0,
                "final_url": self.final_url,
            }
        data: dict[str, Any] = {
            "html": self.html,
            "status_code": self.status_code,
            "content_size": self.content_size,
            "final_url": self.final_url,
        }
        if self.truncated:
            data["truncated"] = True
            data["original_html_bytes"] = self.original_bytes
        return data

    @classmethod
    def failure(cls, error: str, *, reason: str, final_url: str = "") -> ScrapeOutcome:
        return cls(error=error, reason=reason, final_url=final_url)

    @classmethod
    def from_error(cls, exc: Exception, *, final_url: str = "") -> ScrapeOutcome:
        """Map a bridge exception to a failure outcome."""
        reason = getattr(exc, "reason", FailureReason.PEER_FAILURE)
        return cls.failure(str(exc), reason=reason, final_url=final_url)
