# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""scrapebridge exception hierarchy.

All bridge errors inherit from BridgeError, allowing callers to catch the
base class for any bridge failure or specific subclasses for targeted
handling. Each class carries a ``reason`` slug that ends up in logs and in
``ScrapeOutcome.reason``.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all scrapebridge errors."""

    reason = "bridge_error"


class ClientError(BridgeError):
    """Bad or missing request input. Fails fast, no round trip."""

    reason = "client_error"


class FrameTooLarge(BridgeError):
    """A frame's declared length exceeds the transport ceiling."""

    reason = "frame_too_large"

    def __init__(self, message: str, *, length: int = 0, limit: int = 0) -> None:
        super().__init__(message)
        self.length = length
        self.limit = limit


class DecodeError(BridgeError):
    """A frame body is not valid UTF-8 JSON describing a command object."""

    reason = "decode_error"


class CorrelationTimeout(BridgeError):
    """No RESULT arrived for a task before its deadline."""

    reason = "timeout"

    def __init__(self, message: str = "Request timeout", *, task_id: str = "", timeout_ms: float = 0) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.timeout_ms = timeout_ms


class PeerReportedFailure(BridgeError):
    """The peer answered with ``success: false``."""

    reason = "peer_failure"


class DecompressionFailure(BridgeError):
    """A compressed-tier payload could not be restored."""

    reason = "decompression_failed"


class ChannelClosed(BridgeError):
    """The transport to the peer is closed or ended mid-frame."""

    reason = "channel_closed"


class ConfigError(BridgeError):
    """Invalid startup configuration."""

    reason = "config_error"
