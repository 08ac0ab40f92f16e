# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import scrapebridge  # noqa: F401
except ImportError:
    raise ImportError("scrapebridge is not installed. Run: pip install -e '.[dev]'") from None

import pytest


@pytest.fixture
async def transports():
    """(host, peer) transports wired back to back on the test's loop."""
    from tests._bridge_helpers import transport_pair

    return transport_pair()
