# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""CorrelationTable: pending scrape requests keyed by task id.

Each entry owns an ``asyncio.Future`` and an expiry timer scheduled with
``loop.call_later``. An entry is removed exactly once, by whichever comes
first: :meth:`resolve` / :meth:`reject` (RESULT or channel loss),
:meth:`expire` (timer), or :meth:`discard` (caller gone). Removal and
completion happen in one synchronous step on the event loop, so a timer
firing next to a late RESULT cannot complete the same request twice.

The gateway creates entries; the router only resolves them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .errors import CorrelationTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PendingEntry:
    """One outstanding request. Never mutated; resolution removes it."""

    task_id: str
    timeout_ms: float
    completion: asyncio.Future = field(repr=False)
    expiry: asyncio.TimerHandle = field(repr=False)
    created_at: float = field(default_factory=time.monotonic)


class CorrelationTable:
    def __init__(self) -> None:
        self._entries: dict[str, PendingEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._entries

    def register(self, task_id: str, timeout_ms: float) -> asyncio.Future:
        """Create an entry and start its expiry timer. Returns the completion future.

        Raises:
            ValueError: duplicate ``task_id`` or non-positive timeout.
        """
        if task_id in self._entries:
            raise ValueError(f"task {task_id!r} is already pending")
        if timeout_ms <= 0:
            raise ValueError(f"timeout must be positive, got {timeout_ms}")

        loop = asyncio.get_running_loop()
        completion = loop.create_future()
        expiry = loop.call_later(timeout_ms / 1000, self.expire, task_id)
        self._entries[task_id] = PendingEntry(
            task_id=task_id,
            timeout_ms=timeout_ms,
            completion=completion,
            expiry=expiry,
        )
        return completion

    def resolve(self, task_id: str, result: Any) -> bool:
        """Complete the entry with *result*. Unknown ids are a logged no-op."""
        entry = self._take(task_id)
        if entry is None:
            logger.info("No pending request for task %s (late or unknown result)", task_id)
            return False
        if not entry.completion.done():
            entry.completion.set_result(result)
        return True

    def reject(self, task_id: str, exc: BaseException) -> bool:
        """Complete the entry with an exception. Unknown ids are a logged no-op."""
        entry = self._take(task_id)
        if entry is None:
            logger.debug("Reject for unknown task %s ignored", task_id)
            return False
        if not entry.completion.done():
            entry.completion.set_exception(exc)
        return True

    def expire(self, task_id: str) -> None:
        """Timer callback: fail the entry with :class:`CorrelationTimeout`."""
        entry = self._entries.get(task_id)
        if entry is None:
            return
        elapsed_ms = (time.monotonic() - entry.created_at) * 1000
        logger.warning("Task %s timed out after %.0f ms", task_id, elapsed_ms)
        self.reject(task_id, CorrelationTimeout(task_id=task_id, timeout_ms=entry.timeout_ms))

    def discard(self, task_id: str) -> bool:
        """Drop the entry without completing it (the waiter is gone)."""
        entry = self._take(task_id)
        if entry is None:
            return False
        entry.completion.cancel()
        return True

    def close_all(self, exc: BaseException) -> int:
        """Fail every pending entry with *exc*. Returns how many were pending."""
        task_ids = list(self._entries)
        for task_id in task_ids:
            self.reject(task_id, exc)
        if task_ids:
            logger.warning("Failed %d pending request(s): %s", len(task_ids), exc)
        return len(task_ids)

    def _take(self, task_id: str) -> PendingEntry | None:
        entry = self._entries.pop(task_id, None)
        if entry is not None:
            entry.expiry.cancel()
        return entry
