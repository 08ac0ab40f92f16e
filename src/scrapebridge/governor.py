# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Payload size governor: fit a RESULT under the transport ceiling.

Tiers, tried in order, first fit wins:

1. **passthrough**: the command already fits; returned unchanged.
2. **compressed**: ``html`` replaced by ``html_compressed`` (gzip, then
   base64) tagged ``compression: "gzip+base64"``.
3. **truncated**: ``html`` cut at a UTF-8 character boundary and suffixed
   with :data:`TRUNCATION_MARKER`, tagged ``truncated: true``.
4. **dropped**: ``html`` emptied, tagged ``truncated: true``. Only this tier
   may still exceed the ceiling (metadata alone too large).

Sizes are measured with :func:`commands.encode`, the same encoder the
transport writes with, so a bounded command never trips the frame limit.
:func:`unbound` reverses tier 2 using the explicit tags only.

Dependencies: commands.py, errors.py.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import logging
import zlib
from enum import StrEnum

from .commands import Command, encoded_size
from .errors import DecompressionFailure

logger = logging.getLogger(__name__)

COMPRESSION_TAG = "gzip+base64"
TRUNCATION_MARKER = "\n<!-- scrapebridge: content truncated -->"
PAYLOAD_TOO_LARGE = "payload too large"

_COMPRESSED_FIELD = "html_compressed"
_ORIGINAL_BYTES_FIELD = "original_html_bytes"


class Tier(StrEnum):
    PASSTHROUGH = "passthrough"
    COMPRESSED = "compressed"
    TRUNCATED = "truncated"
    DROPPED = "dropped"


def bound(command: Command, ceiling: int, *, field: str = "html") -> Command:
    """Return *command* or a substitute whose encoded size is ``<= ceiling``."""
    size = encoded_size(command)
    if size <= ceiling:
        return command

    value = command.get(field)
    if not isinstance(value, str) or not value:
        logger.warning("Command of %d bytes has no '%s' to shrink (ceiling=%d)", size, field, ceiling)
        return {
            "type": command.get("type"),
            "taskId": command.get("taskId"),
            "success": False,
            "error": PAYLOAD_TOO_LARGE,
            "status_code": 0,
        }

    raw = value.encode("utf-8", "surrogatepass")
    rest = {k: v for k, v in command.items() if k != field}

    compressed = {
        **rest,
        _COMPRESSED_FIELD: base64.b64encode(gzip.compress(raw)).decode("ascii"),
        "compression": COMPRESSION_TAG,
        _ORIGINAL_BYTES_FIELD: len(raw),
    }
    compressed_size = encoded_size(compressed)
    if compressed_size <= ceiling:
        logger.info("Compressed '%s': %d -> %d bytes", field, size, compressed_size)
        return compressed

    skeleton = {**rest, field: "", "truncated": True, _ORIGINAL_BYTES_FIELD: len(raw)}
    overhead = encoded_size({**skeleton, field: TRUNCATION_MARKER})
    if overhead > ceiling:
        logger.warning(
            "Dropping '%s' (%d bytes): metadata alone needs %d of %d bytes",
            field,
            len(raw),
            overhead,
            ceiling,
        )
        return skeleton

    budget = ceiling - overhead
    while True:
        prefix = _utf8_prefix(raw, budget)
        candidate = {**skeleton, field: prefix + TRUNCATION_MARKER}
        candidate_size = encoded_size(candidate)
        if candidate_size <= ceiling:
            break
        # JSON escaping made the text longer than its raw bytes; shrink by the excess.
        budget -= candidate_size - ceiling

    logger.warning(
        "Truncated '%s': %d -> %d bytes (compressed form was %d bytes)",
        field,
        len(raw),
        len(prefix.encode("utf-8", "surrogatepass")),
        compressed_size,
    )
    return candidate


def unbound(command: Command, *, field: str = "html") -> Command:
    """Restore the ``field`` a peer shrank with :func:`bound`.

    Truncated and dropped payloads come back as sent, ``truncated`` flag and
    marker included.

    Raises:
        DecompressionFailure: unknown ``compression`` tag or corrupt payload.
    """
    tag = command.get("compression")
    if tag is None:
        return command
    if tag != COMPRESSION_TAG:
        raise DecompressionFailure(f"unsupported encoding {tag!r}")

    data = command.get(_COMPRESSED_FIELD)
    if not isinstance(data, str):
        raise DecompressionFailure(f"missing '{_COMPRESSED_FIELD}'")
    try:
        text = gzip.decompress(base64.b64decode(data, validate=True)).decode("utf-8", "surrogatepass")
    except (binascii.Error, OSError, EOFError, zlib.error, UnicodeDecodeError) as exc:
        raise DecompressionFailure(str(exc) or type(exc).__name__) from exc

    restored = {k: v for k, v in command.items() if k not in (_COMPRESSED_FIELD, "compression")}
    restored[field] = text
    return restored


def tier_of(command: Command, *, field: str = "html") -> Tier:
    """Identify the tier from the envelope tags."""
    if command.get("compression") is not None:
        return Tier.COMPRESSED
    if command.get("truncated"):
        return Tier.TRUNCATED if command.get(field) else Tier.DROPPED
    return Tier.PASSTHROUGH


def _utf8_prefix(raw: bytes, budget: int) -> str:
    """Longest prefix of *raw* within *budget* bytes that ends on a character boundary."""
    if budget <= 0:
        return ""
    cut = min(budget, len(raw))
    # Back off continuation bytes (0b10xxxxxx) to the start of the cut character.
    while 0 < cut < len(raw) and raw[cut] & 0xC0 == 0x80:
        cut -= 1
    return raw[:cut].decode("utf-8", "surrogatepass")
