"""Redelivery helpers for failed incident messages.

The wire payload is an external contract, so the retry counter travels in the
``x-retry-count`` AMQP header instead of the message body.

Examples
--------
>>> next_delay_ms(0, [1000, 5000, 30000])
1000
>>> next_delay_ms(7, [1000, 5000, 30000])  # clamped to last
30000
>>> retry_count_from_headers({"x-retry-count": "2"})
2
>>> should_dead_letter(5, max_retries=5)
True
"""
from __future__ import annotations

from typing import Any, List, Mapping, Optional

from libs.constants import DEFAULT_RETRY_DELAYS_MS, HEADER_RETRY_COUNT


def next_delay_ms(retry_count: int, delays: List[int] | None = None) -> int:
    """Return the next delay in milliseconds for a given retry attempt.

    The ``retry_count`` is zero-based (first retry has ``retry_count == 0``).
    Falls back to the last provided delay if ``retry_count`` exceeds bounds.
    The result is always one of ``delays``: each has its own bound delay queue.

    Parameters
    ----------
    retry_count: int
        Zero-based retry attempt counter.
    delays: list[int] | None
        Sequence of backoff delays to use. Defaults to ``DEFAULT_RETRY_DELAYS_MS``.
    """
    if not delays:
        delays = DEFAULT_RETRY_DELAYS_MS
    idx = max(min(retry_count, len(delays) - 1), 0)
    return int(delays[idx])


def retry_count_from_headers(headers: Optional[Mapping[str, Any]]) -> int:
    """Read the retry counter from AMQP headers; missing or garbage means 0."""
    if not headers:
        return 0
    raw = headers.get(HEADER_RETRY_COUNT)
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return max(int(raw), 0)
    except (TypeError, ValueError):
        return 0


def should_dead_letter(retry_count: int, max_retries: int) -> bool:
    """Return True when a failed message has used up its retries."""
    return retry_count >= max(max_retries, 0)
