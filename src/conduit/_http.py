"""Small HTTP-related constants and helpers shared across conduit.

Kept tiny to avoid circular imports between transport, retry and adapters.
"""

from __future__ import annotations

from typing import Any

# Retryable status codes shared by transport error mapping and core retry.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})
# Statuses that mean the credential itself is wrong; never retried.
AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})


def parse_retry_after(headers: Any) -> float | None:
    """Return the ``Retry-After`` delay in seconds, when present and numeric."""
    if headers is None:
        return None
    try:
        raw = headers.get("Retry-After")
    except AttributeError:
        return None
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None
