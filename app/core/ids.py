"""Sortable identifier generation.

All primary keys are ULIDs: 48 bits of millisecond timestamp followed by 80
random bits, rendered as 26 Crockford base32 characters whose lexicographic
order matches creation order. ``ULID()`` alone gives no order between two ids
minted in the same millisecond, so the factory below bumps the random part to
keep ids strictly increasing within a process.
"""

import threading

from ulid import ULID

_lock = threading.Lock()
_last_value = 0


def new_id() -> str:
    """Return a new ULID string, strictly greater than any previously returned here."""
    global _last_value
    with _lock:
        candidate = int.from_bytes(bytes(ULID()), "big")
        if candidate <= _last_value:
            candidate = _last_value + 1
        _last_value = candidate
        return str(ULID.from_bytes(candidate.to_bytes(16, "big")))
