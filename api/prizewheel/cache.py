"""Display cache for the public prize list and winner ticker.

Entries are dropped when the spin (or an admin mutation) publishes a change
event after its commit. The cache only ever affects how fresh the public
listings are; spins never read from it.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

PRIZES_CHANGED = "prizes_changed"
WINNERS_CHANGED = "winners_changed"

PRIZES_KEY = "prizes:wheel"
WINNERS_KEY_PREFIX = "winners:recent"

_entries: dict[str, tuple[float, Any]] = {}
_subscribers: dict[str, list[Callable[[], None]]] = {}


def get(key: str) -> Any | None:
    entry = _entries.get(key)
    if entry is None:
        return None
    expires_at, value = entry
    if time.monotonic() > expires_at:
        _entries.pop(key, None)
        return None
    return value


def put(key: str, value: Any, ttl: float) -> None:
    _entries[key] = (time.monotonic() + ttl, value)


def delete_prefix(prefix: str) -> None:
    for key in [k for k in _entries if k.startswith(prefix)]:
        _entries.pop(key, None)


def clear() -> None:
    _entries.clear()


async def get_or_set(key: str, loader: Callable[[], Awaitable[Any]], ttl: float) -> Any:
    value = get(key)
    if value is None:
        value = await loader()
        put(key, value, ttl)
    return value


def subscribe(event: str, handler: Callable[[], None]) -> None:
    _subscribers.setdefault(event, []).append(handler)


def publish(*events: str) -> None:
    """Notify subscribers. Called only after a commit; handler errors are logged."""
    for event in events:
        for handler in _subscribers.get(event, []):
            try:
                handler()
            except Exception:
                logger.exception("Cache handler for %s failed", event)


subscribe(PRIZES_CHANGED, lambda: delete_prefix(PRIZES_KEY))
subscribe(WINNERS_CHANGED, lambda: delete_prefix(WINNERS_KEY_PREFIX))
