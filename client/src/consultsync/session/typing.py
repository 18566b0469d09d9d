"""Transient typing indicators for the counterpart of a session."""

from __future__ import annotations

import time
from typing import Callable, Dict


class TypingIndicator:
    """Stores who is typing, expiring entries after ``ttl_seconds``.

    Typing stop events are easily lost on flaky networks, so every entry
    expires on its own once it is older than the TTL.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, float] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def _cleanup_expired(self, now: float) -> bool:
        removed = [user_id for user_id, ts in self._entries.items() if now - ts > self._ttl]
        for user_id in removed:
            self._entries.pop(user_id, None)
        return bool(removed)

    def set_status(self, user_id: str, is_typing: bool) -> bool:
        """Record a typing start/stop; return whether the visible set changed."""

        now = self._clock()
        changed = self._cleanup_expired(now)
        if is_typing:
            changed = changed or user_id not in self._entries
            self._entries[user_id] = now
        elif user_id in self._entries:
            self._entries.pop(user_id, None)
            changed = True
        return changed

    def clear(self, user_id: str) -> bool:
        return self.set_status(user_id, False)

    def clear_all(self) -> None:
        self._entries.clear()

    def snapshot(self) -> list[str]:
        now = self._clock()
        self._cleanup_expired(now)
        return sorted(self._entries)

    @property
    def is_anyone_typing(self) -> bool:
        return bool(self.snapshot())


__all__ = ["TypingIndicator"]
