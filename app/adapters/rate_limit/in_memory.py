"""In-memory fixed-window counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around the read-modify-write of each counter.
- Expired entries are not swept; they are replaced on the next observation.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from app.adapters.rate_limit.base import AbstractWindowCounterStore, Namespace, WindowCount


@dataclass
class _CounterEntry:
    count: int
    reset_at: float


class InMemoryWindowCounterStore(AbstractWindowCounterStore):
    """Counter store keeping one window per (namespace, identity) in a dict.

    A window opens on the first request of an identity and lasts for the
    namespace's window length from that moment. Once ``now >= reset_at`` the
    entry is logically absent and the next request opens a fresh window.
    """

    def __init__(
        self,
        *,
        windows: Mapping[Namespace, int],
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            windows: Window length in seconds for each namespace.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If a window length is invalid.
        """
        for namespace, window_seconds in windows.items():
            if window_seconds < 1:
                raise ValueError(f"window for {namespace.value} must be >= 1")

        self._windows = dict(windows)
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, _CounterEntry] = {}

    @staticmethod
    def _key(namespace: Namespace, identity: str) -> str:
        return f"{namespace.value}:{identity}"

    def increment_sync(self, namespace: Namespace, identity: str) -> WindowCount:
        """Synchronous increment; the async interface delegates here.

        Raises:
            ValueError: If identity is empty.
        """
        if not identity:
            raise ValueError("identity must be a non-empty string")

        key = self._key(namespace, identity)
        window_seconds = self._windows[namespace]

        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None or now >= entry.reset_at:
                entry = _CounterEntry(count=1, reset_at=now + window_seconds)
                self._entries[key] = entry
                return WindowCount(count=1, reset_at=entry.reset_at, is_first=True)

            entry.count += 1
            return WindowCount(count=entry.count, reset_at=entry.reset_at, is_first=False)

    async def increment(self, namespace: Namespace, identity: str) -> WindowCount:
        return self.increment_sync(namespace, identity)

    async def peek(self, namespace: Namespace, identity: str) -> int:
        with self._lock:
            entry = self._entries.get(self._key(namespace, identity))
            if entry is None or self._clock() >= entry.reset_at:
                return 0
            return entry.count

    def reset_at(self, namespace: Namespace, identity: str) -> float | None:
        """Return when the live window for identity resets, if there is one."""
        with self._lock:
            entry = self._entries.get(self._key(namespace, identity))
            if entry is None or self._clock() >= entry.reset_at:
                return None
            return entry.reset_at

    def clear(self) -> None:
        """Drop all counters."""

        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
