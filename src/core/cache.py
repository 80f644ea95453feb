"""Read-through cache for values that live as long as the process."""
from __future__ import annotations

import threading
from typing import Callable, Generic, Hashable, TypeVar

T = TypeVar("T")


class ProcessCache(Generic[T]):
    """Lazily populated cache without expiry.

    Used for signing certificates, the email hash secret and the engagement
    TTL parameter. A process restart is the only invalidation. Failed fetches
    are not cached, so the next caller retries the fetch.
    """

    def __init__(self, name: str, initial: dict[Hashable, T] | None = None) -> None:
        self.name = name
        self._values: dict[Hashable, T] = dict(initial or {})
        self._lock = threading.Lock()

    def get_or_fetch(self, key: Hashable, fetch_fn: Callable[[], T]) -> T:
        with self._lock:
            if key in self._values:
                return self._values[key]
        value = fetch_fn()
        with self._lock:
            # A concurrent fetch may have landed first; keep the earliest value.
            return self._values.setdefault(key, value)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)
