"""
In-Memory Status Store Implementation (Cacheout-backed)

Provides a StatusStore kept entirely in process memory. Records are lost on
restart, which suits single-process deployments and tests.

Design notes:
- Uses a single Cacheout cache keyed by SessionKey.
- A re-entrant lock makes admit/consume atomic with respect to other
  threads of the same process.
"""

from __future__ import annotations

import threading
from typing import Optional, cast

from cacheout import Cache

from .base_status_store import StatusStore
from .status import (
    REQUESTED,
    SessionKey,
    StoreStats,
    first_line,
    is_terminal,
    summarize_records,
)


class InMemoryStatusStore(StatusStore):
    """In-memory StatusStore with optional record TTL."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_records: int = 10000,
    ) -> None:
        self._ttl_seconds = ttl_seconds or 0
        self._max_records = max_records

        self._records = Cache(maxsize=max_records, ttl=self._ttl_seconds)
        self._lock = threading.RLock()

    def get_status(self, key: SessionKey) -> str | None:
        with self._lock:
            return cast(Optional[str], self._records.get(key))

    def set_status(self, key: SessionKey, status: str) -> None:
        with self._lock:
            self._records.set(key, first_line(status), ttl=self._ttl_seconds)

    def remove_status(self, key: SessionKey) -> None:
        with self._lock:
            self._records.delete(key)

    def admit(self, key: SessionKey) -> bool:
        with self._lock:
            current = cast(Optional[str], self._records.get(key))
            if current is not None and not is_terminal(current):
                return False
            self._records.set(key, REQUESTED, ttl=self._ttl_seconds)
            return True

    def consume(self, key: SessionKey, expected: str) -> bool:
        with self._lock:
            if self._records.get(key) != expected:
                return False
            self._records.delete(key)
            return True

    def records(self) -> dict[SessionKey, str]:
        with self._lock:
            result: dict[SessionKey, str] = {}
            for key in list(self._records.keys()):
                value = self._records.get(key)
                if value is not None:
                    result[key] = value
            return result

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def get_store_stats(self) -> StoreStats:
        records = {str(k): v for k, v in self.records().items()}
        return summarize_records(records, backend="memory")
