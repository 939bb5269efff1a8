"""
DiskCache-based Status Store Implementation

A filesystem-backed status store using the diskcache library. Records
survive a server restart and can be shared by several processes.

Key Benefits:
- Atomic admission and consumption through SQLite transactions
- Optional TTL so orphaned busy records eventually expire
- Context manager support for proper cleanup
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

import diskcache

from .base_status_store import StatusStore
from .status import (
    REQUESTED,
    SessionKey,
    StoreStats,
    first_line,
    is_terminal,
    summarize_records,
)

logger = logging.getLogger(__name__)

_KEY_PREFIX = "status:"


class DiskCacheStatusStore(StatusStore):
    """
    Persistent StatusStore using diskcache.

    Keys are ``status:<metric>:<context_id>``.
    """

    def __init__(
        self,
        cache_dir: str | Path = os.path.join(tempfile.gettempdir(), "vector_status"),
        ttl_seconds: float | None = None,
    ) -> None:
        """
        Initialize DiskCacheStatusStore.

        Args:
            cache_dir: Directory for the cache database
            ttl_seconds: Expiry for records; None keeps them until cleared
        """
        self._cache_dir = Path(cache_dir)
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._ttl_seconds = ttl_seconds
        self._cache = diskcache.Cache(directory=str(self._cache_dir))

    def close(self) -> None:
        """Close the cache and cleanup resources."""
        if hasattr(self, "_cache"):
            self._cache.close()

    def _get_key(self, key: SessionKey) -> str:
        return f"{_KEY_PREFIX}{key.metric}:{key.context_id}"

    def _parse_key(self, raw: str) -> SessionKey | None:
        if not isinstance(raw, str) or not raw.startswith(_KEY_PREFIX):
            return None
        metric, sep, ctx = raw[len(_KEY_PREFIX) :].rpartition(":")
        if not sep or not ctx.isdigit():
            return None
        return SessionKey(metric, int(ctx))

    def get_status(self, key: SessionKey) -> str | None:
        value = self._cache.get(self._get_key(key))
        if value is None:
            return None
        return first_line(str(value))

    def set_status(self, key: SessionKey, status: str) -> None:
        self._cache.set(
            self._get_key(key), first_line(status), expire=self._ttl_seconds
        )

    def remove_status(self, key: SessionKey) -> None:
        self._cache.delete(self._get_key(key))

    def admit(self, key: SessionKey) -> bool:
        cache_key = self._get_key(key)
        with self._cache.transact():
            current = self._cache.get(cache_key)
            if current is not None and not is_terminal(first_line(str(current))):
                return False
            self._cache.set(cache_key, REQUESTED, expire=self._ttl_seconds)
        return True

    def consume(self, key: SessionKey, expected: str) -> bool:
        cache_key = self._get_key(key)
        with self._cache.transact():
            current = self._cache.get(cache_key)
            if current is None or first_line(str(current)) != expected:
                return False
            self._cache.delete(cache_key)
        return True

    def records(self) -> dict[SessionKey, str]:
        result: dict[SessionKey, str] = {}
        for raw in list(self._cache):
            key = self._parse_key(raw)
            if key is None:
                continue
            value = self._cache.get(raw)
            if value is not None:
                result[key] = first_line(str(value))
        return result

    def clear(self) -> None:
        removed = self._cache.clear()
        logger.debug(f"Cleared {removed} status records from {self._cache_dir}")

    def get_store_stats(self) -> StoreStats:
        records = {str(k): v for k, v in self.records().items()}
        return summarize_records(records, backend="diskcache")
