"""Directory listing cache keyed by (device, storage, parent)."""

import logging
import threading
import time

from config import CACHE_EXPIRATION_INTERVAL
from filesystem.models import FileEntry

logger = logging.getLogger(__name__)


class DirectoryCache:
    """Memoizes listings until the owning device is invalidated.

    Invalidation is always per device: any mutation on a device drops every
    listing fetched from it.
    """

    def __init__(self, ttl: float | None = CACHE_EXPIRATION_INTERVAL, clock=time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        # device_id -> {(storage_id, parent_id): (timestamp, entries)}
        self._entries: dict[str, dict[tuple[int, int], tuple[float, list[FileEntry]]]] = {}

    def get(self, device_id: str, storage_id: int, parent_id: int) -> list[FileEntry] | None:
        key = (storage_id, parent_id)
        with self._lock:
            device_entries = self._entries.get(device_id)
            if not device_entries or key not in device_entries:
                return None
            stored_at, entries = device_entries[key]
            if self._ttl is not None and self._clock() - stored_at > self._ttl:
                del device_entries[key]
                return None
            return list(entries)

    def put(
        self, device_id: str, storage_id: int, parent_id: int, entries: list[FileEntry]
    ) -> None:
        with self._lock:
            device_entries = self._entries.setdefault(device_id, {})
            device_entries[(storage_id, parent_id)] = (self._clock(), list(entries))

    def invalidate(self, device_id: str) -> None:
        """Drop every listing of ``device_id``."""
        with self._lock:
            removed = self._entries.pop(device_id, None)
        if removed:
            logger.debug(f"Cleared {len(removed)} cached listings for device {device_id}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.debug("Cleared all cached listings")

    def __len__(self) -> int:
        with self._lock:
            return sum(len(d) for d in self._entries.values())
