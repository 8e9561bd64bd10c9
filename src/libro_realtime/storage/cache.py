"""Expiring offline cache for books, reservations and notifications."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from ..sync.config import SyncConfig
from ..sync.interfaces import DurableStore
from ..sync.models import CacheEntryType, OfflineCacheEntry, StorageInfo


logger = logging.getLogger(__name__)


class OfflineCache:
    """Stores data for offline use and sweeps entries past their expiry."""

    def __init__(self, store: DurableStore, config: SyncConfig):
        self._store = store
        self._ttl = timedelta(hours=config.cache_ttl_hours)
        self._search_ttl = timedelta(hours=config.search_cache_ttl_hours)
        self._sweep_interval = config.cache_sweep_interval_seconds
        self._quota = config.storage_quota_bytes
        self._sweep_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Sweep once, then keep sweeping periodically."""
        self.sweep_expired()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._periodic_sweep())
            logger.info(f"Offline cache sweep started (interval: {self._sweep_interval}s)")

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Offline cache sweep stopped")

    def store_for_offline(self, entry_id: str, entry_type: CacheEntryType, data: Any,
                          ttl: Optional[timedelta] = None,
                          now: Optional[datetime] = None) -> OfflineCacheEntry:
        """Store data for offline access, replacing any entry with the same (type, id)."""
        cached_at = now or datetime.now()
        entry = OfflineCacheEntry(
            id=entry_id,
            type=entry_type,
            data=data,
            cached_at=cached_at,
            expires_at=cached_at + (ttl if ttl is not None else self._ttl),
        )
        self._store.put_cache_entry(entry)
        logger.debug(f"Cached {entry_type.value} entry {entry_id} until {entry.expires_at.isoformat()}")
        return entry

    def get_offline_data(self, entry_type: CacheEntryType) -> List[OfflineCacheEntry]:
        """Return the entries of a type.

        Expired entries stay visible until the next sweep removes them.
        """
        return self._store.get_cache_entries(entry_type)

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        removed = self._store.delete_expired_cache(now or datetime.now())
        if removed:
            logger.info(f"Removed {removed} expired offline cache entries")
        return removed

    def clear(self) -> None:
        self._store.clear_cache()
        logger.info("Offline cache cleared")

    def cache_search(self, query: str, results: List[Any], now: Optional[datetime] = None) -> None:
        self._store.put_search(query, results, now or datetime.now())

    def get_cached_search(self, query: str, now: Optional[datetime] = None) -> Optional[List[Any]]:
        """Return cached search results, or None when missing or stale."""
        cached = self._store.get_search(query)
        if cached is None:
            return None
        results, cached_at = cached
        if (now or datetime.now()) - cached_at >= self._search_ttl:
            return None
        return results

    def storage_info(self) -> StorageInfo:
        used = self._store.size_bytes()
        percentage = round(used / self._quota * 100) if self._quota > 0 else 0
        return StorageInfo(used=used, quota=self._quota, percentage=percentage)

    # Per-user helpers

    def store_user_books(self, user_id: str, books: List[Any]) -> OfflineCacheEntry:
        return self.store_for_offline(f"user_books_{user_id}", CacheEntryType.BOOK, books)

    def get_user_books(self, user_id: str) -> List[Any]:
        return self._find_data(CacheEntryType.BOOK, f"user_books_{user_id}")

    def store_user_reservations(self, user_id: str, reservations: List[Any]) -> OfflineCacheEntry:
        return self.store_for_offline(
            f"user_reservations_{user_id}", CacheEntryType.RESERVATION, reservations
        )

    def get_user_reservations(self, user_id: str) -> List[Any]:
        return self._find_data(CacheEntryType.RESERVATION, f"user_reservations_{user_id}")

    def store_user_notifications(self, user_id: str, notifications: List[Any]) -> OfflineCacheEntry:
        return self.store_for_offline(
            f"user_notifications_{user_id}", CacheEntryType.NOTIFICATION, notifications
        )

    def get_user_notifications(self, user_id: str) -> List[Any]:
        return self._find_data(CacheEntryType.NOTIFICATION, f"user_notifications_{user_id}")

    def _find_data(self, entry_type: CacheEntryType, entry_id: str) -> List[Any]:
        for entry in self.get_offline_data(entry_type):
            if entry.id == entry_id:
                return entry.data
        return []

    async def _periodic_sweep(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._sweep_interval)
                self.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in offline cache sweep: {e}")
