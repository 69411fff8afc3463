"""Supplier, product and location snapshots kept fresh enough for offline use.

A refresh only happens when the cache is stale, the device is online and the
caller is authenticated. Any failure leaves the existing rows in place: a stale
cache is better than an empty one, so errors are logged and reported in the
returned ``RefreshResult`` instead of raised.
"""
from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from purchase_api import ApiError
from purchase_store import CACHE_REFRESH_KEY, CACHE_TABLES, PurchaseStore, last_sync_key

log = logging.getLogger(__name__)

ENTITIES = tuple(CACHE_TABLES)
DEFAULT_MAX_AGE = dt.timedelta(hours=24)

_FETCHERS = {
    'suppliers': lambda api: api.get_suppliers(),
    'products': lambda api: api.get_products(),
    'locations': lambda api: api.get_locations(),
}


class RefreshStatus(Enum):
    REFRESHED = 'refreshed'
    SKIPPED_FRESH = 'skipped-fresh'
    FAILED_KEPT_STALE = 'failed-kept-stale'


@dataclass
class RefreshResult:
    entity: str
    status: RefreshStatus
    count: int = 0
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {'entity': self.entity, 'status': self.status.value, 'count': self.count, 'reason': self.reason}


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _parse_stamp(raw: Optional[str]) -> Optional[dt.datetime]:
    if not raw:
        return None
    try:
        when = dt.datetime.fromisoformat(raw.replace('Z', '+00:00'))
    except ValueError:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.timezone.utc)
    return when


class SyncTimestamps:
    """Typed access to the per-entity last-sync stamps in the system table."""

    def __init__(self, store: PurchaseStore):
        self.store = store

    def last_sync(self, entity: str) -> Optional[dt.datetime]:
        return _parse_stamp(self.store.get_value(last_sync_key(entity)))

    def mark(self, entity: str, when: dt.datetime):
        self.store.set_value(last_sync_key(entity), when.isoformat())

    def clear(self, entity: str):
        self.store.delete_value(last_sync_key(entity))

    def last_full_refresh(self) -> Optional[dt.datetime]:
        return _parse_stamp(self.store.get_value(CACHE_REFRESH_KEY))

    def mark_full_refresh(self, when: dt.datetime):
        self.store.set_value(CACHE_REFRESH_KEY, when.isoformat())


class ReferenceCacheManager:
    def __init__(self, store: PurchaseStore, api, connectivity: Callable[[], bool], credentials,
                 timestamps: Optional[SyncTimestamps] = None,
                 clock: Callable[[], dt.datetime] = utc_now,
                 default_max_age: dt.timedelta = DEFAULT_MAX_AGE):
        self.store = store
        self.api = api
        self.connectivity = connectivity
        self.credentials = credentials
        self.timestamps = timestamps or SyncTimestamps(store)
        self.clock = clock
        self.default_max_age = default_max_age

    def _check(self, entity: str):
        if entity not in _FETCHERS:
            raise ValueError(f"Unknown reference entity: {entity}")

    def is_stale(self, entity: str, max_age: Optional[dt.timedelta] = None) -> bool:
        self._check(entity)
        last = self.timestamps.last_sync(entity)
        if last is None:
            return True
        return self.clock() - last >= (max_age or self.default_max_age)

    def refresh_if_stale(self, entity: str, max_age: Optional[dt.timedelta] = None) -> RefreshResult:
        if not self.is_stale(entity, max_age):
            return RefreshResult(entity, RefreshStatus.SKIPPED_FRESH, self.store.count_cache(entity))
        return self.refresh(entity)

    def refresh(self, entity: str) -> RefreshResult:
        """Fetch the full remote set and replace the cache, whatever its age."""
        self._check(entity)
        kept = RefreshStatus.FAILED_KEPT_STALE
        if not self.connectivity():
            return RefreshResult(entity, kept, self.store.count_cache(entity), 'offline')
        if not self.credentials.is_authenticated():
            return RefreshResult(entity, kept, self.store.count_cache(entity), 'unauthenticated')
        try:
            records = _FETCHERS[entity](self.api)
        except ApiError as exc:
            log.warning("Refreshing %s failed, keeping cached rows: %s", entity, exc)
            return RefreshResult(entity, kept, self.store.count_cache(entity), exc.kind)
        if not records:
            log.info("Remote returned no %s; keeping cached rows", entity)
            return RefreshResult(entity, kept, self.store.count_cache(entity), 'empty')
        try:
            count = self.store.replace_cache(entity, records, self.clock().isoformat())
        except sqlite3.Error as exc:
            log.warning("Storing %s cache failed: %s", entity, exc)
            return RefreshResult(entity, kept, self.store.count_cache(entity), 'storage')
        log.info("Cached %d %s", count, entity)
        return RefreshResult(entity, RefreshStatus.REFRESHED, count)

    def refresh_all(self, max_age: Optional[dt.timedelta] = None, force: bool = False) -> Dict[str, RefreshResult]:
        """Refresh the three reference types concurrently."""
        task = self.refresh if force else (lambda entity: self.refresh_if_stale(entity, max_age))
        with ThreadPoolExecutor(max_workers=len(ENTITIES)) as pool:
            results = dict(zip(ENTITIES, pool.map(task, ENTITIES)))
        if any(r.status is RefreshStatus.REFRESHED for r in results.values()):
            self.timestamps.mark_full_refresh(self.clock())
        return results

    def search(self, entity: str, term: Optional[str] = None) -> List[Dict[str, Any]]:
        self._check(entity)
        return self.store.search_cache(entity, term)

    def stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for entity in ENTITIES:
            last = self.timestamps.last_sync(entity)
            out[entity] = {
                'count': self.store.count_cache(entity),
                'last_sync': last.isoformat() if last else None,
                'stale': self.is_stale(entity),
            }
        full = self.timestamps.last_full_refresh()
        out['last_refresh'] = full.isoformat() if full else None
        return out

    def clear(self):
        self.store.clear_caches()
