#!/usr/bin/env python3
"""Purchase order service: local-first writes, background-safe sync, merged listings.

Run:
  python purchase_service.py --sync
  python purchase_service.py --refresh --force
  python purchase_service.py --list --status ordered
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional, Sequence

import sync_settings as settings
from purchase_api import (
    ApiError,
    HttpConnectivityProbe,
    PurchaseApiClient,
    RemoteRequestError,
    StaticCredentials,
)
from purchase_store import PurchaseStore
from purchase_sync import SyncEngine, SyncOutcome
from purchase_view import PurchaseFilters, PurchaseListing, PurchaseViewBuilder
from reconcile import remote_id_of
from reference_cache import ENTITIES, ReferenceCacheManager

log = logging.getLogger(__name__)


class PurchaseServiceError(Exception):
    pass


class PurchaseService:
    def __init__(self, store: PurchaseStore, api, connectivity: Callable[[], bool], credentials,
                 max_workers: int = 1, cache_max_age=None):
        self.store = store
        self.api = api
        self.connectivity = connectivity
        self.credentials = credentials
        self.references = ReferenceCacheManager(store, api, connectivity, credentials,
                                                default_max_age=cache_max_age or settings.CACHE_MAX_AGE)
        self.engine = SyncEngine(store, api, connectivity, credentials, max_workers=max_workers)
        self.view = PurchaseViewBuilder(store, api, connectivity, credentials, references=self.references)

    def _online(self) -> bool:
        return bool(self.connectivity()) and self.credentials.is_authenticated()

    # ---------- purchases ----------
    def create_purchase(self, header: Dict[str, Any], lines: Sequence[Dict[str, Any]],
                        payments: Sequence[Dict[str, Any]] = (), sync_now: bool = True) -> Dict[str, Any]:
        """Save locally first; push right away when the device is online."""
        local_id = self.store.create_purchase(header, lines, payments)
        log.info("Stored purchase %s (ref %s) locally", local_id, header.get('ref_no'))
        outcome = self.engine.sync_one(local_id) if sync_now else SyncOutcome(offline=not self.connectivity())
        return {'local_id': local_id, 'sync': outcome.as_dict(), 'purchase': self.get_purchase(local_id)}

    def get_purchase(self, local_id: int) -> Optional[Dict[str, Any]]:
        header = self.store.get_header(local_id)
        if header is None:
            return None
        header['lines'] = self.store.get_lines(local_id)
        header['payments'] = self.store.get_payments(local_id)
        header['supplier_name'] = self.store.supplier_name(header.get('contact_id'))
        header['location_name'] = self.store.location_name(header.get('location_id'))
        return header

    def get_remote_purchase(self, remote_id: Any) -> Dict[str, Any]:
        return self.api.get_purchase(remote_id)

    def edit_purchase(self, local_id: int, changes: Optional[Dict[str, Any]] = None,
                      lines: Optional[Sequence[Dict[str, Any]]] = None, sync_now: bool = False) -> Dict[str, Any]:
        if self.store.get_header(local_id) is None:
            raise PurchaseServiceError(f"Purchase {local_id} not found")
        if changes:
            self.store.update_header(local_id, changes)
        if lines is not None:
            self.store.replace_lines(local_id, lines)
        outcome = self.engine.sync_one(local_id) if sync_now else None
        return {'local_id': local_id, 'sync': outcome.as_dict() if outcome else None,
                'purchase': self.get_purchase(local_id)}

    def add_payment(self, local_id: int, payment: Dict[str, Any]):
        if self.store.get_header(local_id) is None:
            raise PurchaseServiceError(f"Purchase {local_id} not found")
        self.store.add_payment(local_id, payment)

    def delete_purchase(self, local_id: int) -> bool:
        """Remove remotely first when the purchase was ever synced, then locally.

        The header lock is held throughout so an in-flight push finishes (and
        records its remote id) before the id is read.
        """
        with self.store.header_lock(local_id):
            header = self.store.get_header(local_id)
            if header is None:
                return self.store.delete_header(local_id)
            remote_id = header['transaction_id']
            if remote_id is not None:
                if not self._online():
                    raise PurchaseServiceError('Synced purchases can only be deleted while online')
                try:
                    self.api.delete_purchase(remote_id)
                except RemoteRequestError as exc:
                    if exc.status_code != 404:
                        raise
                    log.info("Purchase %s already gone remotely", remote_id)
            return self.store.delete_header(local_id)

    def update_status(self, local_id: int, status: str) -> Dict[str, Any]:
        with self.store.header_lock(local_id):
            header = self.store.get_header(local_id)
            if header is None:
                raise PurchaseServiceError(f"Purchase {local_id} not found")
            remote_id = header['transaction_id']
            if remote_id is not None and self._online():
                self.api.update_status(remote_id, status)
                self.store.set_status(local_id, status)
            else:
                # Sent with the next full sync.
                self.store.update_header(local_id, {'status': status})
        return self.get_purchase(local_id)

    def fetch_specified(self, remote_ids: Sequence[Any]) -> List[Dict[str, Any]]:
        """Refresh the local mirror of the given remote purchases and drop the ones that vanished."""
        if not remote_ids or not self._online():
            return []
        try:
            records = self.api.get_purchases(remote_ids)
        except ApiError as exc:
            log.warning("Fetching purchases %s failed: %s", remote_ids, exc)
            return []
        for record in records:
            self.store.upsert_remote_header(record)
        returned = [remote_id_of(r) for r in records]
        pruned = self.store.prune_mirror(returned, scope_ids=remote_ids)
        log.info("Retrieved %d unique purchases, pruned %d local mirror rows", len(records), pruned)
        return records

    def check_reference(self, contact_id: Any, ref_no: str) -> Optional[bool]:
        """True when the supplier already has this reference number; None when unknown."""
        if not self._online():
            return None
        return self.api.check_reference(contact_id, ref_no)

    def list_purchases(self, filters: Optional[PurchaseFilters] = None) -> PurchaseListing:
        return self.view.list(filters)

    def search_purchases(self, term: str) -> List[Dict[str, Any]]:
        return self.store.search_headers(term)

    def sync(self, should_continue: Optional[Callable[[], bool]] = None) -> SyncOutcome:
        return self.engine.run(should_continue)

    # ---------- reference data ----------
    def refresh_references(self, force: bool = False, max_age=None):
        return self.references.refresh_all(max_age=max_age, force=force)

    def search_reference(self, entity: str, term: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.references.search(entity, term)

    def cache_stats(self) -> Dict[str, Any]:
        return self.references.stats()

    def clear_cache(self):
        self.references.clear()


def build_service_from_env(db_path: Optional[str] = None) -> PurchaseService:
    store = PurchaseStore.open(db_path or settings.DB_PATH)
    credentials = StaticCredentials(settings.API_TOKEN)
    api = PurchaseApiClient(settings.API_BASE or '', credentials, prefix=settings.API_PREFIX,
                            timeout=(settings.CONNECT_TIMEOUT, settings.READ_TIMEOUT))
    probe = HttpConnectivityProbe(settings.API_BASE)
    return PurchaseService(store, api, probe, credentials, max_workers=settings.SYNC_WORKERS)


def main():
    ap = argparse.ArgumentParser(description="Offline-first purchase sync")
    ap.add_argument("--db", default=settings.DB_PATH, help="Path to SQLite DB")
    ap.add_argument("--sync", action="store_true", help="Push unsynced purchases")
    ap.add_argument("--refresh", action="store_true", help="Refresh stale supplier/product/location caches")
    ap.add_argument("--force", action="store_true", help="With --refresh: ignore cache age")
    ap.add_argument("--list", action="store_true", help="Print the merged purchase list")
    ap.add_argument("--status", default=None, help="With --list: filter by status")
    ap.add_argument("--supplier", type=int, default=None, help="With --list: filter by supplier id")
    ap.add_argument("--page", type=int, default=1, help="With --list: page number")
    ap.add_argument("--fetch", default=None, help="Comma-separated remote ids to mirror locally")
    ap.add_argument("--search", nargs=2, metavar=("ENTITY", "TERM"), help="Search a reference cache")
    ap.add_argument("--stats", action="store_true", help="Print cache and DB counts")
    ap.add_argument("--clear-cache", action="store_true", help="Wipe reference caches")
    args = ap.parse_args()

    settings.configure_logging('purchase-sync')
    service = build_service_from_env(args.db)

    if args.clear_cache:
        service.clear_cache()
        print("Reference caches cleared")

    if args.refresh:
        results = service.refresh_references(force=args.force)
        print(json.dumps({k: r.as_dict() for k, r in results.items()}, indent=2))

    if args.sync:
        outcome = service.sync()
        print(json.dumps(outcome.as_dict(), indent=2))
        if outcome.auth_required:
            print(outcome.message, file=sys.stderr)

    if args.fetch:
        ids = [i.strip() for i in args.fetch.split(',') if i.strip()]
        print(json.dumps(service.fetch_specified(ids), indent=2, default=str))

    if args.search:
        entity, term = args.search
        if entity not in ENTITIES:
            ap.error(f"ENTITY must be one of: {', '.join(ENTITIES)}")
        print(json.dumps(service.search_reference(entity, term), indent=2, default=str))

    if args.list:
        filters = PurchaseFilters(status=args.status, supplier_id=args.supplier, page=args.page,
                                  per_page=settings.PER_PAGE)
        print(json.dumps(service.list_purchases(filters).as_dict(), indent=2, default=str))

    if args.stats:
        print(json.dumps({'cache': service.cache_stats(), 'db': service.store.counts()}, indent=2))


if __name__ == "__main__":
    main()
