#!/usr/bin/env python3
"""
Purchase Sync Worker

Each loop refreshes stale reference caches (suppliers, products, locations)
and then pushes unsynced purchases. A failed login stops pushing until the
token is replaced; the loop keeps running so cached data stays fresh once it is.

Env vars:
  PURCHASE_DB_PATH        SQLite DB path (default: purchases.db)
  PURCHASE_SYNC_INTERVAL  seconds between loops (default: 60)
  PURCHASE_API_BASE / PURCHASE_API_TOKEN  remote API settings

Run:
  python sync_worker.py
"""
import logging
import time
from typing import Any, Dict

import sync_settings as settings
from purchase_service import PurchaseService, build_service_from_env

log = logging.getLogger('sync_worker')


def run_once(service: PurchaseService) -> Dict[str, Any]:
    refreshed = service.refresh_references()
    outcome = service.sync()
    if outcome.auth_required:
        log.warning(outcome.message)
    elif outcome.offline:
        log.info('offline; %d purchase(s) waiting', len(service.store.unsynced()))
    elif outcome.synced or outcome.failed:
        log.info('pushed %d purchase(s), %d failed', outcome.synced, outcome.failed)
    return {
        'references': {k: r.as_dict() for k, r in refreshed.items()},
        'sync': outcome.as_dict(),
    }


def main():
    settings.configure_logging('sync')
    log.info('starting worker, interval=%ss, db=%s', settings.SYNC_INTERVAL, settings.DB_PATH)
    service = build_service_from_env()
    try:
        while True:
            try:
                run_once(service)
            except Exception:
                log.exception('sync loop failed')
            time.sleep(settings.SYNC_INTERVAL)
    except KeyboardInterrupt:
        log.info('exiting on Ctrl+C')
    finally:
        service.store.close()


if __name__ == '__main__':
    main()
