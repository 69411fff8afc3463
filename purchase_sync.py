"""Push unsynced purchases to the remote API and record the outcome locally.

Each header is handled inside ``PurchaseStore.header_lock`` so the
create/update call and the write that stores the remote id cannot interleave
with a local edit of the same purchase. Whether a header is created or updated
depends only on its stored ``transaction_id``, which makes a rerun after a
crash safe.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from purchase_api import (
    ApiError,
    AuthenticationFailure,
    MalformedResponse,
    build_purchase_payload,
    extract_payment_lines,
    extract_remote_id,
)
from purchase_store import PurchaseStore

log = logging.getLogger(__name__)

RELOGIN_MESSAGE = 'Authentication failed. Please log in again.'


@dataclass
class SyncFailure:
    local_id: int
    kind: str
    message: str
    status_code: Optional[int] = None
    errors: Dict[str, List[str]] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'local_id': self.local_id,
            'kind': self.kind,
            'message': self.message,
            'status_code': self.status_code,
            'errors': self.errors,
        }


@dataclass
class SyncOutcome:
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[SyncFailure] = field(default_factory=list)
    auth_required: bool = False
    offline: bool = False

    @property
    def message(self) -> Optional[str]:
        if self.auth_required:
            return RELOGIN_MESSAGE
        if self.offline:
            return 'Offline: purchases stay queued until the connection returns.'
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'synced': self.synced,
            'failed': self.failed,
            'skipped': self.skipped,
            'failures': [f.as_dict() for f in self.failures],
            'auth_required': self.auth_required,
            'offline': self.offline,
            'message': self.message,
        }


_SYNCED = 'synced'
_SKIPPED = 'skipped'


def confirmed_payment_row(src: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'payment_id': src.get('id') if src.get('id') is not None else src.get('payment_id'),
        'method': src.get('method'),
        'amount': src.get('amount'),
        'note': src.get('note'),
        'account_id': src.get('account_id'),
        'paid_on': src.get('paid_on'),
    }


class SyncEngine:
    def __init__(self, store: PurchaseStore, api, connectivity: Callable[[], bool], credentials,
                 max_workers: int = 1):
        self.store = store
        self.api = api
        self.connectivity = connectivity
        self.credentials = credentials
        self.max_workers = max(1, int(max_workers or 1))

    def _preflight(self, outcome: SyncOutcome) -> bool:
        if not self.connectivity():
            outcome.offline = True
            return False
        if not self.credentials.is_authenticated():
            outcome.auth_required = True
            return False
        return True

    def run(self, should_continue: Optional[Callable[[], bool]] = None) -> SyncOutcome:
        """Push every unsynced header; ``should_continue`` is checked between headers."""
        outcome = SyncOutcome()
        if not self._preflight(outcome):
            return outcome
        pending = [h['id'] for h in self.store.unsynced()]
        if not pending:
            return outcome
        log.info("Syncing %d unsynced purchase(s)", len(pending))
        if self.max_workers == 1:
            for local_id in pending:
                if should_continue is not None and not should_continue():
                    break
                self._tally(outcome, self._sync_header(local_id))
                if outcome.auth_required:
                    break
        else:
            self._run_pool(pending, outcome, should_continue)
        log.info("Sync finished: synced=%d failed=%d skipped=%d", outcome.synced, outcome.failed, outcome.skipped)
        return outcome

    def _run_pool(self, pending: List[int], outcome: SyncOutcome,
                  should_continue: Optional[Callable[[], bool]]):
        stop = threading.Event()
        tally_lock = threading.Lock()

        def work(local_id: int):
            if stop.is_set() or (should_continue is not None and not should_continue()):
                return
            result = self._sync_header(local_id)
            with tally_lock:
                self._tally(outcome, result)
                if outcome.auth_required:
                    stop.set()

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for future in [pool.submit(work, local_id) for local_id in pending]:
                future.result()

    def sync_one(self, local_id: int) -> SyncOutcome:
        outcome = SyncOutcome()
        if self._preflight(outcome):
            self._tally(outcome, self._sync_header(local_id))
        return outcome

    def _tally(self, outcome: SyncOutcome, result):
        if result == _SYNCED:
            outcome.synced += 1
        elif result == _SKIPPED:
            outcome.skipped += 1
        else:
            outcome.failed += 1
            outcome.failures.append(result)
            if result.kind == AuthenticationFailure.kind:
                outcome.auth_required = True

    def _fail(self, local_id: int, exc: ApiError) -> SyncFailure:
        self.store.record_sync_failure(local_id, str(exc))
        return SyncFailure(local_id, exc.kind, exc.message, exc.status_code, dict(exc.errors))

    def _sync_header(self, local_id: int):
        with self.store.header_lock(local_id):
            header = self.store.get_header(local_id)
            if header is None or header['is_synced']:
                return _SKIPPED
            lines = self.store.get_lines(local_id)
            if not lines:
                log.warning("Purchase %s has no lines; not sent", local_id)
                self.store.record_sync_failure(local_id, 'Purchase has no lines')
                return SyncFailure(local_id, 'empty', 'Purchase has no lines')
            payload = build_purchase_payload(header, lines, self.store.get_payments(local_id))
            remote_id = header['transaction_id']
            try:
                if remote_id is None:
                    resp = self.api.create_purchase(payload)
                    new_id = extract_remote_id(resp)
                    if new_id is None:
                        # Marking it synced would lose the remote id for good; retry next run instead.
                        raise MalformedResponse('Purchase created but the response carried no id')
                else:
                    resp = self.api.update_purchase(remote_id, payload)
                    echoed = extract_remote_id(resp)
                    if echoed is not None and str(echoed) != str(remote_id):
                        log.warning("Update of %s answered with id %s; keeping %s", remote_id, echoed, remote_id)
                    new_id = remote_id
            except ApiError as exc:
                log.warning("Sync of purchase %s failed (%s): %s", local_id, exc.kind, exc)
                return self._fail(local_id, exc)
            confirmed = [confirmed_payment_row(p) for p in extract_payment_lines(resp)]
            self.store.mark_synced(local_id, new_id, confirmed)
            log.info("Purchase %s synced as %s", local_id, new_id)
            return _SYNCED
