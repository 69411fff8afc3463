"""Merged purchase listing: the remote page plus whatever only exists locally."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from purchase_api import ApiError
from purchase_store import PurchaseStore
from purchase_sync import RELOGIN_MESSAGE
from reconcile import dedup_by_remote_id, remote_id_of

log = logging.getLogger(__name__)

_FILTER_KEYS = ('supplier_id', 'location_id', 'status', 'payment_status',
                'start_date', 'end_date', 'ref_no')


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, '') else None
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, '') else None
    except (TypeError, ValueError):
        return None


def _same(a: Any, b: Any) -> bool:
    return a is not None and b is not None and str(a) == str(b)


@dataclass
class PurchaseFilters:
    supplier_id: Optional[int] = None
    location_id: Optional[int] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    ref_no: Optional[str] = None
    page: int = 1
    per_page: int = 20

    @classmethod
    def from_mapping(cls, src: Dict[str, Any], per_page: int = 20) -> "PurchaseFilters":
        return cls(
            supplier_id=_to_int(src.get('supplier_id')),
            location_id=_to_int(src.get('location_id')),
            status=src.get('status') or None,
            payment_status=src.get('payment_status') or None,
            start_date=src.get('start_date') or None,
            end_date=src.get('end_date') or None,
            ref_no=src.get('ref_no') or None,
            page=_to_int(src.get('page')) or 1,
            per_page=_to_int(src.get('per_page')) or per_page,
        )

    def remote_params(self) -> Dict[str, Any]:
        params = {k: getattr(self, k) for k in _FILTER_KEYS}
        params.update(page=self.page, per_page=self.per_page)
        return params


@dataclass
class PurchaseListing:
    purchases: List[Dict[str, Any]] = field(default_factory=list)
    current_page: int = 1
    last_page: int = 1
    per_page: int = 20
    total: int = 0
    offline: bool = False
    error: Optional[str] = None

    @property
    def has_next_page(self) -> bool:
        return self.current_page < self.last_page

    def as_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out['has_next_page'] = self.has_next_page
        return out


class PurchaseViewBuilder:
    def __init__(self, store: PurchaseStore, api, connectivity: Callable[[], bool], credentials,
                 references=None):
        self.store = store
        self.api = api
        self.connectivity = connectivity
        self.credentials = credentials
        self.references = references

    def list(self, filters: Optional[PurchaseFilters] = None) -> PurchaseListing:
        filters = filters or PurchaseFilters()
        if self.references is not None:
            self.references.refresh_all()
        local = self.store.list_headers()
        if not self.connectivity():
            return self._local_only(local, filters, offline=True)
        if not self.credentials.is_authenticated():
            return self._local_only(local, filters, error=RELOGIN_MESSAGE)
        try:
            page = self.api.list_purchases(**filters.remote_params())
        except ApiError as exc:
            log.warning("Remote purchase list unavailable, showing local rows: %s", exc)
            return self._local_only(local, filters, error=str(exc))

        by_remote_id = {str(h['transaction_id']): h for h in local if h['transaction_id'] is not None}
        remote_rows = [self._from_remote(r, by_remote_id) for r in page.purchases]
        seen_ids = {str(r['transaction_id']) for r in remote_rows if r['transaction_id'] is not None}
        seen_refs = {(str(r['contact_id']), r['ref_no']) for r in remote_rows if r['ref_no']}

        extras = []
        for header in local:
            # Synced rows are covered by the remote page.
            if header['is_synced'] or not self._matches(header, filters):
                continue
            if header['transaction_id'] is not None:
                if str(header['transaction_id']) in seen_ids:
                    continue
            elif header['ref_no'] and (str(header['contact_id']), header['ref_no']) in seen_refs:
                continue
            extras.append(self._from_local(header))

        merged = dedup_by_remote_id(remote_rows + extras, key=lambda r: r['transaction_id'])
        return PurchaseListing(
            purchases=merged,
            current_page=page.current_page,
            last_page=page.last_page,
            per_page=page.per_page,
            total=page.total + len(extras),
        )

    def _local_only(self, local: List[Dict[str, Any]], filters: PurchaseFilters,
                    offline: bool = False, error: Optional[str] = None) -> PurchaseListing:
        rows = [self._from_local(h) for h in local if self._matches(h, filters)]
        return PurchaseListing(purchases=rows, per_page=max(filters.per_page, len(rows)),
                               total=len(rows), offline=offline, error=error)

    @staticmethod
    def _matches(header: Dict[str, Any], filters: PurchaseFilters) -> bool:
        if filters.status and header.get('status') != filters.status:
            return False
        if filters.supplier_id is not None and not _same(header.get('contact_id'), filters.supplier_id):
            return False
        if filters.location_id is not None and not _same(header.get('location_id'), filters.location_id):
            return False
        return True

    def _from_local(self, header: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'local_id': header['id'],
            'transaction_id': header['transaction_id'],
            'source': 'local',
            'is_synced': bool(header['is_synced']),
            'pending_changes': not header['is_synced'],
            'ref_no': header.get('ref_no'),
            'status': header.get('status'),
            'payment_status': None,
            'transaction_date': header.get('transaction_date'),
            'contact_id': header.get('contact_id'),
            'supplier_name': self.store.supplier_name(header.get('contact_id')),
            'location_id': header.get('location_id'),
            'location_name': self.store.location_name(header.get('location_id')),
            'final_total': _to_float(header.get('final_total')),
            'last_sync_error': header.get('last_sync_error'),
        }

    def _from_remote(self, record: Dict[str, Any], by_remote_id: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        remote_id = remote_id_of(record)
        mirror = by_remote_id.get(str(remote_id)) if remote_id is not None else None
        contact = record.get('contact') if isinstance(record.get('contact'), dict) else {}
        location = record.get('location') if isinstance(record.get('location'), dict) else {}
        contact_id = record.get('contact_id') if record.get('contact_id') is not None else contact.get('id')
        location_id = record.get('location_id') if record.get('location_id') is not None else location.get('id')
        return {
            'local_id': mirror['id'] if mirror else None,
            'transaction_id': remote_id,
            'source': 'remote',
            'is_synced': True,
            'pending_changes': bool(mirror and not mirror['is_synced']),
            'ref_no': record.get('ref_no'),
            'status': record.get('status'),
            'payment_status': record.get('payment_status'),
            'transaction_date': record.get('transaction_date'),
            'contact_id': contact_id,
            'supplier_name': (record.get('supplier_name') or contact.get('name')
                              or contact.get('supplier_business_name')
                              or self.store.supplier_name(contact_id)),
            'location_id': location_id,
            'location_name': location.get('name') or self.store.location_name(location_id),
            'final_total': _to_float(record.get('final_total')),
            'last_sync_error': None,
        }
