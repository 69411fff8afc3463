"""HTTP client for the remote purchase API.

All calls go through ``PurchaseApiClient._request`` which attaches the bearer
token, applies the (connect, read) timeout and turns transport and HTTP
errors into the ``ApiError`` hierarchy below.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from reconcile import dedup_by_remote_id

log = logging.getLogger(__name__)


# ---------- errors ----------
class ApiError(Exception):
    kind = 'api'

    def __init__(self, message: str, status_code: Optional[int] = None,
                 errors: Optional[Dict[str, List[str]]] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.errors = errors or {}

    def __str__(self):
        if self.status_code:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message


class NetworkFailure(ApiError):
    kind = 'network'


class AuthenticationFailure(ApiError):
    kind = 'auth'


class ValidationFailure(ApiError):
    kind = 'validation'


class ServerFailure(ApiError):
    kind = 'server'


class MalformedResponse(ApiError):
    kind = 'malformed'


class RemoteRequestError(ApiError):
    """Any other 4xx the caller cannot fix by retrying."""
    kind = 'request'


def _body_message(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    err = body.get('error')
    if isinstance(err, dict):
        err = err.get('message')
    msg = body.get('message') or body.get('msg') or err
    return str(msg) if msg else None


def error_from_response(resp: requests.Response) -> ApiError:
    """Map a non-2xx response onto the error taxonomy."""
    code = resp.status_code
    try:
        body = resp.json()
    except ValueError:
        body = None
    if code == 401:
        return AuthenticationFailure('Authentication failed. Please login again.', code)
    if code == 403:
        return RemoteRequestError('You do not have permission to perform this action.', code)
    if code == 404:
        return RemoteRequestError(_body_message(body) or 'Requested purchase resource was not found.', code)
    if code == 422:
        errors: Dict[str, List[str]] = {}
        raw = body.get('errors') if isinstance(body, dict) else None
        if isinstance(raw, dict):
            for fld, msgs in raw.items():
                errors[fld] = [str(m) for m in msgs] if isinstance(msgs, list) else [str(msgs)]
        lines = [f"{fld}: {m}" for fld, msgs in errors.items() for m in msgs]
        return ValidationFailure("\n".join(lines) or _body_message(body) or 'Validation failed', code, errors)
    if code >= 500:
        return ServerFailure(_body_message(body) or 'Server error occurred', code)
    return RemoteRequestError(_body_message(body) or f'Request failed with HTTP {code}', code)


# ---------- response shapes ----------
def _top_level(key: str) -> Callable[[Dict[str, Any]], Any]:
    return lambda resp: resp.get(key)


def _nested(key: str) -> Callable[[Dict[str, Any]], Any]:
    def pick(resp: Dict[str, Any]) -> Any:
        data = resp.get('data')
        return data.get(key) if isinstance(data, dict) else None
    return pick


# Tried in order; the first non-empty value is the remote id.
REMOTE_ID_STRATEGIES = (
    _top_level('id'),
    _top_level('transaction_id'),
    _nested('id'),
    _nested('transaction_id'),
)


def extract_remote_id(response: Any) -> Optional[Any]:
    if not isinstance(response, dict):
        return None
    for strategy in REMOTE_ID_STRATEGIES:
        value = strategy(response)
        if value not in (None, ''):
            return value
    return None


def extract_payment_lines(response: Any) -> List[Dict[str, Any]]:
    """Remote-confirmed payments, looked up at the top level and under ``data``."""
    if not isinstance(response, dict):
        return []
    scopes = [response]
    if isinstance(response.get('data'), dict):
        scopes.append(response['data'])
    for scope in scopes:
        for key in ('payment_lines', 'payments'):
            value = scope.get(key)
            if isinstance(value, list) and value:
                return [p for p in value if isinstance(p, dict)]
    return []


def _list_items(body: Any) -> List[Dict[str, Any]]:
    if isinstance(body, list):
        items = body
    elif isinstance(body, dict) and isinstance(body.get('data'), list):
        items = body['data']
    elif isinstance(body, dict) and isinstance(body.get('results'), list):
        items = body['results']
    else:
        items = []
    return [it for it in items if isinstance(it, dict)]


@dataclass
class PurchasePage:
    purchases: List[Dict[str, Any]] = field(default_factory=list)
    current_page: int = 1
    last_page: int = 1
    per_page: int = 20
    total: int = 0

    @property
    def has_next_page(self) -> bool:
        return self.current_page < self.last_page


def parse_purchase_page(body: Any, per_page: int = 20) -> PurchasePage:
    """Accept the flat ``{data: [...]}`` envelope or the nested ``{data: {data: [...]}}`` one."""
    if isinstance(body, dict) and isinstance(body.get('data'), list):
        meta = body
    elif isinstance(body, dict) and isinstance(body.get('data'), dict) and isinstance(body['data'].get('data'), list):
        meta = body['data']
    else:
        raise MalformedResponse('Unexpected purchase list response')
    rows = dedup_by_remote_id(it for it in meta['data'] if isinstance(it, dict))
    try:
        return PurchasePage(
            purchases=rows,
            current_page=int(meta.get('current_page') or 1),
            last_page=int(meta.get('last_page') or 1),
            per_page=int(meta.get('per_page') or per_page),
            total=int(meta.get('total') if meta.get('total') is not None else len(rows)),
        )
    except (TypeError, ValueError) as exc:
        raise MalformedResponse(f'Invalid purchase list pagination: {exc}')


# ---------- payload ----------
def build_purchase_payload(header: Dict[str, Any], lines: Sequence[Dict[str, Any]],
                           payments: Sequence[Dict[str, Any]] = ()) -> Dict[str, Any]:
    """Remote shape of a local purchase: header fields plus embedded lines and payments."""
    payload = {
        'location_id': header.get('location_id'),
        'contact_id': header.get('contact_id'),
        'transaction_date': header.get('transaction_date'),
        'ref_no': header.get('ref_no'),
        'status': header.get('status'),
        'tax_id': None if header.get('tax_id') == 0 else header.get('tax_id'),
        'discount_amount': header.get('discount_amount'),
        'discount_type': header.get('discount_type'),
        'total_before_tax': header.get('total_before_tax'),
        'tax_amount': header.get('tax_amount'),
        'final_total': header.get('final_total'),
        'additional_notes': header.get('additional_notes'),
        'shipping_charges': header.get('shipping_charges'),
        'shipping_details': header.get('shipping_details'),
        'purchases': [
            {k: v for k, v in line.items() if k not in ('id', 'purchase_id')}
            for line in lines
        ],
    }
    if payments:
        payload['payments'] = [
            {
                'amount': p.get('amount'),
                'method': p.get('method'),
                'note': p.get('note'),
                'paid_on': p.get('paid_on'),
                'account_id': p.get('account_id'),
            }
            for p in payments
        ]
    return payload


# ---------- collaborators ----------
class StaticCredentials:
    """Bearer token supplier backed by a fixed token (or none)."""

    def __init__(self, token: Optional[str]):
        self._token = (token or '').strip() or None

    def token(self) -> Optional[str]:
        return self._token

    def is_authenticated(self) -> bool:
        return self._token is not None


class HttpConnectivityProbe:
    """Reachability check: any HTTP answer from the base URL counts as online."""

    def __init__(self, base_url: Optional[str], timeout: float = 5.0):
        self.base_url = base_url
        self.timeout = timeout

    def __call__(self) -> bool:
        if not self.base_url:
            return False
        try:
            requests.head(self.base_url, timeout=self.timeout, allow_redirects=True)
            return True
        except requests.RequestException:
            return False


class PurchaseApiClient:
    def __init__(self, base_url: str, credentials, prefix: str = '/connector/api',
                 timeout=(30.0, 30.0), session: Optional[requests.Session] = None):
        self.api_url = base_url.rstrip('/') + '/' + prefix.strip('/')
        self.credentials = credentials
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        token = self.credentials.token() if self.credentials else None
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                 json: Optional[Dict[str, Any]] = None) -> Any:
        url = self.api_url + path
        try:
            resp = self.session.request(method, url, params=params, json=json,
                                        headers=self._headers(), timeout=self.timeout)
        except requests.Timeout as exc:
            raise NetworkFailure('Connection timeout. Please check your internet connection.', 408) from exc
        except requests.RequestException as exc:
            raise NetworkFailure(f'Network error: {exc}') from exc
        if resp.status_code >= 400:
            err = error_from_response(resp)
            log.debug("%s %s failed: %s", method, path, err)
            raise err
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedResponse(f'Invalid JSON from {method} {path}', resp.status_code) from exc

    def _write(self, method: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = self._request(method, path, json=payload)
        if not isinstance(body, dict):
            raise MalformedResponse(f'Unexpected response from {method} {path}')
        if body.get('success') is False:
            raise RemoteRequestError(_body_message(body) or 'Purchase was rejected')
        return body

    # ---------- purchases ----------
    def create_purchase(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._write('POST', '/purchase', payload)

    def update_purchase(self, remote_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._write('PUT', f'/purchase/{remote_id}', payload)

    def list_purchases(self, supplier_id=None, location_id=None, status=None, payment_status=None,
                       start_date=None, end_date=None, ref_no=None, per_page: int = 20,
                       page: int = 1) -> PurchasePage:
        params = {
            'supplier_id': supplier_id,
            'location_id': location_id,
            'status': status,
            'payment_status': payment_status,
            'start_date': start_date,
            'end_date': end_date,
            'ref_no': ref_no,
            'per_page': per_page,
            'page': page,
        }
        params = {k: v for k, v in params.items() if v not in (None, '')}
        return parse_purchase_page(self._request('GET', '/purchase', params=params), per_page)

    def get_purchase(self, remote_id: Any) -> Dict[str, Any]:
        body = self._request('GET', f'/purchase/{remote_id}')
        if isinstance(body, dict) and isinstance(body.get('data'), dict):
            return body['data']
        if isinstance(body, dict) and isinstance(body.get('data'), list) and body['data']:
            return body['data'][0]
        if isinstance(body, dict) and extract_remote_id(body) is not None:
            return body
        raise MalformedResponse(f'Unexpected response for purchase {remote_id}')

    def get_purchases(self, remote_ids: Sequence[Any]) -> List[Dict[str, Any]]:
        """Fetch several purchases in one call, deduplicated by id."""
        if not remote_ids:
            return []
        ids = ','.join(str(i) for i in remote_ids)
        body = self._request('GET', f'/purchase/{ids}')
        return dedup_by_remote_id(_list_items(body))

    def delete_purchase(self, remote_id: Any) -> Dict[str, Any]:
        body = self._request('DELETE', f'/purchase/{remote_id}')
        if isinstance(body, dict) and body.get('success') is False:
            raise RemoteRequestError(_body_message(body) or 'Failed to delete purchase')
        return body if isinstance(body, dict) else {}

    def update_status(self, remote_id: Any, status: str) -> Dict[str, Any]:
        return self._write('POST', f'/purchase/{remote_id}/status', {'status': status})

    def check_reference(self, contact_id: Any, ref_no: str) -> bool:
        body = self._request('GET', '/purchase/check-ref', params={'contact_id': contact_id, 'ref_no': ref_no})
        return bool(isinstance(body, dict) and body.get('exists') is True)

    # ---------- reference data ----------
    def get_suppliers(self, term: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {'term': term} if term else None
        return _list_items(self._request('GET', '/purchase/suppliers', params=params))

    def get_products(self, term: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {'term': term} if term else None
        return _list_items(self._request('GET', '/purchase/products', params=params))

    def get_locations(self) -> List[Dict[str, Any]]:
        return _list_items(self._request('GET', '/business-location'))
