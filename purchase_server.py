"""Local JSON API over PurchaseService for the purchase screens.

Run:
  flask --app purchase_server run
"""
import logging
from typing import Optional

from flask import Flask, current_app, jsonify, request

import sync_settings as settings
from purchase_api import ApiError, AuthenticationFailure, ValidationFailure
from purchase_service import PurchaseService, PurchaseServiceError, build_service_from_env
from purchase_view import PurchaseFilters
from reference_cache import ENTITIES

app = Flask(__name__)

try:
    app.logger.setLevel(settings.log_level())
    logging.getLogger('werkzeug').setLevel(settings.log_level())
except Exception:
    app.logger.setLevel(logging.INFO)


def _service() -> PurchaseService:
    svc: Optional[PurchaseService] = current_app.config.get('PURCHASE_SERVICE')
    if svc is None:
        svc = build_service_from_env()
        current_app.config['PURCHASE_SERVICE'] = svc
    return svc


def _error(message: str, code: int, **extra):
    payload = {'status': 'error', 'message': message}
    payload.update(extra)
    return jsonify(payload), code


@app.errorhandler(ApiError)
def handle_api_error(exc: ApiError):
    if isinstance(exc, AuthenticationFailure):
        return _error(exc.message, 401, auth_required=True)
    if isinstance(exc, ValidationFailure):
        return _error(exc.message, 422, errors=exc.errors)
    app.logger.warning('Remote purchase API error: %s', exc)
    return _error(exc.message, 502, kind=exc.kind)


@app.errorhandler(PurchaseServiceError)
def handle_service_error(exc: PurchaseServiceError):
    return _error(str(exc), 409)


@app.errorhandler(ValueError)
def handle_value_error(exc: ValueError):
    return _error(str(exc), 400)


@app.route('/api/purchases', methods=['GET'])
def api_list_purchases():
    """Merged remote + local purchase list. Query args mirror the remote filters."""
    term = (request.args.get('q') or '').strip()
    if term:
        rows = _service().search_purchases(term)
        return jsonify({'status': 'success', 'purchases': rows})
    filters = PurchaseFilters.from_mapping(request.args, per_page=settings.PER_PAGE)
    listing = _service().list_purchases(filters)
    return jsonify({'status': 'success', **listing.as_dict()})


@app.route('/api/purchases', methods=['POST'])
def api_create_purchase():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _error('Invalid JSON payload', 400)
    lines = payload.get('lines') or payload.get('purchases') or []
    if not isinstance(lines, list) or not lines:
        return _error('A purchase needs at least one line', 400)
    header = {k: v for k, v in payload.items() if k not in ('lines', 'purchases', 'payments')}
    result = _service().create_purchase(header, lines, payload.get('payments') or [])
    return jsonify({'status': 'success', **result}), 201


@app.route('/api/purchases/<int:local_id>', methods=['GET'])
def api_get_purchase(local_id: int):
    purchase = _service().get_purchase(local_id)
    if purchase is None:
        return _error('Purchase not found', 404)
    return jsonify({'status': 'success', 'purchase': purchase})


@app.route('/api/purchases/<int:local_id>', methods=['PUT'])
def api_edit_purchase(local_id: int):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _error('Invalid JSON payload', 400)
    lines = payload.get('lines')
    changes = {k: v for k, v in payload.items() if k not in ('lines', 'sync')}
    result = _service().edit_purchase(local_id, changes, lines, sync_now=bool(payload.get('sync')))
    return jsonify({'status': 'success', **result})


@app.route('/api/purchases/<int:local_id>', methods=['DELETE'])
def api_delete_purchase(local_id: int):
    if not _service().delete_purchase(local_id):
        return _error('Purchase not found', 404)
    return jsonify({'status': 'success', 'deleted': local_id})


@app.route('/api/purchases/<int:local_id>/status', methods=['POST'])
def api_purchase_status(local_id: int):
    payload = request.get_json(silent=True) or {}
    status = payload.get('status')
    if not status:
        return _error('Missing status', 400)
    return jsonify({'status': 'success', 'purchase': _service().update_status(local_id, status)})


@app.route('/api/purchases/check-ref')
def api_check_ref():
    exists = _service().check_reference(request.args.get('contact_id'), request.args.get('ref_no') or '')
    return jsonify({'status': 'success', 'exists': exists})


@app.route('/api/sync', methods=['POST'])
def api_sync():
    outcome = _service().sync()
    code = 401 if outcome.auth_required else 200
    return jsonify({'status': 'error' if outcome.auth_required else 'success', **outcome.as_dict()}), code


@app.route('/api/reference/<entity>')
def api_reference_search(entity: str):
    if entity not in ENTITIES:
        return _error(f'Unknown reference type: {entity}', 404)
    svc = _service()
    svc.references.refresh_if_stale(entity)
    rows = svc.search_reference(entity, request.args.get('term'))
    return jsonify({'status': 'success', entity: rows})


@app.route('/api/reference/refresh', methods=['POST'])
def api_reference_refresh():
    force = request.args.get('force') == '1'
    results = _service().refresh_references(force=force)
    return jsonify({'status': 'success', 'results': {k: r.as_dict() for k, r in results.items()}})


@app.route('/api/cache/stats')
def api_cache_stats():
    return jsonify({'status': 'success', 'cache': _service().cache_stats()})


@app.route('/api/cache', methods=['DELETE'])
def api_cache_clear():
    _service().clear_cache()
    return jsonify({'status': 'success', 'message': 'Reference caches cleared'})


@app.route('/api/db/status')
def api_db_status():
    svc = _service()
    return jsonify({'status': 'success', 'schema_version': svc.store.schema_version(),
                    'counts': svc.store.counts()})


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000)
