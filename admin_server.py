"""
Admin HTTP server: status mapping API, OAuth callback and manual job triggers
"""
import hmac
import logging
from datetime import datetime
from functools import wraps

from flask import Flask, jsonify, request

from errors import AuthenticationError, SyncError
from services import Services

logger = logging.getLogger(__name__)

SECRET_HEADER = 'X-API-Secret'


def verify_secret(provided: str, expected: str) -> bool:
    """
    Compare the shared secret in constant time

    An empty configured secret rejects every request.
    """
    if not expected:
        return False
    return hmac.compare_digest(provided or '', expected)


def _parse_bool(value, default=None):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in ('1', 't', 'true', 'y', 'yes', 'on'):
        return True
    if normalized in ('0', 'f', 'false', 'n', 'no', 'off'):
        return False
    return default


def _error(message: str, status: int):
    return jsonify({'success': False, 'error': message}), status


def create_app(services: Services) -> Flask:
    """
    Build the Flask app around wired services

    Args:
        services: Components built by services.build_services

    Returns:
        Flask application
    """
    app = Flask(__name__)
    secret = services.config.admin_secret

    def require_secret(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            provided = request.headers.get(SECRET_HEADER) or request.args.get('token', '')
            if not verify_secret(provided, secret):
                logger.warning("Rejected admin request to %s: invalid secret", request.path)
                return _error('Forbidden', 403)
            return view(*args, **kwargs)
        return wrapper

    @app.route('/health', methods=['GET'])
    def health():
        """Health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'service': 'kaspi-amo-sync',
            'timestamp': datetime.utcnow().isoformat()
        }), 200

    @app.route('/api/status-mappings', methods=['GET'])
    @require_secret
    def list_mappings():
        pipeline_raw = request.args.get('amo_pipeline_id')
        pipeline_id = None
        if pipeline_raw:
            try:
                pipeline_id = int(pipeline_raw)
            except ValueError:
                return _error('amo_pipeline_id must be an integer', 400)
        mappings = services.status_map.list_mappings(
            kaspi_status=request.args.get('kaspi_status') or None,
            pipeline_id=pipeline_id,
            only_active=_parse_bool(request.args.get('only_active'), False),
        )
        return jsonify({'success': True, 'data': mappings}), 200

    @app.route('/api/status-mappings', methods=['POST'])
    @require_secret
    def upsert_mapping():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return _error('Invalid JSON', 400)

        kaspi_status = str(payload.get('kaspi_status') or '').strip()
        if not kaspi_status:
            return _error('kaspi_status is required', 400)
        try:
            pipeline_id = int(payload.get('amo_pipeline_id'))
            status_id = int(payload.get('amo_status_id'))
            responsible = payload.get('amo_responsible_user_id')
            responsible = int(responsible) if responsible not in (None, '') else None
            sort_order = int(payload.get('sort_order') or 0)
        except (TypeError, ValueError):
            return _error('amo_pipeline_id, amo_status_id, amo_responsible_user_id and '
                          'sort_order must be integers', 400)

        mapping = services.status_map.upsert_mapping(
            kaspi_status, pipeline_id, status_id,
            responsible_user_id=responsible,
            sort_order=sort_order,
            is_active=_parse_bool(payload.get('is_active'), True),
        )
        return jsonify({'success': True, 'data': mapping}), 200

    @app.route('/api/status-mappings/<int:mapping_id>', methods=['DELETE'])
    @require_secret
    def delete_mapping(mapping_id):
        deleted = services.status_map.delete_mapping(mapping_id)
        return jsonify({'success': True, 'data': {'deleted': deleted}}), 200

    @app.route('/api/status-mappings/<int:mapping_id>/<action>', methods=['POST'])
    @require_secret
    def toggle_mapping(mapping_id, action):
        if action == 'activate':
            updated = services.status_map.activate_mapping(mapping_id)
        elif action == 'deactivate':
            updated = services.status_map.deactivate_mapping(mapping_id)
        else:
            return _error(f'Unknown action: {action}', 404)
        return jsonify({'success': True, 'data': {'updated': updated}}), 200

    @app.route('/api/status-mappings/stats', methods=['GET'])
    @require_secret
    def mapping_stats():
        return jsonify({'success': True, 'data': services.status_map.get_stats()}), 200

    @app.route('/api/kaspi-statuses', methods=['GET'])
    @require_secret
    def kaspi_statuses():
        return jsonify({'success': True, 'data': services.status_map.get_kaspi_statuses()}), 200

    @app.route('/api/pipelines', methods=['GET'])
    @require_secret
    def pipelines():
        try:
            data = services.amo.list_pipelines()
        except SyncError as e:
            logger.error("Failed to fetch amoCRM pipelines: %s", e)
            return _error(str(e), 502)
        return jsonify({'success': True, 'data': data}), 200

    @app.route('/cron', methods=['POST'])
    @require_secret
    def cron():
        task = request.args.get('task', '')
        if task == 'new':
            stats = services.pipeline.run()
        elif task == 'reconcile':
            stats = services.reconciler.run()
        else:
            return _error(f'Unknown task: {task}', 400)
        return jsonify({'success': True, 'task': task, 'data': stats}), 200

    @app.route('/oauth/callback', methods=['GET'])
    def oauth_callback():
        code = request.args.get('code')
        if not code:
            return _error('Missing code', 400)
        try:
            services.tokens.exchange_code(code)
        except AuthenticationError as e:
            logger.error("OAuth code exchange failed: %s", e)
            return _error(str(e), 502)
        logger.info("amoCRM tokens saved from OAuth callback")
        return jsonify({'success': True, 'message': 'Tokens saved. You can close this window.'}), 200

    return app


def start_admin_server(services: Services):
    """
    Start the admin server

    Args:
        services: Wired components
    """
    config = services.config
    if not config.admin_secret:
        logger.warning("ADMIN_SECRET is empty: every protected endpoint will answer 403")

    app = create_app(services)
    logger.info("Admin server listening on http://%s:%s", config.admin_host, config.admin_port)
    app.run(host=config.admin_host, port=config.admin_port, debug=False, threaded=True)
