#!/usr/bin/env python3
"""
=====================================================================
SnowBridge Webhook Service
=====================================================================
Inbound side of the bridge: an Alertmanager webhook receiver.

Endpoints:
- POST /         Alertmanager webhook ({"alerts": [...], ...})
- GET  /health   Liveness, plus whether ServiceNow settings are complete
- GET  /         Service information
- GET  /metrics  Prometheus metrics

Responses for POST /:
- 200 for every batch that reached processing, whatever the per-alert
  outcomes (those are in the body and the logs)
- 400 when the body is not an object or `alerts` is missing/not a list/empty
- 401 when WEBHOOK_API_KEY is set and the request does not carry it
- 500 when login to ServiceNow fails or an unexpected error escapes

Run locally:
    python bridge_service.py

Production:
    gunicorn --bind 0.0.0.0:8080 --workers 4 --timeout 120 \\
             'snowbridge.bridge_service:create_app()'

Author: SnowBridge Development Team
Version: 1.0.0
=====================================================================
"""

import sys
import uuid
import logging
import secrets as secrets_module
from typing import Any, Optional

from flask import Flask, g, jsonify, request
from prometheus_client import Counter
from prometheus_flask_exporter import PrometheusMetrics

from snowbridge import __version__
from snowbridge.config import Config, load_config
from snowbridge.errors import AuthError, ConfigError
from snowbridge.identity_lock import build_identity_lock
from snowbridge.logging_utils import CorrelationID, setup_json_logging
from snowbridge.reconciler import Reconciler
from snowbridge.servicenow_client import ServiceNowClient

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_WEBHOOK_TOTAL = Counter(
    'snowbridge_webhook_requests_total',
    'Total requests to the webhook endpoint',
    ['status', 'reason']  # status: success|fail, reason: auth|json|validation|login|unknown|''
)

PUBLIC_PATHS = ('/health', '/metrics')


def _error(message: str, status_code: int):
    return jsonify({
        "status": "error",
        "message": message,
        "correlation_id": getattr(g, 'correlation_id', CorrelationID.get()),
    }), status_code


def _provided_api_key() -> str:
    auth_header = request.headers.get('Authorization', '')
    if auth_header.lower().startswith('bearer '):
        return auth_header[7:].strip()
    return request.headers.get('X-API-KEY', '')


# =====================================================================
# FLASK APPLICATION FACTORY
# =====================================================================

def create_app(config: Optional[Config] = None, reconciler: Optional[Reconciler] = None,
               metrics_registry: Any = None) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config: Loaded Config; read from the environment when omitted
        reconciler: Pre-built Reconciler (tests); built from config when omitted
        metrics_registry: prometheus_client registry for the HTTP metrics
    """
    config = config or load_config()
    setup_json_logging(service_name="snowbridge", version=__version__,
                       level=config.LOG_LEVEL, json_enabled=config.LOG_JSON_ENABLED)

    app = Flask(__name__)
    app.config["CONFIG"] = config

    if reconciler is None:
        reconciler = Reconciler(
            ServiceNowClient(config),
            identity_lock=build_identity_lock(config),
            strict_identity=config.REQUIRE_IDENTITY_LABELS,
        )
    app.config["RECONCILER"] = reconciler

    if metrics_registry is not None:
        PrometheusMetrics(app, registry=metrics_registry)
    else:
        PrometheusMetrics(app)
    logger.info("Prometheus metrics endpoint initialized at /metrics")

    # ================================================================
    # REQUEST HANDLERS
    # ================================================================

    @app.before_request
    def pre_request_handling():
        """Assign a correlation ID and enforce the optional webhook API key."""
        correlation_id = request.headers.get('X-Correlation-ID') or str(uuid.uuid4())
        g.correlation_id = correlation_id
        CorrelationID.set(correlation_id)

        if request.method != 'POST' or request.path in PUBLIC_PATHS:
            return None

        expected_key = config.WEBHOOK_API_KEY
        if not expected_key:
            return None

        api_key = _provided_api_key()
        if not api_key or not secrets_module.compare_digest(api_key, expected_key):
            logger.warning(f"Authentication failed from {request.remote_addr}")
            METRIC_WEBHOOK_TOTAL.labels(status='fail', reason='auth').inc()
            return _error("Unauthorized", 401)
        return None

    @app.after_request
    def add_correlation_header(response):
        response.headers['X-Correlation-ID'] = getattr(g, 'correlation_id', CorrelationID.get())
        return response

    @app.teardown_request
    def clear_correlation_id(exc):
        CorrelationID.clear()

    @app.route('/', methods=['POST'])
    def handle_webhook():
        """
        Alertmanager webhook endpoint.

        Validates the payload shape, then hands the alerts to the reconciler.
        """
        # --------------------------------------------------------
        # STEP 1: Parse and validate the payload shape
        # --------------------------------------------------------
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            logger.warning("Invalid webhook payload: body is not a JSON object")
            METRIC_WEBHOOK_TOTAL.labels(status='fail', reason='json').inc()
            return _error("Invalid JSON: payload must be a JSON object", 400)

        alerts = payload.get('alerts')
        if not isinstance(alerts, list) or not alerts:
            logger.warning("Invalid webhook payload: 'alerts' missing, not a list, or empty")
            METRIC_WEBHOOK_TOTAL.labels(status='fail', reason='validation').inc()
            return _error("Payload must contain a non-empty 'alerts' list", 400)

        logger.info(
            f"Received webhook with {len(alerts)} alert(s) "
            f"(group status: {payload.get('status', 'unknown')}, receiver: {payload.get('receiver', 'unknown')})"
        )

        # --------------------------------------------------------
        # STEP 2: Reconcile
        # --------------------------------------------------------
        try:
            result = app.config["RECONCILER"].process_batch(alerts)
        except AuthError as e:
            logger.error(f"ServiceNow login failed, batch not processed: {e}")
            METRIC_WEBHOOK_TOTAL.labels(status='fail', reason='login').inc()
            return _error(f"ServiceNow login failed: {e}", 500)
        except Exception as e:
            logger.error(f"Unhandled exception while processing batch: {e}", exc_info=True)
            METRIC_WEBHOOK_TOTAL.labels(status='fail', reason='unknown').inc()
            return _error("Internal server error", 500)

        METRIC_WEBHOOK_TOTAL.labels(status='success', reason='').inc()
        body = {
            "status": "success",
            "message": "Success",
            "correlation_id": g.correlation_id,
        }
        body.update(result.to_dict())
        return jsonify(body), 200

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint for load balancers and orchestrators."""
        missing = config.missing_credentials()
        return jsonify({
            "status": "healthy",
            "service": "snowbridge",
            "version": __version__,
            "servicenow_configured": not missing,
            "missing_settings": missing,
            "identity_lock": config.IDENTITY_LOCK_BACKEND,
        }), 200

    @app.route('/', methods=['GET'])
    def index():
        """Service information endpoint."""
        return jsonify({
            "service": "SnowBridge",
            "version": __version__,
            "description": "Reconciles Alertmanager alerts with ServiceNow incidents",
            "endpoints": {
                "webhook": "POST /",
                "health": "GET /health",
                "metrics": "GET /metrics",
                "info": "GET /"
            }
        }), 200

    return app


# =====================================================================
# MAIN ENTRY POINT
# =====================================================================

def main() -> None:
    try:
        config = load_config()
        app = create_app(config)
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"FATAL: {e}")
        sys.exit(1)

    logger.info("=" * 70)
    logger.info(f"SnowBridge v{__version__} - ServiceNow instance: {config.SN_INSTANCE_URL or '(not set)'}")
    logger.info("=" * 70)
    logger.warning("Running the Flask development server; use gunicorn in production")
    app.run(host='0.0.0.0', port=config.PORT)


if __name__ == '__main__':
    main()
