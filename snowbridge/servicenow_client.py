#!/usr/bin/env python3
"""
=====================================================================
SnowBridge ServiceNow Client
=====================================================================
Outbound side of the bridge. Talks to a ServiceNow instance over the
OAuth token endpoint and the incident Table API:

- POST {instance}/oauth_token.do                 (password grant)
- GET  {instance}/api/now/table/incident          (lookup by identity)
- POST {instance}/api/now/table/incident          (create)
- PUT  {instance}/api/now/table/incident/{sys_id} (update / close)

Each failure is raised as the error type its caller isolates on:
AuthError for login, QueryError for lookups, MutationError for writes.
Every call carries a timeout; an expired timeout is just another failure
of that call.

Author: SnowBridge Development Team
Version: 1.0.0
=====================================================================
"""

import json
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

import requests
from prometheus_client import Counter, Histogram

from snowbridge.errors import AuthError, ItsmRequestError, MutationError, QueryError, preview

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_ITSM_REQUESTS_TOTAL = Counter(
    'snowbridge_itsm_requests_total',
    'Total requests sent to the ServiceNow instance',
    ['operation', 'status']  # operation: login|query|create|update|close, status: success|fail_http|fail_timeout|fail_connection|fail_body
)

METRIC_ITSM_REQUEST_LATENCY = Histogram(
    'snowbridge_itsm_request_latency_seconds',
    'Latency of requests to the ServiceNow instance',
    ['operation'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# =====================================================================
# CONSTANTS
# =====================================================================

TOKEN_PATH = '/oauth_token.do'
INCIDENT_PATH = '/api/now/table/incident'


# =====================================================================
# SESSION
# =====================================================================

@dataclass(frozen=True)
class ItsmSession:
    """Bearer token for one webhook batch. Never reused across requests."""
    access_token: str
    instance_url: str
    token_type: str = 'Bearer'
    expires_in: Optional[int] = None
    issued_at: float = field(default_factory=time.time)

    def headers(self, content_type: str = 'application/json') -> Dict[str, str]:
        return {
            'Content-Type': content_type,
            'Accept': 'application/json',
            'Authorization': f"Bearer {self.access_token}",
        }

    def __repr__(self) -> str:
        return f"ItsmSession(instance_url={self.instance_url!r}, token_type={self.token_type!r}, access_token='***')"


def format_annotations(alert: Dict[str, Any]) -> str:
    return json.dumps(alert.get('annotations') or {}, indent=2)


# =====================================================================
# CLIENT
# =====================================================================

class ServiceNowClient:
    """
    ServiceNow incident client.

    Args:
        config: Config (instance URL, credentials, timeout, TLS and policy settings)
        http: Object with a requests-compatible `request()`; defaults to the
            `requests` module
    """

    def __init__(self, config: Any, http: Any = None):
        self.config = config
        self.http = http or requests

    # -----------------------------------------------------------------
    # Transport
    # -----------------------------------------------------------------

    def _request(self, operation: str, error_cls: Type[ItsmRequestError], method: str,
                 url: str, **kwargs: Any) -> requests.Response:
        """Send one request; raise error_cls on transport failure or non-2xx."""
        start_time = time.time()
        try:
            response = self.http.request(
                method,
                url,
                timeout=self.config.SN_REQUEST_TIMEOUT,
                verify=self.config.SN_TLS_VERIFY,
                **kwargs
            )
        except requests.exceptions.Timeout:
            METRIC_ITSM_REQUESTS_TOTAL.labels(operation=operation, status='fail_timeout').inc()
            raise self._error(error_cls, operation, f"timed out after {self.config.SN_REQUEST_TIMEOUT}s")
        except requests.exceptions.RequestException as e:
            METRIC_ITSM_REQUESTS_TOTAL.labels(operation=operation, status='fail_connection').inc()
            raise self._error(error_cls, operation, f"connection error: {e}")
        finally:
            METRIC_ITSM_REQUEST_LATENCY.labels(operation=operation).observe(time.time() - start_time)

        if not 200 <= response.status_code < 300:
            METRIC_ITSM_REQUESTS_TOTAL.labels(operation=operation, status='fail_http').inc()
            raise self._error(error_cls, operation, "unexpected HTTP status",
                              status_code=response.status_code, body=response.text)

        return response

    @staticmethod
    def _error(error_cls: Type[ItsmRequestError], operation: str, message: str,
               status_code: Optional[int] = None, body: Optional[str] = None) -> ItsmRequestError:
        if issubclass(error_cls, MutationError):
            return error_cls(message, operation=operation, status_code=status_code, body=body)
        return error_cls(f"{operation}: {message}", status_code=status_code, body=body)

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    # -----------------------------------------------------------------
    # Session provider
    # -----------------------------------------------------------------

    def acquire_session(self) -> ItsmSession:
        """
        Exchange the configured credentials for a bearer token (password grant).

        A 2xx response without a non-empty access_token is a failure: some
        instances answer 200 with an error document.

        Raises:
            AuthError: transport error, timeout, non-2xx, or no access_token
        """
        instance = self.config.SN_INSTANCE_URL
        logger.info(f"Attempting login to ServiceNow instance: {instance}")

        missing = self.config.missing_credentials()
        if missing:
            METRIC_ITSM_REQUESTS_TOTAL.labels(operation='login', status='fail_config').inc()
            raise AuthError(f"login: missing settings {', '.join(missing)}")

        response = self._request(
            'login', AuthError, 'POST', f"{instance}{TOKEN_PATH}",
            data={
                'grant_type': 'password',
                'client_id': self.config.CLIENT_ID,
                'client_secret': self.config.CLIENT_SECRET,
                'username': self.config.SN_USERNAME,
                'password': self.config.SN_PASSWORD,
            },
            headers={'Content-Type': 'application/x-www-form-urlencoded', 'Accept': 'application/json'},
        )

        data = self._json(response)
        token = data.get('access_token') if isinstance(data, dict) else None
        if not token:
            METRIC_ITSM_REQUESTS_TOTAL.labels(operation='login', status='fail_body').inc()
            raise AuthError("login: response did not contain an access_token",
                            status_code=response.status_code, body=response.text)

        METRIC_ITSM_REQUESTS_TOTAL.labels(operation='login', status='success').inc()
        logger.info("Login to ServiceNow succeeded")
        return ItsmSession(
            access_token=token,
            instance_url=instance,
            token_type=data.get('token_type') or 'Bearer',
            expires_in=data.get('expires_in'),
        )

    # -----------------------------------------------------------------
    # Query
    # -----------------------------------------------------------------

    def find_tickets(self, session: ItsmSession, identity: str) -> List[Dict[str, Any]]:
        """
        Exact-match lookup of incidents whose search field equals `identity`,
        capped at SN_QUERY_LIMIT records.

        Raises:
            QueryError: transport error, timeout, non-2xx, no `result` list,
                or a result record without a `sys_id`
        """
        response = self._request(
            'query', QueryError, 'GET', f"{session.instance_url}{INCIDENT_PATH}",
            params={
                'sysparm_limit': self.config.SN_QUERY_LIMIT,
                self.config.SN_SEARCH_FIELD: identity,
            },
            headers=session.headers(),
        )

        data = self._json(response)
        result = data.get('result') if isinstance(data, dict) else None
        if not isinstance(result, list):
            METRIC_ITSM_REQUESTS_TOTAL.labels(operation='query', status='fail_body').inc()
            raise QueryError("query: response did not contain a result list",
                             status_code=response.status_code, body=response.text)
        # A record we cannot address must never reach update or close
        if not all(isinstance(record, dict) and record.get('sys_id') for record in result):
            METRIC_ITSM_REQUESTS_TOTAL.labels(operation='query', status='fail_body').inc()
            raise QueryError("query: result record without sys_id",
                             status_code=response.status_code, body=response.text)

        METRIC_ITSM_REQUESTS_TOTAL.labels(operation='query', status='success').inc()
        logger.debug(f"Search for '{identity}' returned {len(result)} record(s)")
        return result

    # -----------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------

    def _write(self, operation: str, session: ItsmSession, method: str, url: str,
               payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._request(operation, MutationError, method, url,
                                 json=payload, headers=session.headers())
        METRIC_ITSM_REQUESTS_TOTAL.labels(operation=operation, status='success').inc()
        data = self._json(response)
        result = data.get('result') if isinstance(data, dict) else None
        record = result if isinstance(result, dict) else {}
        logger.debug(f"ServiceNow {operation} response: {preview(response.text)}")
        return record

    def build_create_payload(self, identity: str, alert: Dict[str, Any]) -> Dict[str, Any]:
        labels = alert.get('labels') or {}
        payload = {
            'short_description': identity,
            'description': json.dumps(alert, indent=2),
            'work_notes': f"New alert received. Annotations: {format_annotations(alert)}",
        }
        # Operator-selected labels become incident fields of the same name
        for name in self.config.SN_CREATE_FIELD_LABELS:
            if labels.get(name) and name not in payload:
                payload[name] = labels[name]
        return payload

    def build_close_payload(self, alert: Dict[str, Any]) -> Dict[str, Any]:
        labels = alert.get('labels') or {}
        return {
            'work_notes': f"Alert resolved. Annotations: {format_annotations(alert)}",
            'state': self.config.SN_CLOSE_STATE,
            'close_notes': labels.get('close_notes') or self.config.SN_DEFAULT_CLOSE_NOTES,
            'close_code': labels.get('close_code') or self.config.SN_DEFAULT_CLOSE_CODE,
        }

    def create_ticket(self, session: ItsmSession, identity: str, alert: Dict[str, Any]) -> Dict[str, Any]:
        """Create an incident for a newly firing alert. Returns the created record."""
        record = self._write('create', session, 'POST', f"{session.instance_url}{INCIDENT_PATH}",
                             self.build_create_payload(identity, alert))
        logger.info(f"Record created for '{identity}' (sys_id={record.get('sys_id', 'unknown')})")
        return record

    def update_ticket(self, session: ItsmSession, sys_id: str, alert: Dict[str, Any]) -> Dict[str, Any]:
        """Append a work note to an existing incident. The description is left alone."""
        record = self._write('update', session, 'PUT', f"{session.instance_url}{INCIDENT_PATH}/{sys_id}",
                             {'work_notes': f"New alert received. Annotations: {format_annotations(alert)}"})
        logger.info(f"Record updated (sys_id={sys_id})")
        return record

    def close_ticket(self, session: ItsmSession, sys_id: str, alert: Dict[str, Any]) -> Dict[str, Any]:
        """Close an incident. close_notes/close_code alert labels win over the defaults."""
        record = self._write('close', session, 'PUT', f"{session.instance_url}{INCIDENT_PATH}/{sys_id}",
                             self.build_close_payload(alert))
        logger.info(f"Record closed (sys_id={sys_id})")
        return record
