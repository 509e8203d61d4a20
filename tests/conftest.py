# =====================================================================
# SnowBridge Pytest Configuration and Fixtures
# =====================================================================
# Shared fixtures for all tests. ServiceNow is never contacted: the
# client gets an in-memory fake (FakeServiceNow) or the mock Flask
# instance wrapped by FlaskTestHttp.
# =====================================================================

import json
from urllib.parse import urlsplit

import pytest
from prometheus_client import REGISTRY, CollectorRegistry

from snowbridge.config import Config
from snowbridge.servicenow_client import TOKEN_PATH, ServiceNowClient


INSTANCE_URL = "https://example.service-now.com"


# --- Prometheus Metrics Cleanup ---

@pytest.fixture(autouse=True, scope="function")
def cleanup_prometheus_metrics():
    """
    Remove Flask exporter metrics from the default registry after each test.

    PrometheusMetrics registers flask_* collectors every time an app is
    created; leaving them would raise 'Duplicated timeseries in
    CollectorRegistry' on the next create_app(). The module-level
    snowbridge_* metrics are registered once at import and stay.
    """
    yield

    collectors_to_remove = []
    for collector, names in list(REGISTRY._collector_to_names.items()):
        if any(name.startswith('flask_') for name in names):
            collectors_to_remove.append(collector)

    for collector in collectors_to_remove:
        REGISTRY.unregister(collector)


@pytest.fixture
def metrics_registry():
    """Private registry for the Flask exporter of one test app."""
    return CollectorRegistry()


# --- Configuration ---

@pytest.fixture
def bridge_env():
    """Complete environment for a bridge pointed at the fake instance."""
    return {
        "SN_INSTANCE_URL": INSTANCE_URL,
        "CLIENT_ID": "client-id",
        "CLIENT_SECRET": "client-secret",
        "SN_USERNAME": "bridge-user",
        "SN_PASSWORD": "bridge-password",
        "SN_REQUEST_TIMEOUT": "5",
        "IDENTITY_LOCK_BACKEND": "local",
        "IDENTITY_LOCK_WAIT": "1",
        "LOG_LEVEL": "DEBUG",
    }


@pytest.fixture
def make_config(bridge_env):
    """Factory: Config built from bridge_env plus overrides."""
    def _make(**overrides):
        env = dict(bridge_env)
        env.update({k: str(v) for k, v in overrides.items()})
        return Config(env)
    return _make


@pytest.fixture
def bridge_config(make_config):
    return make_config()


# --- Fake ServiceNow transport ---

class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code=200, json_body=None, text=None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(json_body) if json_body is not None else ""
        self.text = text

    def json(self):
        return json.loads(self.text)


class FakeServiceNow:
    """
    In-memory incident table behind a requests-compatible `request()`.

    Failures are injected per identity (queries, creates) or per sys_id
    (updates, closes); a failure is either a FakeResponse to return or an
    exception to raise.
    """

    def __init__(self):
        self.incidents = []
        self.calls = []
        self.login_failure = None
        self.query_failures = {}
        self.write_failures = {}
        self._next_id = 1

    def add_incident(self, short_description, **fields):
        sys_id = f"sys{self._next_id:04d}"
        self._next_id += 1
        record = {"sys_id": sys_id, "short_description": short_description, "state": "1",
                  "work_notes": []}
        record.update(fields)
        self.incidents.append(record)
        return sys_id

    def get(self, sys_id):
        return next(i for i in self.incidents if i.get("sys_id") == sys_id)

    def calls_for(self, method):
        return [c for c in self.calls if c["method"] == method and not c["url"].endswith(TOKEN_PATH)]

    @staticmethod
    def _fail(failure):
        if isinstance(failure, Exception):
            raise failure
        return failure

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})

        if url.endswith(TOKEN_PATH):
            if self.login_failure is not None:
                return self._fail(self.login_failure)
            return FakeResponse(200, {"access_token": "token-123", "token_type": "Bearer",
                                      "expires_in": 1799})

        if method == "GET":
            params = kwargs["params"]
            identity = params["short_description"]
            if identity in self.query_failures:
                return self._fail(self.query_failures[identity])
            matches = [dict(i) for i in self.incidents if i["short_description"] == identity]
            return FakeResponse(200, {"result": matches[:params["sysparm_limit"]]})

        payload = kwargs["json"]
        if method == "POST":
            identity = payload["short_description"]
            if identity in self.write_failures:
                return self._fail(self.write_failures[identity])
            fields = {k: v for k, v in payload.items() if k not in ("short_description", "work_notes")}
            sys_id = self.add_incident(identity, **fields)
            self.get(sys_id)["work_notes"].append(payload["work_notes"])
            return FakeResponse(201, {"result": dict(self.get(sys_id))})

        sys_id = url.rsplit("/", 1)[1]
        if sys_id in self.write_failures:
            return self._fail(self.write_failures[sys_id])
        record = self.get(sys_id)
        for key, value in payload.items():
            if key == "work_notes":
                record["work_notes"].append(value)
            else:
                record[key] = value
        return FakeResponse(200, {"result": dict(record)})


@pytest.fixture
def fake_servicenow():
    return FakeServiceNow()


@pytest.fixture
def servicenow_client(bridge_config, fake_servicenow):
    return ServiceNowClient(bridge_config, http=fake_servicenow)


class FlaskTestHttp:
    """requests-compatible transport that routes calls into a Flask test client."""

    def __init__(self, test_client):
        self.test_client = test_client

    def request(self, method, url, timeout=None, verify=None, params=None, data=None,
                json=None, headers=None):
        headers = {k: v for k, v in (headers or {}).items() if k.lower() != 'content-type'}
        response = self.test_client.open(
            urlsplit(url).path,
            method=method,
            query_string=params,
            data=data,
            json=json,
            headers=headers,
        )
        return FakeResponse(response.status_code, text=response.get_data(as_text=True))


# --- Sample Data Fixtures ---

@pytest.fixture
def make_alert():
    """Factory for Alertmanager alerts; passing None for alertname, namespace or fingerprint omits it."""
    def _make(status="firing", alertname="HighCPU", namespace="ns1", fingerprint="abc123",
              annotations=None, **extra_labels):
        labels = {}
        if alertname is not None:
            labels["alertname"] = alertname
        if namespace is not None:
            labels["namespace"] = namespace
        labels.update(extra_labels)
        alert = {
            "status": status,
            "labels": labels,
            "annotations": annotations if annotations is not None else {"summary": "CPU above 90%"},
            "startsAt": "2026-10-19T12:00:00Z",
            "endsAt": "0001-01-01T00:00:00Z",
            "generatorURL": "http://prometheus.local/graph",
        }
        if fingerprint is not None:
            alert["fingerprint"] = fingerprint
        return alert
    return _make


@pytest.fixture
def make_webhook():
    """Factory for a full Alertmanager webhook body around a list of alerts."""
    def _make(alerts):
        return {
            "version": "4",
            "groupKey": "{}:{alertname=\"HighCPU\"}",
            "truncatedAlerts": 0,
            "status": "firing",
            "receiver": "snowbridge",
            "groupLabels": {"alertname": "HighCPU"},
            "commonLabels": {"alertname": "HighCPU"},
            "commonAnnotations": {},
            "externalURL": "http://alertmanager.local",
            "alerts": alerts,
        }
    return _make


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (requires real services)"
    )
    config.addinivalue_line(
        "markers", "slow: Slow tests (>1 second)"
    )


# --- Helper Functions ---

def assert_log_contains(caplog, level, message_fragment):
    """Assert that logs contain a specific message"""
    for record in caplog.records:
        if record.levelname == level and message_fragment in record.getMessage():
            return True
    raise AssertionError(
        f"Log message containing '{message_fragment}' at level '{level}' not found"
    )
