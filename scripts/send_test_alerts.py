"""
SnowBridge Test Alert Sender
============================

Purpose
 - Post Alertmanager-shaped webhook payloads to a running bridge
 - Walk an alert through its lifecycle (firing, firing again, resolved) to
   check create, update and close against a real or mock ServiceNow

Usage
 - Fire one alert:
     python send_test_alerts.py http://127.0.0.1:8080 --alertname HighCPU \
       --namespace ns1 --fingerprint abc123

 - Full lifecycle (create -> update -> close):
     python send_test_alerts.py http://127.0.0.1:8080 --lifecycle

 - Replay payloads from a file (a JSON array of alerts, or a full webhook body):
     python send_test_alerts.py http://127.0.0.1:8080 --file alerts.json

 - Dry run (print but don't send):
     python send_test_alerts.py http://127.0.0.1:8080 --lifecycle --dry-run

Notes
 - --api-key is sent as `Authorization: Bearer <key>` when the bridge has
   WEBHOOK_API_KEY set.
 - Use --rate to pace multiple payloads (payloads per second).
"""

import argparse
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

import requests


def get_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description=(
            "SnowBridge Test Alert Sender: post Alertmanager webhook payloads to the bridge.\n"
            "Sends one firing alert by default; --lifecycle sends firing, firing, resolved."
        )
    )
    parser.add_argument("url", help="Bridge base URL, e.g. http://127.0.0.1:8080")
    parser.add_argument("--alertname", default="HighCPU", help="alertname label (default: HighCPU)")
    parser.add_argument("--namespace", default="ns1", help="namespace label (default: ns1)")
    parser.add_argument("--fingerprint", default=None, help="Alert fingerprint (default: random)")
    parser.add_argument("--status", choices=["firing", "resolved"], default="firing",
                        help="Alert status for a single send (default: firing)")
    parser.add_argument("--lifecycle", action="store_true", help="Send firing, firing, resolved")
    parser.add_argument("--file", help="JSON file with alerts or a webhook body to replay")
    parser.add_argument("--api-key", default=None, help="Webhook API key")
    parser.add_argument("--rate", type=float, default=1.0, help="Payloads per second (default: 1)")
    parser.add_argument("--timeout", type=float, default=30.0, help="HTTP timeout in seconds (default: 30)")
    parser.add_argument("--dry-run", action="store_true", help="Print payloads instead of sending")
    return parser.parse_args()


def build_alert(alertname: str, namespace: str, fingerprint: str, status: str) -> Dict[str, Any]:
    """Build one alert in Alertmanager's webhook format."""
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return {
        "status": status,
        "labels": {
            "alertname": alertname,
            "namespace": namespace,
            "severity": "critical",
        },
        "annotations": {
            "summary": f"{alertname} in {namespace}",
            "description": f"Test alert sent at {now}",
        },
        "startsAt": now,
        "endsAt": now if status == "resolved" else "0001-01-01T00:00:00Z",
        "generatorURL": "http://prometheus.local/graph",
        "fingerprint": fingerprint,
    }


def build_payload(alerts: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Wrap alerts in a webhook body (version 4)."""
    statuses = {a.get("status") for a in alerts}
    return {
        "version": "4",
        "groupKey": "{}:{alertname=\"snowbridge-test\"}",
        "truncatedAlerts": 0,
        "status": "firing" if "firing" in statuses else "resolved",
        "receiver": "snowbridge",
        "groupLabels": {},
        "commonLabels": {},
        "commonAnnotations": {},
        "externalURL": "http://alertmanager.local",
        "alerts": alerts,
    }


def load_payloads(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [build_payload(data)]
    raise ValueError("File must contain a JSON object or an array of alerts")


def send_payload(url: str, payload: Dict[str, Any], api_key: str = None,
                 timeout: float = 30.0, dry_run: bool = False) -> None:
    """POST one webhook body and print the bridge's answer."""
    if dry_run:
        print(f"[DRY-RUN] POST {url} <- {json.dumps(payload, indent=2)}")
        return

    headers = {"Content-Type": "application/json", "X-Correlation-ID": str(uuid.uuid4())}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    response = requests.post(url, json=payload, headers=headers, timeout=timeout)
    print(f"HTTP {response.status_code} (correlation_id={headers['X-Correlation-ID']})")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


def main():
    """Main function."""
    args = get_args()
    url = args.url.rstrip("/") + "/"
    fingerprint = args.fingerprint or uuid.uuid4().hex[:16]

    if args.file:
        try:
            payloads = load_payloads(args.file)
        except FileNotFoundError:
            print(f"Error: File not found: {args.file}")
            return
        except (json.JSONDecodeError, ValueError) as e:
            print(f"Error: Could not load payloads from {args.file}: {e}")
            return
    elif args.lifecycle:
        payloads = [
            build_payload([build_alert(args.alertname, args.namespace, fingerprint, status)])
            for status in ("firing", "firing", "resolved")
        ]
    else:
        payloads = [build_payload([build_alert(args.alertname, args.namespace, fingerprint, args.status)])]

    print(f"Starting SnowBridge Test Alert Sender: {len(payloads)} payload(s) to {url}")

    interval = 1.0 / max(float(args.rate), 0.1)
    next_send = time.perf_counter()
    count = 0
    for payload in payloads:
        try:
            send_payload(url, payload, api_key=args.api_key, timeout=args.timeout, dry_run=args.dry_run)
        except requests.exceptions.RequestException as e:
            print(f"Send failed: {e}")
        count += 1

        next_send += interval
        sleep_for = next_send - time.perf_counter()
        if sleep_for > 0 and count < len(payloads):
            time.sleep(sleep_for)

    print(f"Done. Sent {count} payload(s).")


if __name__ == "__main__":
    main()
