#!/usr/bin/env python3
"""
Simple mock ServiceNow instance for local runs and integration testing.

Endpoints:
- POST /oauth_token.do                     -> password grant, issues a bearer token
- GET  /api/now/table/incident             -> exact-match query on any field, honours sysparm_limit
- POST /api/now/table/incident             -> create (201)
- PUT  /api/now/table/incident/<sys_id>    -> update / close (404 when unknown)
- GET  /health                             -> basic health
- GET  /stats                              -> request counts and the incident table
- POST /reset                              -> clear incidents, tokens and counters

Work notes are journal-like: every write with `work_notes` appends to the
record's `work_notes_history` instead of replacing it.

Env:
- PORT (default 8081)
- MOCK_SN_USERNAME / MOCK_SN_PASSWORD (optional; when set, logins must match)
"""

import os
import uuid
import threading
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request


class IncidentStore:
    def __init__(self):
        self.lock = threading.Lock()
        self.reset()

    def reset(self):
        self.incidents: Dict[str, Dict[str, Any]] = {}
        self.tokens = set()
        self.counts = {'login': 0, 'query': 0, 'create': 0, 'update': 0}
        self.next_number = 1

    def issue_token(self) -> str:
        token = uuid.uuid4().hex
        with self.lock:
            self.tokens.add(token)
            self.counts['login'] += 1
        return token

    def authorized(self, header: str) -> bool:
        if not header.startswith('Bearer '):
            return False
        with self.lock:
            return header[7:] in self.tokens

    def query(self, filters: Dict[str, str], limit: int) -> List[Dict[str, Any]]:
        with self.lock:
            self.counts['query'] += 1
            matches = [
                dict(record) for record in self.incidents.values()
                if all(str(record.get(k, '')) == v for k, v in filters.items())
            ]
        return matches[:limit]

    def create(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        with self.lock:
            self.counts['create'] += 1
            sys_id = uuid.uuid4().hex
            record = {
                'sys_id': sys_id,
                'number': f"INC{self.next_number:07d}",
                'state': '1',
                'work_notes_history': [],
            }
            self.next_number += 1
            self._apply(record, fields)
            self.incidents[sys_id] = record
            return dict(record)

    def update(self, sys_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self.lock:
            self.counts['update'] += 1
            record = self.incidents.get(sys_id)
            if record is None:
                return None
            self._apply(record, fields)
            return dict(record)

    @staticmethod
    def _apply(record: Dict[str, Any], fields: Dict[str, Any]):
        for key, value in fields.items():
            if key == 'work_notes':
                record['work_notes_history'].append(value)
            elif key not in ('sys_id', 'number', 'work_notes_history'):
                record[key] = value


def create_app(store: Optional[IncidentStore] = None) -> Flask:
    app = Flask(__name__)
    store = store or IncidentStore()
    app.config['STORE'] = store

    expected_user = os.environ.get('MOCK_SN_USERNAME')
    expected_password = os.environ.get('MOCK_SN_PASSWORD')

    def _unauthorized():
        return jsonify({"error": {"message": "User Not Authenticated"}, "status": "failure"}), 401

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "healthy", "service": "mock-servicenow"})

    @app.route('/oauth_token.do', methods=['POST'])
    def oauth_token():
        form = request.form
        if form.get('grant_type') != 'password' or not form.get('client_id') or not form.get('username'):
            return jsonify({"error": "invalid_request"}), 400
        if expected_user and (form.get('username') != expected_user
                              or form.get('password') != expected_password):
            return jsonify({"error": "access_denied", "error_description": "access_denied"}), 401
        return jsonify({
            "access_token": store.issue_token(),
            "refresh_token": uuid.uuid4().hex,
            "scope": "useraccount",
            "token_type": "Bearer",
            "expires_in": 1799,
        }), 200

    @app.route('/api/now/table/incident', methods=['GET'])
    def query_incidents():
        if not store.authorized(request.headers.get('Authorization', '')):
            return _unauthorized()
        try:
            limit = int(request.args.get('sysparm_limit', 10000))
        except ValueError:
            return jsonify({"error": {"message": "Invalid sysparm_limit"}, "status": "failure"}), 400
        filters = {k: v for k, v in request.args.items() if not k.startswith('sysparm_')}
        return jsonify({"result": store.query(filters, limit)}), 200

    @app.route('/api/now/table/incident', methods=['POST'])
    def create_incident():
        if not store.authorized(request.headers.get('Authorization', '')):
            return _unauthorized()
        fields = request.get_json(silent=True)
        if not isinstance(fields, dict):
            return jsonify({"error": {"message": "Invalid JSON body"}, "status": "failure"}), 400
        return jsonify({"result": store.create(fields)}), 201

    @app.route('/api/now/table/incident/<sys_id>', methods=['PUT'])
    def update_incident(sys_id):
        if not store.authorized(request.headers.get('Authorization', '')):
            return _unauthorized()
        fields = request.get_json(silent=True)
        if not isinstance(fields, dict):
            return jsonify({"error": {"message": "Invalid JSON body"}, "status": "failure"}), 400
        record = store.update(sys_id, fields)
        if record is None:
            return jsonify({"error": {"message": "No Record found"}, "status": "failure"}), 404
        return jsonify({"result": record}), 200

    @app.route('/stats', methods=['GET'])
    def get_stats():
        with store.lock:
            return jsonify({"counts": dict(store.counts), "incidents": list(store.incidents.values())})

    @app.route('/reset', methods=['POST'])
    def reset():
        with store.lock:
            store.reset()
        return jsonify({"ok": True})

    return app


def main():
    port = int(os.environ.get('PORT', '8081'))
    create_app().run(host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
