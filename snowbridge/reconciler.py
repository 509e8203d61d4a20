#!/usr/bin/env python3
"""
=====================================================================
SnowBridge Reconciliation Engine
=====================================================================
Maps an Alertmanager alert stream onto ServiceNow incidents. Each
alert becomes exactly one of: create, update, close, or no-op.

    matches  status     action
    -------  ---------  ------------------------------------------
    0        firing     create (identity as short description)
    1        firing     update (work note only)
    1        resolved   close  (work note, state, close notes/code)
    0        resolved   none; warning, nothing to close
    >1       any        none; error, refuse to touch either ticket
    0/1      other      none; warning, unsupported status

A batch shares one session and is processed strictly in order. Each
alert runs inside its own failure boundary, so a failed query or
mutation for one alert is logged and recorded while the rest of the
batch continues. Only session acquisition can fail a whole batch.

Nothing is retried: Alertmanager re-sends firing alerts on its repeat
interval, and the next delivery picks up where this one stopped.

Author: SnowBridge Development Team
Version: 1.0.0
=====================================================================
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from prometheus_client import Counter

from snowbridge.alert_identity import alert_identity
from snowbridge.errors import (
    AmbiguousMatchError,
    BridgeError,
    UnhandledCaseWarning,
)
from snowbridge.identity_lock import NullIdentityLock
from snowbridge.servicenow_client import ItsmSession, ServiceNowClient

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_ALERTS_PROCESSED_TOTAL = Counter(
    'snowbridge_alerts_processed_total',
    'Alerts processed by the reconciler',
    ['action', 'outcome']  # outcome: success|skipped|error
)

METRIC_BATCHES_TOTAL = Counter(
    'snowbridge_batches_total',
    'Webhook batches processed by the reconciler',
    ['status']  # success|fail_auth
)

STATUS_FIRING = 'firing'
STATUS_RESOLVED = 'resolved'


class Action(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    CLOSE = 'close'
    UNMATCHED_RESOLVED = 'unmatched_resolved'
    AMBIGUOUS = 'ambiguous'
    UNSUPPORTED_STATUS = 'unsupported_status'
    FAILED = 'failed'


OUTCOME_SUCCESS = 'success'
OUTCOME_SKIPPED = 'skipped'
OUTCOME_ERROR = 'error'


@dataclass
class AlertOutcome:
    """What happened to one alert of a batch."""
    index: int
    identity: Optional[str]
    status: Optional[str]
    action: Action
    outcome: str
    sys_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'identity': self.identity,
            'status': self.status,
            'action': self.action.value,
            'outcome': self.outcome,
            'sys_id': self.sys_id,
            'error': self.error,
        }


@dataclass
class BatchResult:
    outcomes: List[AlertOutcome] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        counts = {
            'received': len(self.outcomes),
            OUTCOME_SUCCESS: 0,
            OUTCOME_SKIPPED: 0,
            OUTCOME_ERROR: 0,
        }
        for outcome in self.outcomes:
            counts[outcome.outcome] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            'summary': self.summary(),
            'results': [outcome.to_dict() for outcome in self.outcomes],
        }


def decide_action(match_count: int, status: Optional[str]) -> Action:
    """Pure decision table from (number of matching tickets, alert status) to an action."""
    if match_count > 1:
        return Action.AMBIGUOUS
    if status == STATUS_FIRING:
        return Action.CREATE if match_count == 0 else Action.UPDATE
    if status == STATUS_RESOLVED:
        return Action.UNMATCHED_RESOLVED if match_count == 0 else Action.CLOSE
    return Action.UNSUPPORTED_STATUS


def _alert_context(alert: Any, identity: Optional[str]) -> Dict[str, Any]:
    """Fields attached to every per-alert log line."""
    if not isinstance(alert, dict):
        return {'identity': identity}
    return {
        'identity': identity,
        'fingerprint': alert.get('fingerprint'),
        'alert_labels': alert.get('labels'),
    }


class Reconciler:
    """
    Reconciles alert batches against ServiceNow.

    Args:
        client: ServiceNowClient used for login, lookups and mutations
        identity_lock: Lock backend held per identity across search and mutation
        strict_identity: Reject alerts lacking alertname/namespace/fingerprint
    """

    def __init__(self, client: ServiceNowClient, identity_lock: Any = None,
                 strict_identity: bool = False):
        self.client = client
        self.identity_lock = identity_lock or NullIdentityLock()
        self.strict_identity = strict_identity

    def reconcile_alert(self, session: ItsmSession, alert: Dict[str, Any],
                        identity: str, index: int = 0) -> AlertOutcome:
        """
        Search for the alert's ticket and perform the one action the decision
        table selects.

        Raises:
            QueryError, MutationError: the ServiceNow call failed
            AmbiguousMatchError: more than one ticket matches
            UnhandledCaseWarning: nothing to act on (resolved without ticket, unknown status)
        """
        status = alert.get('status')
        extra = _alert_context(alert, identity)

        with self.identity_lock.hold(identity):
            tickets = self.client.find_tickets(session, identity)
            action = decide_action(len(tickets), status)
            extra['action'] = action.value
            logger.info(f"Alert '{identity}' ({status}) matched {len(tickets)} ticket(s): {action.value}",
                        extra=extra)

            if action is Action.AMBIGUOUS:
                raise AmbiguousMatchError(identity, [str(t.get('sys_id')) for t in tickets])
            if action is Action.UNMATCHED_RESOLVED:
                raise UnhandledCaseWarning(f"Resolved alert '{identity}' has no ticket to close")
            if action is Action.UNSUPPORTED_STATUS:
                raise UnhandledCaseWarning(f"Alert '{identity}' has unsupported status {status!r}")

            if action is Action.CREATE:
                record = self.client.create_ticket(session, identity, alert)
                sys_id = record.get('sys_id')
            else:
                sys_id = tickets[0].get('sys_id')
                if action is Action.UPDATE:
                    self.client.update_ticket(session, sys_id, alert)
                else:
                    self.client.close_ticket(session, sys_id, alert)

        return AlertOutcome(index=index, identity=identity, status=status,
                            action=action, outcome=OUTCOME_SUCCESS, sys_id=sys_id)

    def _process_one(self, session: ItsmSession, index: int, alert: Any) -> AlertOutcome:
        identity = None
        status = alert.get('status') if isinstance(alert, dict) else None
        try:
            if not isinstance(alert, dict):
                raise BridgeError(f"Alert #{index} is not a JSON object")
            labels = alert.get('labels')
            if labels is not None and not isinstance(labels, dict):
                raise BridgeError(f"Alert #{index} has labels that are not a JSON object")
            identity = alert_identity(alert, strict=self.strict_identity)
            return self.reconcile_alert(session, alert, identity, index=index)

        except UnhandledCaseWarning as w:
            # Only raised for zero matches or an unsupported status
            action = decide_action(0, status)
            logger.warning(f"Unhandled condition, no action taken: {w}",
                           extra={**_alert_context(alert, identity), 'action': action.value})
            return AlertOutcome(index=index, identity=identity, status=status,
                                action=action, outcome=OUTCOME_SKIPPED, error=str(w))

        except AmbiguousMatchError as e:
            logger.error(f"Ambiguous match, no ticket modified: {e}",
                         extra={**_alert_context(alert, identity), 'action': Action.AMBIGUOUS.value})
            return AlertOutcome(index=index, identity=identity, status=status,
                                action=Action.AMBIGUOUS, outcome=OUTCOME_ERROR, error=str(e))

        except BridgeError as e:
            logger.error(f"Failed to process alert #{index}: {e}",
                         extra={**_alert_context(alert, identity), 'action': Action.FAILED.value})
            return AlertOutcome(index=index, identity=identity, status=status,
                                action=Action.FAILED, outcome=OUTCOME_ERROR, error=str(e))

        except Exception as e:
            logger.error(f"Unexpected error processing alert #{index}: {e}", exc_info=True,
                         extra={**_alert_context(alert, identity), 'action': Action.FAILED.value})
            return AlertOutcome(index=index, identity=identity, status=status,
                                action=Action.FAILED, outcome=OUTCOME_ERROR, error=f"Unexpected error: {e}")

    def process_batch(self, alerts: List[Any]) -> BatchResult:
        """
        Reconcile a batch of alerts in order with one shared session.

        Raises:
            AuthError: the session could not be acquired; no alert was touched
        """
        logger.info(f"Processing batch of {len(alerts)} alert(s)")
        try:
            session = self.client.acquire_session()
        except BridgeError:
            METRIC_BATCHES_TOTAL.labels(status='fail_auth').inc()
            raise

        result = BatchResult()
        for index, alert in enumerate(alerts):
            outcome = self._process_one(session, index, alert)
            METRIC_ALERTS_PROCESSED_TOTAL.labels(action=outcome.action.value, outcome=outcome.outcome).inc()
            result.outcomes.append(outcome)

        METRIC_BATCHES_TOTAL.labels(status='success').inc()
        logger.info(f"Batch complete: {result.summary()}")
        return result
