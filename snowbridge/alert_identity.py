#!/usr/bin/env python3
"""
SnowBridge - Alert Identity

The identity key is `alertname-namespace-fingerprint`. It is written as the
ticket's short description on create and used as the exact-match search key on
every later delivery, so it must not change between the firing and resolved
notifications of one alert. Alertmanager guarantees a stable fingerprint per
label set, which keeps distinct conditions apart.

Author: SnowBridge Development Team
License: MIT
Version: 1.0.0
"""

import logging
from typing import Any, Dict, List

from snowbridge.errors import IdentityError

logger = logging.getLogger(__name__)

IDENTITY_LABELS = ('alertname', 'namespace')


def _segment(value: Any) -> str:
    return '' if value is None else str(value)


def missing_identity_fields(alert: Dict[str, Any]) -> List[str]:
    """Names of identity inputs the alert does not carry."""
    labels = alert.get('labels') or {}
    missing = [f"labels.{name}" for name in IDENTITY_LABELS if not labels.get(name)]
    if not alert.get('fingerprint'):
        missing.append('fingerprint')
    return missing


def alert_identity(alert: Dict[str, Any], strict: bool = False) -> str:
    """
    Derive the identity key of an alert.

    A missing alertname, namespace or fingerprint leaves an empty segment
    (e.g. "HighCPU--abc123"); the result is still deterministic for the same
    input. With strict=True the alert is rejected instead.

    Raises:
        IdentityError: strict is set and an identity input is missing
    """
    missing = missing_identity_fields(alert)
    if missing:
        if strict:
            raise IdentityError(f"Alert is missing identity fields: {', '.join(missing)}")
        logger.warning(f"Alert is missing identity fields {missing}; identity has empty segments")

    labels = alert.get('labels') or {}
    return "-".join([
        _segment(labels.get('alertname')),
        _segment(labels.get('namespace')),
        _segment(alert.get('fingerprint')),
    ])
