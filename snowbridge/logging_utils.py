#!/usr/bin/env python3
"""
SnowBridge - Logging Utilities

Structured logging for the bridge. Every record carries the correlation ID of
the webhook request that produced it, so the lines for one Alertmanager
delivery (and each alert inside it) can be pulled together after the fact.

Key Features:
- NDJSON (newline-delimited JSON) output, opt-in via LOG_JSON_ENABLED
- Plain text output otherwise, with the correlation ID in every line
- Thread-local correlation ID, set once per request by the Flask app
- Fields passed through `extra={...}` (identity, fingerprint, action) are
  emitted as top-level JSON keys

Usage:
    from snowbridge.logging_utils import setup_json_logging, CorrelationID

    setup_json_logging(service_name="snowbridge", version="1.0.0")
    CorrelationID.set("abc-123")
    logging.getLogger(__name__).info("Created ticket", extra={"identity": key})

Author: SnowBridge Development Team
License: MIT
Version: 1.0.0
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

TEXT_FORMAT = "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"

# Attributes every LogRecord has; anything else on a record came from `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message", "asctime", "correlation_id",
}


class CorrelationID:
    """Thread-local storage for correlation IDs."""
    _storage = threading.local()

    @staticmethod
    def set(cid: Optional[str]) -> None:
        CorrelationID._storage.id = cid

    @staticmethod
    def get() -> str:
        return getattr(CorrelationID._storage, 'id', None) or 'system'

    @staticmethod
    def clear() -> None:
        CorrelationID._storage.id = None


class CorrelationIdFilter(logging.Filter):
    """Automatically adds correlation ID to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = CorrelationID.get()
        return True


class NDJSONFormatter(logging.Formatter):
    """
    Formats each record as a single-line JSON object.

    Fields included:
    - timestamp, level, message, logger, module, function, line, thread
    - service, version, pod_name
    - correlation_id
    - error (type, message, traceback) when exc_info is present
    - any extra fields from the log call
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def _source(self, record: logging.LogRecord) -> Dict[str, Any]:
        return {
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.thread,
        }

    def _error(self, record: logging.LogRecord) -> Dict[str, Any]:
        exc_type, exc_value, _ = record.exc_info
        return {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value is not None else None,
            "traceback": self.formatException(record.exc_info),
        }

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
            "message": record.getMessage(),
        }
        entry.update(self._source(record))
        if record.exc_info:
            entry["error"] = self._error(record)

        extras = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and k not in entry}
        entry.update(extras)
        # Values json cannot encode (objects, sets) are written as their str()
        return json.dumps(entry, default=str)


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
    json_enabled: bool = False,
) -> logging.Logger:
    """
    Configure the root logger for a SnowBridge process.

    Idempotent: the handler installed by a previous call is replaced, so it is
    safe to call from every app factory invocation. Handlers added by others
    (e.g. pytest log capture) are left in place.

    Args:
        service_name: Service name stamped on JSON records
        version: Service version stamped on JSON records
        level: Logging level name (DEBUG, INFO, ...)
        json_enabled: Emit NDJSON instead of the text format

    Returns:
        The configured root logger
    """
    logger = logging.getLogger()
    # Remove our previous handler to avoid duplicates
    for existing in list(logger.handlers):
        if getattr(existing, "_snowbridge", False):
            logger.removeHandler(existing)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler._snowbridge = True
    handler.setLevel(logger.level)
    handler.addFilter(CorrelationIdFilter())

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.info(
        f"{'JSON' if json_enabled else 'Standard'} logging enabled for "
        f"service={service_name} version={version}"
    )
    return logger
