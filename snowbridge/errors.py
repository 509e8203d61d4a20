#!/usr/bin/env python3
"""
SnowBridge - Error Taxonomy

Only AuthError is fatal for a whole webhook batch. Everything else is raised
inside the per-alert boundary of the reconciler, logged with the alert's
identity and moved past.

Author: SnowBridge Development Team
License: MIT
Version: 1.0.0
"""

from typing import List, Optional

# Remote response bodies are truncated to this many characters in errors and logs
BODY_PREVIEW_LENGTH = 200


def preview(text: Optional[str]) -> str:
    """Return a log-safe, truncated copy of a remote response body."""
    if not text:
        return ""
    return text[:BODY_PREVIEW_LENGTH]


class BridgeError(Exception):
    """Base class for all SnowBridge errors."""
    pass


class ConfigError(BridgeError):
    """Raised when startup configuration is invalid."""
    pass


class ItsmRequestError(BridgeError):
    """A call to the ITSM instance failed (transport, status or body)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = preview(body)
        detail = message
        if status_code is not None:
            detail = f"{detail} (status={status_code})"
        if self.body:
            detail = f"{detail}: {self.body}"
        super().__init__(detail)


class AuthError(ItsmRequestError):
    """Session acquisition failed. Fatal for the whole batch."""
    pass


class QueryError(ItsmRequestError):
    """Ticket lookup failed for one alert."""
    pass


class MutationError(ItsmRequestError):
    """Create, update or close failed for one alert."""

    def __init__(self, message: str, operation: str, status_code: Optional[int] = None,
                 body: Optional[str] = None):
        self.operation = operation
        super().__init__(f"{operation}: {message}", status_code=status_code, body=body)


class IdentityError(BridgeError):
    """Alert is missing a label required to derive its identity (strict mode only)."""
    pass


class AmbiguousMatchError(BridgeError):
    """More than one ticket matched an identity; no mutation is attempted."""

    def __init__(self, identity: str, sys_ids: List[str]):
        self.identity = identity
        self.sys_ids = sys_ids
        super().__init__(
            f"{len(sys_ids)} tickets match identity '{identity}': {', '.join(sys_ids)}"
        )


class LockTimeoutError(BridgeError):
    """Timed out waiting for the single-flight lock on an identity."""
    pass


class UnhandledCaseWarning(BridgeError):
    """
    A non-error condition the policy deliberately does not act on,
    e.g. a resolved alert with no ticket to close. Logged at WARNING.
    """
    pass
