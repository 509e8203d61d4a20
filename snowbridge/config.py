#!/usr/bin/env python3
"""
SnowBridge - Configuration

All settings are read once, at startup, into a Config object that is then
handed to the ServiceNow client, reconciler and Flask app. Nothing below the
app factory reads the environment, so tests build a Config from a plain dict.

Validation is fail-fast for malformed values (bad integers, port out of range,
unknown lock backend). Missing ServiceNow credentials only produce a warning:
the process still starts and every webhook will then fail at login with a 500.

Author: SnowBridge Development Team
License: MIT
Version: 1.0.0
"""

import os
import logging
from typing import Dict, List, Mapping, Optional

from snowbridge.errors import ConfigError
from snowbridge.vault_secrets import fetch_credentials

logger = logging.getLogger(__name__)

CREDENTIAL_KEYS = ('CLIENT_ID', 'CLIENT_SECRET', 'SN_USERNAME', 'SN_PASSWORD')

LOCK_BACKENDS = ('local', 'redis', 'none')

_FALSE_STRINGS = ('false', '0', 'no', 'off')


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('true', '1', 'yes', 'on')


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


class Config:
    """Service configuration loaded from environment variables."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ
        try:
            # Service
            self.PORT = int(env.get('SERVER_PORT_BRIDGE', 8080))
            self.LOG_LEVEL = env.get('LOG_LEVEL', 'INFO').upper()
            self.LOG_JSON_ENABLED = _as_bool(env.get('LOG_JSON_ENABLED'), False)
            self.WEBHOOK_API_KEY = env.get('WEBHOOK_API_KEY') or None

            # ServiceNow instance and credentials
            self.SN_INSTANCE_URL = (env.get('SN_INSTANCE_URL') or '').rstrip('/')
            self.CLIENT_ID = env.get('CLIENT_ID') or None
            self.CLIENT_SECRET = env.get('CLIENT_SECRET') or None
            self.SN_USERNAME = env.get('SN_USERNAME') or None
            self.SN_PASSWORD = env.get('SN_PASSWORD') or None
            # Validation stays on unless explicitly switched off
            self.SN_TLS_VERIFY = (env.get('SN_TLS_VERIFY') or 'true').strip().lower() not in _FALSE_STRINGS
            self.SN_REQUEST_TIMEOUT = float(env.get('SN_REQUEST_TIMEOUT', 15))

            # Reconciliation policy
            self.SN_QUERY_LIMIT = int(env.get('SN_QUERY_LIMIT', 10))
            self.SN_SEARCH_FIELD = env.get('SN_SEARCH_FIELD', 'short_description')
            self.SN_CLOSE_STATE = int(env.get('SN_CLOSE_STATE', 6))
            self.SN_DEFAULT_CLOSE_NOTES = env.get('SN_DEFAULT_CLOSE_NOTES', 'Closed with error resolved from prom')
            self.SN_DEFAULT_CLOSE_CODE = env.get('SN_DEFAULT_CLOSE_CODE', 'Resolved by request')
            self.SN_CREATE_FIELD_LABELS = _split_csv(env.get('SN_CREATE_FIELD_LABELS'))
            self.REQUIRE_IDENTITY_LABELS = _as_bool(env.get('REQUIRE_IDENTITY_LABELS'), False)

            # Single-flight identity lock
            self.IDENTITY_LOCK_BACKEND = env.get('IDENTITY_LOCK_BACKEND', 'local').strip().lower()
            self.IDENTITY_LOCK_TTL = int(env.get('IDENTITY_LOCK_TTL', 60))
            self.IDENTITY_LOCK_WAIT = float(env.get('IDENTITY_LOCK_WAIT', 30))
            self.IDENTITY_LOCK_PREFIX = env.get('IDENTITY_LOCK_PREFIX', 'snowbridge:lock')

            # Redis (lock store)
            self.REDIS_HOST = env.get('REDIS_HOST', 'localhost')
            self.REDIS_PORT = int(env.get('REDIS_PORT', 6379))
            self.REDIS_TLS_ENABLED = _as_bool(env.get('REDIS_TLS_ENABLED'), True)
            self.REDIS_CA_CERT_PATH = env.get('REDIS_CA_CERT_PATH') or None
            self.REDIS_PASSWORD = env.get('REDIS_PASSWORD') or None
            self.REDIS_MAX_CONNECTIONS = int(env.get('REDIS_MAX_CONNECTIONS', 10))

            # Vault (optional credential source)
            self.VAULT_ADDR = env.get('VAULT_ADDR') or None
            self.VAULT_ROLE_ID = env.get('VAULT_ROLE_ID') or None
            self.VAULT_SECRET_ID_FILE = env.get('VAULT_SECRET_ID_FILE', '/etc/snowbridge/secrets/vault_secret_id')
            self.VAULT_SECRETS_PATH = env.get('VAULT_SECRETS_PATH', 'secret/snowbridge')
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Configuration error: {e}") from e

        self._validate()

    def _validate(self) -> None:
        """Validate configuration values. Raises ConfigError on hard errors."""
        if self.PORT < 1 or self.PORT > 65535:
            raise ConfigError(f"SERVER_PORT_BRIDGE must be between 1-65535, got: {self.PORT}")

        if self.SN_REQUEST_TIMEOUT <= 0 or self.SN_REQUEST_TIMEOUT > 300:
            raise ConfigError(f"SN_REQUEST_TIMEOUT must be between 0-300 seconds, got: {self.SN_REQUEST_TIMEOUT}")

        if self.SN_QUERY_LIMIT < 2:
            # A cap of 1 would hide ambiguous matches
            raise ConfigError(f"SN_QUERY_LIMIT too low (min 2): {self.SN_QUERY_LIMIT}")

        if not self.SN_SEARCH_FIELD:
            raise ConfigError("SN_SEARCH_FIELD cannot be empty")

        if self.IDENTITY_LOCK_BACKEND not in LOCK_BACKENDS:
            raise ConfigError(
                f"IDENTITY_LOCK_BACKEND must be one of {', '.join(LOCK_BACKENDS)}, "
                f"got: {self.IDENTITY_LOCK_BACKEND}"
            )

        if self.IDENTITY_LOCK_TTL < 1:
            raise ConfigError(f"IDENTITY_LOCK_TTL too low: {self.IDENTITY_LOCK_TTL}")

        if self.VAULT_ADDR and not self.VAULT_ROLE_ID:
            raise ConfigError("VAULT_ROLE_ID is required when VAULT_ADDR is set")

        if not self.SN_TLS_VERIFY:
            logger.warning("SN_TLS_VERIFY is disabled; ServiceNow certificates will not be validated")

    # -----------------------------------------------------------------

    def missing_credentials(self) -> List[str]:
        """Names of required ServiceNow settings that are not set."""
        missing = [key for key in CREDENTIAL_KEYS if not getattr(self, key)]
        if not self.SN_INSTANCE_URL:
            missing.insert(0, 'SN_INSTANCE_URL')
        return missing

    def apply_secrets(self, secrets: Dict[str, Optional[str]]) -> None:
        """Override credentials with values fetched from a secret store."""
        for key in CREDENTIAL_KEYS:
            if secrets.get(key):
                setattr(self, key, secrets[key])

    def warn_if_incomplete(self) -> None:
        missing = self.missing_credentials()
        if missing:
            logger.warning(
                f"Missing ServiceNow settings: {', '.join(missing)}. "
                "The bridge will start, but every webhook will fail at login."
            )

    def redacted(self) -> Dict[str, object]:
        """Config as a dict with secrets masked, for logs and /health."""
        hidden = set(CREDENTIAL_KEYS) | {'WEBHOOK_API_KEY', 'REDIS_PASSWORD'}
        return {
            key: ('***' if key in hidden and value else value)
            for key, value in vars(self).items()
            if key.isupper()
        }


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Build the Config, pull credentials from Vault when VAULT_ADDR is set,
    and warn about anything still missing.
    """
    config = Config(environ)

    if config.VAULT_ADDR:
        config.apply_secrets(fetch_credentials(config))

    config.warn_if_incomplete()
    logger.info("Configuration loaded and validated successfully")
    return config
