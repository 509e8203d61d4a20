#!/usr/bin/env python3
"""
SnowBridge - Vault Credential Source

When VAULT_ADDR is set, the four ServiceNow credentials are read from a
HashiCorp Vault KV v2 secret instead of (or on top of) the environment.
Authentication is AppRole: the role ID comes from config, the secret ID from a
file mounted into the pod.

Expected secret keys: CLIENT_ID, CLIENT_SECRET, SN_USERNAME, SN_PASSWORD.
Keys absent from the secret leave the environment value in place.

The credentials are read once at startup and the Vault token is not kept, so
there is no renewal thread.

Author: SnowBridge Development Team
License: MIT
Version: 1.0.0
"""

import os
import logging
from typing import Any, Dict, Optional

import hvac

from snowbridge.errors import ConfigError

logger = logging.getLogger(__name__)

SECRET_KEYS = ('CLIENT_ID', 'CLIENT_SECRET', 'SN_USERNAME', 'SN_PASSWORD')


def _read_secret_id(path: str) -> str:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Vault secret ID file not found: {path}")
    with open(path, 'r') as f:
        secret_id = f.read().strip()
    if not secret_id:
        raise ValueError("Vault secret ID file is empty")
    return secret_id


def fetch_credentials(config: Any, client: Optional[hvac.Client] = None) -> Dict[str, Optional[str]]:
    """
    Log in to Vault with AppRole and read the ServiceNow credentials.

    Args:
        config: Config with VAULT_ADDR, VAULT_ROLE_ID, VAULT_SECRET_ID_FILE, VAULT_SECRETS_PATH
        client: Pre-built hvac client (tests)

    Returns:
        dict of credential name -> value (None where the secret lacks the key)

    Raises:
        ConfigError: Vault is unreachable, login fails or the secret cannot be read
    """
    try:
        logger.info(f"Connecting to Vault at {config.VAULT_ADDR}...")
        vault_client = client or hvac.Client(url=config.VAULT_ADDR)

        auth_response = vault_client.auth.approle.login(
            role_id=config.VAULT_ROLE_ID,
            secret_id=_read_secret_id(config.VAULT_SECRET_ID_FILE),
        )
        if not vault_client.is_authenticated():
            raise ConfigError("Vault authentication failed")

        logger.info(
            f"Successfully authenticated to Vault "
            f"(token TTL: {auth_response['auth'].get('lease_duration', 'unknown')}s)"
        )

        response = vault_client.secrets.kv.v2.read_secret_version(path=config.VAULT_SECRETS_PATH)
        data = response['data']['data']
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"Failed to fetch ServiceNow credentials from Vault: {e}") from e

    credentials = {key: data.get(key) for key in SECRET_KEYS}
    found = [key for key, value in credentials.items() if value]
    logger.info(f"Loaded {len(found)} ServiceNow credential(s) from Vault: {', '.join(found) or 'none'}")
    return credentials
