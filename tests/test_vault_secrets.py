# =====================================================================
# SnowBridge Vault Credential Source Unit Tests
# =====================================================================
# Tests for snowbridge/vault_secrets.py
# Run with: pytest tests/test_vault_secrets.py -v
# =====================================================================

import pytest
from unittest.mock import MagicMock

from snowbridge.errors import ConfigError
from snowbridge.vault_secrets import fetch_credentials


pytestmark = pytest.mark.unit


@pytest.fixture
def secret_id_file(tmp_path):
    path = tmp_path / "vault_secret_id"
    path.write_text("secret-id-123\n")
    return str(path)


@pytest.fixture
def vault_config(make_config, secret_id_file):
    return make_config(VAULT_ADDR="http://vault:8200", VAULT_ROLE_ID="bridge-role",
                       VAULT_SECRET_ID_FILE=secret_id_file)


@pytest.fixture
def mock_vault_client():
    """Mock Vault client"""
    vault = MagicMock()
    vault.is_authenticated.return_value = True
    vault.auth.approle.login.return_value = {"auth": {"client_token": "test-token", "lease_duration": 3600}}
    vault.secrets.kv.v2.read_secret_version.return_value = {
        "data": {
            "data": {
                "CLIENT_ID": "vault-client-id",
                "CLIENT_SECRET": "vault-client-secret",
                "SN_USERNAME": "vault-user",
                "SN_PASSWORD": "vault-password",
            }
        }
    }
    return vault


class TestFetchCredentials:

    def test_reads_all_credentials(self, vault_config, mock_vault_client):
        credentials = fetch_credentials(vault_config, client=mock_vault_client)

        assert credentials == {
            "CLIENT_ID": "vault-client-id",
            "CLIENT_SECRET": "vault-client-secret",
            "SN_USERNAME": "vault-user",
            "SN_PASSWORD": "vault-password",
        }
        mock_vault_client.auth.approle.login.assert_called_once_with(
            role_id="bridge-role", secret_id="secret-id-123")
        mock_vault_client.secrets.kv.v2.read_secret_version.assert_called_once_with(path="secret/snowbridge")

    def test_partial_secret(self, vault_config, mock_vault_client):
        mock_vault_client.secrets.kv.v2.read_secret_version.return_value = {
            "data": {"data": {"SN_PASSWORD": "only-password"}}
        }

        credentials = fetch_credentials(vault_config, client=mock_vault_client)

        assert credentials["SN_PASSWORD"] == "only-password"
        assert credentials["CLIENT_ID"] is None

    def test_not_authenticated(self, vault_config, mock_vault_client):
        mock_vault_client.is_authenticated.return_value = False

        with pytest.raises(ConfigError, match="authentication failed"):
            fetch_credentials(vault_config, client=mock_vault_client)

    def test_missing_secret_id_file(self, make_config, mock_vault_client, tmp_path):
        config = make_config(VAULT_ADDR="http://vault:8200", VAULT_ROLE_ID="bridge-role",
                             VAULT_SECRET_ID_FILE=str(tmp_path / "absent"))

        with pytest.raises(ConfigError, match="secret ID file not found"):
            fetch_credentials(config, client=mock_vault_client)

    def test_empty_secret_id_file(self, make_config, mock_vault_client, tmp_path):
        path = tmp_path / "empty"
        path.write_text("  \n")
        config = make_config(VAULT_ADDR="http://vault:8200", VAULT_ROLE_ID="bridge-role",
                             VAULT_SECRET_ID_FILE=str(path))

        with pytest.raises(ConfigError, match="empty"):
            fetch_credentials(config, client=mock_vault_client)

    def test_read_failure_wrapped(self, vault_config, mock_vault_client):
        mock_vault_client.secrets.kv.v2.read_secret_version.side_effect = RuntimeError("permission denied")

        with pytest.raises(ConfigError, match="permission denied"):
            fetch_credentials(vault_config, client=mock_vault_client)
