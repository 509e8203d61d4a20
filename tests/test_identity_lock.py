# =====================================================================
# SnowBridge Identity Lock Unit Tests
# =====================================================================
# Tests for snowbridge/identity_lock.py
# Run with: pytest tests/test_identity_lock.py -v
# =====================================================================

import threading

import pytest
import redis
from unittest.mock import MagicMock, patch

from snowbridge.errors import ConfigError, LockTimeoutError
from snowbridge.identity_lock import (
    LocalIdentityLock,
    NullIdentityLock,
    RedisIdentityLock,
    build_identity_lock,
    connect_lock_store,
)


pytestmark = pytest.mark.unit


@pytest.fixture
def mock_redis_client():
    """Mock Redis client"""
    client = MagicMock(spec=redis.Redis)
    client.ping.return_value = True
    client.set.return_value = True
    client.register_script.return_value = MagicMock(return_value=1)
    return client


class TestLocalIdentityLock:

    def test_hold_and_release(self):
        lock = LocalIdentityLock(wait_seconds=1)

        with lock.hold("a"):
            assert lock.active_keys() == 1

        assert lock.active_keys() == 0

    def test_different_identities_do_not_block(self):
        lock = LocalIdentityLock(wait_seconds=0.1)

        with lock.hold("a"):
            with lock.hold("b"):
                assert lock.active_keys() == 2

    def test_same_identity_times_out(self):
        lock = LocalIdentityLock(wait_seconds=0.1)
        held = threading.Event()
        done = threading.Event()

        def holder():
            with lock.hold("a"):
                held.set()
                done.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        try:
            with pytest.raises(LockTimeoutError):
                with lock.hold("a"):
                    pass
        finally:
            done.set()
            thread.join(2)

        assert lock.active_keys() == 0

    def test_released_on_exception(self):
        lock = LocalIdentityLock(wait_seconds=0.1)

        with pytest.raises(ValueError):
            with lock.hold("a"):
                raise ValueError("boom")

        with lock.hold("a"):
            pass
        assert lock.active_keys() == 0

    def test_waiter_proceeds_after_release(self):
        lock = LocalIdentityLock(wait_seconds=2)
        order = []
        held = threading.Event()

        def holder():
            with lock.hold("a"):
                held.set()
                order.append("first")

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        with lock.hold("a"):
            order.append("second")
        thread.join(2)

        assert order == ["first", "second"]


class TestRedisIdentityLock:

    def test_acquire_uses_set_nx_px(self, mock_redis_client):
        lock = RedisIdentityLock(mock_redis_client, prefix="snowbridge:lock", ttl_seconds=60)

        with lock.hold("HighCPU-ns1-abc123"):
            pass

        args, kwargs = mock_redis_client.set.call_args
        assert args[0] == "snowbridge:lock:HighCPU-ns1-abc123"
        assert kwargs == {"nx": True, "px": 60000}

    def test_release_uses_token(self, mock_redis_client):
        lock = RedisIdentityLock(mock_redis_client)

        with lock.hold("x"):
            pass

        token = mock_redis_client.set.call_args[0][1]
        release = mock_redis_client.register_script.return_value
        release.assert_called_once_with(keys=["snowbridge:lock:x"], args=[token])

    def test_busy_lock_times_out(self, mock_redis_client):
        mock_redis_client.set.return_value = None
        lock = RedisIdentityLock(mock_redis_client, wait_seconds=0.2)

        with pytest.raises(LockTimeoutError):
            with lock.hold("x"):
                pass

        mock_redis_client.register_script.return_value.assert_not_called()

    def test_waits_until_free(self, mock_redis_client):
        mock_redis_client.set.side_effect = [None, None, True]
        lock = RedisIdentityLock(mock_redis_client, wait_seconds=2)

        with lock.hold("x"):
            pass

        assert mock_redis_client.set.call_count == 3

    def test_fails_open_when_redis_down(self, mock_redis_client):
        mock_redis_client.set.side_effect = redis.exceptions.ConnectionError("down")
        lock = RedisIdentityLock(mock_redis_client)
        ran = []

        with lock.hold("x"):
            ran.append(True)

        assert ran == [True]
        mock_redis_client.register_script.return_value.assert_not_called()

    def test_release_error_is_logged_not_raised(self, mock_redis_client):
        mock_redis_client.register_script.return_value.side_effect = redis.exceptions.ConnectionError("down")
        lock = RedisIdentityLock(mock_redis_client)

        with lock.hold("x"):
            pass


class TestBuildIdentityLock:

    def test_local(self, make_config):
        assert isinstance(build_identity_lock(make_config(IDENTITY_LOCK_BACKEND="local")), LocalIdentityLock)

    def test_none(self, make_config):
        assert isinstance(build_identity_lock(make_config(IDENTITY_LOCK_BACKEND="none")), NullIdentityLock)

    def test_redis_with_client(self, make_config, mock_redis_client):
        config = make_config(IDENTITY_LOCK_BACKEND="redis", IDENTITY_LOCK_TTL=30)

        lock = build_identity_lock(config, redis_client=mock_redis_client)

        assert isinstance(lock, RedisIdentityLock)
        assert lock.ttl_ms == 30000

    def test_redis_connection_failure_is_config_error(self, make_config):
        config = make_config(IDENTITY_LOCK_BACKEND="redis")

        with patch("snowbridge.identity_lock.connect_lock_store",
                   side_effect=redis.exceptions.ConnectionError("refused")):
            with pytest.raises(ConfigError, match="identity lock store"):
                build_identity_lock(config)

    def test_connect_lock_store_uses_tls_settings(self, make_config):
        config = make_config(IDENTITY_LOCK_BACKEND="redis", REDIS_HOST="redis.local",
                             REDIS_CA_CERT_PATH="/etc/ssl/ca.pem")

        with patch("snowbridge.identity_lock.redis.ConnectionPool") as mock_pool, \
                patch("snowbridge.identity_lock.redis.Redis") as mock_redis:
            client = connect_lock_store(config)

        kwargs = mock_pool.call_args.kwargs
        assert kwargs["host"] == "redis.local"
        assert kwargs["connection_class"] is redis.SSLConnection
        assert kwargs["ssl_ca_certs"] == "/etc/ssl/ca.pem"
        mock_redis.return_value.ping.assert_called_once()
        assert client is mock_redis.return_value
