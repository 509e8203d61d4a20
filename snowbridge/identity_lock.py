#!/usr/bin/env python3
"""
=====================================================================
SnowBridge Single-Flight Identity Lock
=====================================================================
Two webhook deliveries for the same new alert can both search, both see
zero tickets and both create one. The reconciler holds a lock on the
alert's identity key across search and mutation to close that window.

Backends (IDENTITY_LOCK_BACKEND):
- local: per-identity threading.Lock; covers one process
- redis: SET NX PX with a random token, compare-and-delete on release;
  covers every worker and pod sharing the Redis instance
- none:  no locking

The redis backend fails open: if Redis itself errors, the alert is
processed without the lock and the error is logged. A lock that stays
busy past IDENTITY_LOCK_WAIT raises LockTimeoutError for that alert.

Author: SnowBridge Development Team
Version: 1.0.0
=====================================================================
"""

import time
import uuid
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import redis
from prometheus_client import Counter

from snowbridge.errors import ConfigError, LockTimeoutError

logger = logging.getLogger(__name__)

METRIC_LOCK_EVENTS_TOTAL = Counter(
    'snowbridge_identity_lock_events_total',
    'Identity lock acquisitions by outcome',
    ['backend', 'outcome']  # outcome: acquired|contended|timeout|fail_open
)

# Delete the key only if it still holds our token
RELEASE_LUA_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

POLL_INTERVAL = 0.1


class NullIdentityLock:
    """No-op lock."""
    backend = 'none'

    @contextmanager
    def hold(self, identity: str) -> Iterator[None]:
        yield


class LocalIdentityLock:
    """In-process lock keyed by identity, reference-counted so idle keys are dropped."""
    backend = 'local'

    def __init__(self, wait_seconds: float = 30.0):
        self.wait_seconds = wait_seconds
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    def _checkout(self, identity: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.setdefault(identity, threading.Lock())
            self._refs[identity] = self._refs.get(identity, 0) + 1
            return lock

    def _checkin(self, identity: str) -> None:
        with self._guard:
            self._refs[identity] -= 1
            if self._refs[identity] == 0:
                del self._refs[identity]
                del self._locks[identity]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, identity: str) -> Iterator[None]:
        lock = self._checkout(identity)
        try:
            if not lock.acquire(blocking=False):
                METRIC_LOCK_EVENTS_TOTAL.labels(backend=self.backend, outcome='contended').inc()
                logger.info(f"Waiting for in-flight processing of '{identity}'")
                if not lock.acquire(timeout=self.wait_seconds):
                    METRIC_LOCK_EVENTS_TOTAL.labels(backend=self.backend, outcome='timeout').inc()
                    raise LockTimeoutError(f"Timed out after {self.wait_seconds}s waiting for '{identity}'")
            METRIC_LOCK_EVENTS_TOTAL.labels(backend=self.backend, outcome='acquired').inc()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(identity)


class RedisIdentityLock:
    """Distributed lock keyed by identity, stored as `<prefix>:<identity>` in Redis."""
    backend = 'redis'

    def __init__(self, redis_client: redis.Redis, prefix: str = 'snowbridge:lock',
                 ttl_seconds: int = 60, wait_seconds: float = 30.0):
        self.redis_client = redis_client
        self.prefix = prefix
        self.ttl_ms = int(ttl_seconds * 1000)
        self.wait_seconds = wait_seconds
        self.release_script = self.redis_client.register_script(RELEASE_LUA_SCRIPT)

    def _key(self, identity: str) -> str:
        return f"{self.prefix}:{identity}"

    def _acquire(self, key: str, token: str) -> Optional[bool]:
        """True when acquired, None when Redis is unavailable."""
        deadline = time.monotonic() + self.wait_seconds
        contended = False
        while True:
            try:
                if self.redis_client.set(key, token, nx=True, px=self.ttl_ms):
                    return True
            except redis.exceptions.RedisError as e:
                METRIC_LOCK_EVENTS_TOTAL.labels(backend=self.backend, outcome='fail_open').inc()
                logger.error(f"Identity lock store unavailable, proceeding without lock: {e}")
                return None

            if not contended:
                contended = True
                METRIC_LOCK_EVENTS_TOTAL.labels(backend=self.backend, outcome='contended').inc()
                logger.info(f"Waiting for in-flight processing of lock {key}")

            if time.monotonic() >= deadline:
                METRIC_LOCK_EVENTS_TOTAL.labels(backend=self.backend, outcome='timeout').inc()
                raise LockTimeoutError(f"Timed out after {self.wait_seconds}s waiting for lock {key}")
            time.sleep(POLL_INTERVAL)

    @contextmanager
    def hold(self, identity: str) -> Iterator[None]:
        key = self._key(identity)
        token = uuid.uuid4().hex
        acquired = self._acquire(key, token)
        if acquired:
            METRIC_LOCK_EVENTS_TOTAL.labels(backend=self.backend, outcome='acquired').inc()
        try:
            yield
        finally:
            if acquired:
                try:
                    self.release_script(keys=[key], args=[token])
                except redis.exceptions.RedisError as e:
                    # Key expires on its own after the TTL
                    logger.error(f"Failed to release identity lock {key}: {e}")


def connect_lock_store(config: Any) -> redis.Redis:
    """Build a pooled Redis client for the lock store and check it answers."""
    kwargs: Dict[str, Any] = {
        'host': config.REDIS_HOST,
        'port': config.REDIS_PORT,
        'password': config.REDIS_PASSWORD,
        'decode_responses': True,
        'socket_connect_timeout': 5,
        'socket_keepalive': True,
        'max_connections': config.REDIS_MAX_CONNECTIONS,
    }
    if config.REDIS_TLS_ENABLED:
        kwargs['connection_class'] = redis.SSLConnection
        kwargs['ssl_cert_reqs'] = 'required'
        if config.REDIS_CA_CERT_PATH:
            kwargs['ssl_ca_certs'] = config.REDIS_CA_CERT_PATH

    logger.info(
        f"Connecting identity lock store: {config.REDIS_HOST}:{config.REDIS_PORT} "
        f"(TLS: {config.REDIS_TLS_ENABLED})"
    )
    pool = redis.ConnectionPool(**kwargs)
    client = redis.Redis(connection_pool=pool)
    client.ping()
    return client


def build_identity_lock(config: Any, redis_client: Optional[redis.Redis] = None):
    """Create the lock backend selected by IDENTITY_LOCK_BACKEND."""
    backend = config.IDENTITY_LOCK_BACKEND
    if backend == 'none':
        logger.warning("Identity lock disabled; concurrent deliveries may create duplicate tickets")
        return NullIdentityLock()
    if backend == 'local':
        return LocalIdentityLock(wait_seconds=config.IDENTITY_LOCK_WAIT)
    if backend == 'redis':
        try:
            client = redis_client or connect_lock_store(config)
        except redis.exceptions.RedisError as e:
            raise ConfigError(f"Could not connect identity lock store: {e}") from e
        return RedisIdentityLock(
            client,
            prefix=config.IDENTITY_LOCK_PREFIX,
            ttl_seconds=config.IDENTITY_LOCK_TTL,
            wait_seconds=config.IDENTITY_LOCK_WAIT,
        )
    raise ConfigError(f"Unknown identity lock backend: {backend}")
