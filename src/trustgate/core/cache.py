"""
TrustGate key-value store

Short-lived state (pending SMS codes, device trust history) lives behind a
small get / set-with-TTL / delete contract so it can be kept in process for
tests or shared through Redis between instances.
"""

import hmac
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import redis
from redis.exceptions import WatchError

from trustgate.core.clock import Clock, SystemClock
from trustgate.core.logging import LoggerMixin


def _matches(current: Optional[str], expected: Optional[str]) -> bool:
    if current is None or expected is None:
        return current is None and expected is None
    return hmac.compare_digest(current, expected)


class KeyValueStore(ABC):
    """Key-value store with per-key expiry"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the live value for ``key`` or None"""

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store ``value``, replacing any previous value"""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; True only for the caller that actually removed it"""

    @abstractmethod
    def compare_and_delete(self, key: str, expected: str) -> bool:
        """Atomically remove ``key`` if it still holds ``expected``"""

    @abstractmethod
    def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[int] = None
    ) -> bool:
        """Atomically replace ``key`` if it still holds ``expected`` (None: key absent)"""


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store guarded by a single mutex"""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._data: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.clock.now() >= expires_at:
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self.clock.now() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            del self._data[key]
            return True

    def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            current = self._live(key)
            if current is None or not hmac.compare_digest(current, expected):
                return False
            del self._data[key]
            return True

    def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[int] = None
    ) -> bool:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self.clock.now() + timedelta(seconds=ttl_seconds)
        with self._lock:
            if not _matches(self._live(key), expected):
                return False
            self._data[key] = (value, expires_at)
            return True

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._data) if self._live(key) is not None)


class RedisKeyValueStore(KeyValueStore, LoggerMixin):
    """Redis backed store shared by every engine instance"""

    def __init__(self, redis_client: Optional[redis.Redis] = None, url: str = "redis://localhost:6379/0"):
        self.redis_client = redis_client or redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> Optional[str]:
        value = self.redis_client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None:
            self.redis_client.setex(key, ttl_seconds, value)
        else:
            self.redis_client.set(key, value)

    def delete(self, key: str) -> bool:
        return self.redis_client.delete(key) > 0

    def compare_and_delete(self, key: str, expected: str) -> bool:
        with self.redis_client.pipeline() as pipe:
            try:
                pipe.watch(key)
                current = pipe.get(key)
                if isinstance(current, bytes):
                    current = current.decode("utf-8")
                if current is None or not hmac.compare_digest(current, expected):
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                deleted, = pipe.execute()
                return deleted > 0
            except WatchError:
                # Another client touched the key between WATCH and EXEC
                self.logger.info(f"Concurrent update on {key}, compare-and-delete lost")
                return False

    def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[int] = None
    ) -> bool:
        with self.redis_client.pipeline() as pipe:
            try:
                pipe.watch(key)
                current = pipe.get(key)
                if isinstance(current, bytes):
                    current = current.decode("utf-8")
                if not _matches(current, expected):
                    pipe.unwatch()
                    return False
                pipe.multi()
                if ttl_seconds is not None:
                    pipe.setex(key, ttl_seconds, value)
                else:
                    pipe.set(key, value)
                pipe.execute()
                return True
            except WatchError:
                self.logger.info(f"Concurrent update on {key}, compare-and-set lost")
                return False
