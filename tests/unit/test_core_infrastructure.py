"""
Unit tests for the clock, key-value stores and secret encryption.
"""
import base64
import hashlib
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from redis.exceptions import WatchError

from trustgate.core.cache import InMemoryKeyValueStore, RedisKeyValueStore
from trustgate.core.clock import FixedClock, SystemClock, as_utc, get_timezone
from trustgate.core.encryption import EncryptionError, SecretCipher
from trustgate.core.logging import JSONFormatter, LoggerMixin


class TestClock:
    """Test cases for clock implementations."""

    def test_system_clock_is_aware_utc(self):
        now = SystemClock().now()
        assert now.tzinfo is not None
        assert now.utcoffset() == timedelta(0)

    def test_fixed_clock_naive_input_is_utc(self):
        clock = FixedClock(datetime(2024, 3, 12, 14, 0))
        assert clock.now() == datetime(2024, 3, 12, 14, 0, tzinfo=timezone.utc)

    def test_fixed_clock_advance_and_set(self):
        clock = FixedClock(datetime(2024, 3, 12, 14, 0, tzinfo=timezone.utc))

        assert clock.advance(minutes=5) == datetime(2024, 3, 12, 14, 5, tzinfo=timezone.utc)
        assert clock.advance(timedelta(hours=1)).hour == 15

        clock.set(datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert clock.now().month == 1

    def test_local_now_converts_timezone(self):
        clock = FixedClock(datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc))
        local = clock.local_now(get_timezone("Europe/Madrid"))
        assert local.hour == 14  # CEST

    def test_as_utc(self):
        naive = datetime(2024, 1, 1, 10, 0)
        assert as_utc(naive).tzinfo == timezone.utc
        offset = datetime(2024, 1, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_utc(offset).hour == 8


class TestInMemoryKeyValueStore:
    """Test cases for the process-local key-value store."""

    def test_set_get_delete(self, store):
        store.set("k", "v")
        assert store.get("k") == "v"
        assert store.delete("k") is True
        assert store.get("k") is None
        assert store.delete("k") is False

    def test_ttl_expiry(self, store, clock):
        store.set("k", "v", ttl_seconds=60)
        clock.advance(seconds=59)
        assert store.get("k") == "v"
        clock.advance(seconds=1)
        assert store.get("k") is None
        assert len(store) == 0

    def test_compare_and_delete(self, store):
        store.set("k", "v1")
        assert store.compare_and_delete("k", "other") is False
        assert store.get("k") == "v1"
        assert store.compare_and_delete("k", "v1") is True
        assert store.compare_and_delete("k", "v1") is False

    def test_compare_and_delete_single_winner(self, clock):
        store = InMemoryKeyValueStore(clock=clock)
        store.set("pending", "code")

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(lambda _: store.compare_and_delete("pending", "code"), range(32)))

        assert results.count(True) == 1

    def test_compare_and_set(self, store, clock):
        assert store.compare_and_set("k", None, "v1", ttl_seconds=60) is True
        assert store.compare_and_set("k", None, "v2") is False
        assert store.compare_and_set("k", "stale", "v2") is False
        assert store.compare_and_set("k", "v1", "v2") is True
        assert store.get("k") == "v2"

        store.compare_and_set("k", "v2", "v3", ttl_seconds=5)
        clock.advance(seconds=5)
        assert store.get("k") is None

    def test_compare_and_set_single_winner(self, clock):
        store = InMemoryKeyValueStore(clock=clock)
        store.set("counter", "0")

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(lambda i: store.compare_and_set("counter", "0", str(i)), range(32)))

        assert results.count(True) == 1


class TestRedisKeyValueStore:
    """Test cases for the Redis backed store with a mocked client."""

    @pytest.fixture
    def redis_client(self):
        return MagicMock()

    def test_set_with_ttl_uses_setex(self, redis_client):
        store = RedisKeyValueStore(redis_client=redis_client)
        store.set("k", "v", ttl_seconds=30)
        redis_client.setex.assert_called_once_with("k", 30, "v")

    def test_set_without_ttl(self, redis_client):
        store = RedisKeyValueStore(redis_client=redis_client)
        store.set("k", "v")
        redis_client.set.assert_called_once_with("k", "v")

    def test_get_decodes_bytes(self, redis_client):
        redis_client.get.return_value = b"value"
        store = RedisKeyValueStore(redis_client=redis_client)
        assert store.get("k") == "value"

    def test_delete(self, redis_client):
        redis_client.delete.return_value = 1
        store = RedisKeyValueStore(redis_client=redis_client)
        assert store.delete("k") is True

    def test_compare_and_delete_match(self, redis_client):
        pipe = redis_client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = "v"
        pipe.execute.return_value = [1]

        store = RedisKeyValueStore(redis_client=redis_client)

        assert store.compare_and_delete("k", "v") is True
        pipe.watch.assert_called_once_with("k")
        pipe.multi.assert_called_once()
        pipe.delete.assert_called_once_with("k")

    def test_compare_and_delete_mismatch(self, redis_client):
        pipe = redis_client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = "other"

        store = RedisKeyValueStore(redis_client=redis_client)

        assert store.compare_and_delete("k", "v") is False
        pipe.delete.assert_not_called()

    def test_compare_and_delete_lost_race(self, redis_client):
        pipe = redis_client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = "v"
        pipe.execute.side_effect = WatchError()

        store = RedisKeyValueStore(redis_client=redis_client)

        assert store.compare_and_delete("k", "v") is False

    def test_compare_and_set_match(self, redis_client):
        pipe = redis_client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = b"old"

        store = RedisKeyValueStore(redis_client=redis_client)

        assert store.compare_and_set("k", "old", "new", ttl_seconds=30) is True
        pipe.watch.assert_called_once_with("k")
        pipe.multi.assert_called_once()
        pipe.setex.assert_called_once_with("k", 30, "new")
        pipe.execute.assert_called_once()

    def test_compare_and_set_absent_key(self, redis_client):
        pipe = redis_client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = None

        store = RedisKeyValueStore(redis_client=redis_client)

        assert store.compare_and_set("k", None, "first") is True
        pipe.set.assert_called_once_with("k", "first")

    def test_compare_and_set_mismatch(self, redis_client):
        pipe = redis_client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = "changed"

        store = RedisKeyValueStore(redis_client=redis_client)

        assert store.compare_and_set("k", "old", "new") is False
        pipe.unwatch.assert_called_once()
        pipe.execute.assert_not_called()

    def test_compare_and_set_lost_race(self, redis_client):
        pipe = redis_client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = "old"
        pipe.execute.side_effect = WatchError()

        store = RedisKeyValueStore(redis_client=redis_client)

        assert store.compare_and_set("k", "old", "new") is False


class TestSecretCipher:
    """Test cases for AES-256-GCM secret sealing."""

    def test_round_trip(self, cipher):
        sealed = cipher.encrypt("JBSWY3DPEHPK3PXP", "totp:tenant:user")
        assert "JBSWY3DPEHPK3PXP" not in sealed
        assert cipher.decrypt(sealed, "totp:tenant:user") == "JBSWY3DPEHPK3PXP"

    def test_nonce_is_fresh(self, cipher):
        assert cipher.encrypt("secret", "id") != cipher.encrypt("secret", "id")

    def test_key_id_is_bound(self, cipher):
        sealed = cipher.encrypt("secret", "totp:tenant:alice")
        with pytest.raises(EncryptionError):
            cipher.decrypt(sealed, "totp:tenant:mallory")

    def test_wrong_key_rejected(self, cipher):
        sealed = cipher.encrypt("secret", "id")
        with pytest.raises(EncryptionError):
            SecretCipher(bytes(32)).decrypt(sealed, "id")

    def test_tampered_package_rejected(self, cipher):
        package = json.loads(base64.b64decode(cipher.encrypt("secret", "id")))
        package["algorithm"] = "ROT13"
        tampered = base64.b64encode(json.dumps(package).encode()).decode()
        with pytest.raises(EncryptionError):
            cipher.decrypt(tampered, "id")

    def test_from_b64(self):
        key = base64.b64encode(bytes(range(32))).decode()
        cipher = SecretCipher.from_b64(key)
        assert cipher.decrypt(cipher.encrypt("x", "id"), "id") == "x"

    def test_short_key_rejected(self):
        with pytest.raises(EncryptionError):
            SecretCipher(b"too-short")

    def test_digest_is_keyed_and_deterministic(self, cipher):
        assert cipher.digest("0A1B2C3D") == SecretCipher(bytes(range(32))).digest("0A1B2C3D")
        assert cipher.digest("0A1B2C3D") != SecretCipher(bytes(32)).digest("0A1B2C3D")
        assert cipher.digest("0A1B2C3D") != hashlib.sha256(b"0A1B2C3D").hexdigest()
        assert len(cipher.digest("0A1B2C3D")) == 64


class TestLogging:
    """Test cases for structured logging helpers."""

    def test_json_formatter_includes_extra(self):
        record = logging.LogRecord("trustgate.test", logging.ERROR, __file__, 1, "boom", None, None)
        record.extra_data = {"tenant_id": "t1"}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "ERROR"
        assert entry["message"] == "boom"
        assert entry["extra"] == {"tenant_id": "t1"}

    def test_logger_mixin_names_logger_after_class(self):
        class Component(LoggerMixin):
            pass

        assert Component().logger.name.endswith(".Component")
