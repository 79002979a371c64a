"""
PyTest configuration and shared fixtures for the TrustGate test suite.
"""
import os

# Keep test runs from writing rotating log files into the working tree
os.environ.setdefault("TRUSTGATE_LOG_TO_FILE", "false")

from datetime import datetime, timezone
from typing import Generator

import pytest
from sqlalchemy.orm import sessionmaker

from trustgate.core.cache import InMemoryKeyValueStore
from trustgate.core.clock import FixedClock
from trustgate.core.config import Settings
from trustgate.core.encryption import SecretCipher
from trustgate.database.session import create_database_engine, create_session_factory, init_database
from trustgate.security.audit import SecurityEventLog
from trustgate.security.mfa_system import MFASystemManager
from trustgate.security.repository import InMemoryDeviceRepository, InMemorySecurityLogRepository
from trustgate.security.service import TrustAccessService, create_trust_service
from trustgate.security.sms import SMSSender
from trustgate.security.zero_trust import TrustPolicy

# Tuesday, inside business hours
TUESDAY_AFTERNOON = datetime(2024, 3, 12, 14, 0, tzinfo=timezone.utc)
# Saturday, same hour
SATURDAY_AFTERNOON = datetime(2024, 3, 16, 14, 0, tzinfo=timezone.utc)


class RecordingSMSSender(SMSSender):
    """Keeps every code it was asked to deliver"""

    def __init__(self):
        self.sent = []

    def send(self, phone_number: str, code: str) -> None:
        self.sent.append((phone_number, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to a Tuesday at 14:00 UTC."""
    return FixedClock(TUESDAY_AFTERNOON)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite:///:memory:",
        LOG_TO_FILE=False,
        LOG_DIR=tmp_path / "logs",
        TIMEZONE="UTC",
        BLACKLISTED_IPS=["203.0.113.66"],
    )


@pytest.fixture
def store(clock) -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(bytes(range(32)))


@pytest.fixture
def device_repo() -> InMemoryDeviceRepository:
    return InMemoryDeviceRepository()


@pytest.fixture
def log_repo() -> InMemorySecurityLogRepository:
    return InMemorySecurityLogRepository()


@pytest.fixture
def event_log(log_repo, clock) -> SecurityEventLog:
    return SecurityEventLog(log_repo, clock)


@pytest.fixture
def sms_sender() -> RecordingSMSSender:
    return RecordingSMSSender()


@pytest.fixture
def mfa(device_repo, event_log, store, sms_sender, cipher, clock) -> MFASystemManager:
    return MFASystemManager(
        devices=device_repo,
        event_log=event_log,
        store=store,
        sms_sender=sms_sender,
        cipher=cipher,
        clock=clock,
    )


@pytest.fixture
def policy() -> TrustPolicy:
    return TrustPolicy.build(
        trusted_networks=["10.0.0.0/8", "192.168.0.0/16"],
        blacklisted_ips=["203.0.113.66"],
    )


@pytest.fixture
def service(test_settings, clock, store, sms_sender, device_repo, log_repo, cipher) -> TrustAccessService:
    """Fully wired facade on in-memory collaborators."""
    return create_trust_service(
        test_settings,
        clock=clock,
        devices=device_repo,
        security_logs=log_repo,
        store=store,
        sms_sender=sms_sender,
        cipher=cipher,
    )


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """Session factory on a fresh in-memory SQLite database."""
    engine = create_database_engine("sqlite:///:memory:", echo=False)
    init_database(engine)
    yield create_session_factory(engine)
    engine.dispose()
