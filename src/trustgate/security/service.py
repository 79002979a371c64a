"""
TrustGate Access Service
Single entry point for the host application: MFA, zero-trust, risk and analytics
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import sessionmaker

from trustgate.core.cache import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from trustgate.core.clock import Clock, SystemClock, get_timezone
from trustgate.core.config import Settings, get_settings
from trustgate.core.encryption import SecretCipher
from trustgate.core.logging import LoggerMixin, get_logger
from trustgate.database.session import create_database_engine, create_session_factory, init_database
from .analytics import SecurityAnalytics, SecurityAnalyticsReport
from .audit import SecurityEventLog
from .events import SecurityEventRecord
from .mfa_system import MFADeviceInfo, MFASystemManager, TOTPSetupResult
from .models import SecurityEventType, SecurityStatus
from .repository import (
    DeviceRepository, InMemoryDeviceRepository, InMemorySecurityLogRepository,
    SecurityLogRepository, SQLDeviceRepository, SQLSecurityLogRepository
)
from .risk import AccessDecisionEngine, ResourceSensitivity, RiskAssessment, RiskScorer
from .sms import LoggingSMSSender, SMSSender
from .zero_trust import (
    DeviceTrustCache, GeoLocation, HttpLocationIntelProvider, LocationIntelProvider,
    TrustEvaluator, TrustPolicy, ZeroTrustEvaluation
)

logger = get_logger(__name__)


class TrustAccessService(LoggerMixin):
    """
    Facade over the credential engine, trust evaluator, decision engine and
    analytics. Every collaborator is injected; nothing is process-global.
    """

    def __init__(
        self,
        mfa: MFASystemManager,
        evaluator: TrustEvaluator,
        decisions: AccessDecisionEngine,
        analytics: SecurityAnalytics,
        event_log: SecurityEventLog,
    ):
        self.mfa = mfa
        self.evaluator = evaluator
        self.decisions = decisions
        self.analytics = analytics
        self.event_log = event_log

    # MFA ---------------------------------------------------------------

    def setup_totp(self, user_id: str, tenant_id: str, device_name: str) -> TOTPSetupResult:
        return self.mfa.setup_totp(user_id, tenant_id, device_name)

    def verify_totp(self, device_id: str, code: str, user_id: str, tenant_id: str, **request: Any) -> bool:
        return self.mfa.verify_totp(device_id, code, user_id, tenant_id, **request)

    def setup_sms(self, user_id: str, phone_number: str, tenant_id: str) -> str:
        return self.mfa.setup_sms(user_id, phone_number, tenant_id)

    def send_sms_code(self, device_id: str, user_id: str, tenant_id: str) -> bool:
        return self.mfa.send_sms_code(device_id, user_id, tenant_id)

    def verify_sms(self, device_id: str, code: str, user_id: str, tenant_id: str, **request: Any) -> bool:
        return self.mfa.verify_sms(device_id, code, user_id, tenant_id, **request)

    def redeem_backup_code(self, device_id: str, code: str, user_id: str, tenant_id: str, **request: Any) -> bool:
        return self.mfa.redeem_backup_code(device_id, code, user_id, tenant_id, **request)

    def regenerate_backup_codes(self, device_id: str, user_id: str, tenant_id: str) -> List[str]:
        return self.mfa.regenerate_backup_codes(device_id, user_id, tenant_id)

    def list_devices(self, user_id: str, tenant_id: str) -> List[MFADeviceInfo]:
        return self.mfa.list_devices(user_id, tenant_id)

    def deactivate_device(self, device_id: str, user_id: str, tenant_id: str) -> bool:
        return self.mfa.deactivate_device(device_id, user_id, tenant_id)

    def get_mfa_status(self, user_id: str, tenant_id: str) -> Dict[str, Any]:
        return self.mfa.get_mfa_status(user_id, tenant_id)

    # Zero trust --------------------------------------------------------

    def evaluate_zero_trust(
        self,
        user_id: str,
        ip_address: str,
        user_agent: Optional[str],
        tenant_id: str,
        location: Optional[Union[GeoLocation, Dict[str, Any]]] = None,
        device_fingerprint: Optional[str] = None,
    ) -> ZeroTrustEvaluation:
        return self.evaluator.evaluate(
            user_id,
            tenant_id,
            ip_address,
            user_agent,
            location=location,
            device_fingerprint=device_fingerprint,
        )

    def trust_device(self, user_id: str, tenant_id: str, device_fingerprint: str) -> None:
        """Mark a fingerprint as trusted once the user has passed MFA on it"""
        self.evaluator.device_cache.trust(tenant_id, user_id, device_fingerprint)
        self.logger.info(f"Device fingerprint trusted for user: {user_id}")

    # Risk --------------------------------------------------------------

    def assess_risk(
        self,
        user_id: str,
        action: str,
        ip_address: str,
        user_agent: Optional[str],
        sensitivity: Union[ResourceSensitivity, str],
        tenant_id: str,
    ) -> RiskAssessment:
        return self.decisions.assess_risk(user_id, action, ip_address, user_agent, sensitivity, tenant_id)

    # Security log ------------------------------------------------------

    def get_security_analytics(self, tenant_id: str, window_days: int = 30) -> SecurityAnalyticsReport:
        return self.analytics.get_security_analytics(tenant_id, window_days)

    def log_event(
        self,
        event_type: Union[SecurityEventType, str],
        tenant_id: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        risk_score: float = 0.0,
        status: Optional[SecurityStatus] = None,
    ) -> Optional[SecurityEventRecord]:
        return self.event_log.record(
            SecurityEventType(event_type),
            tenant_id=tenant_id,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            location=location,
            details=details,
            risk_score=risk_score,
            status=status,
        )

    def query_events(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        action: Optional[Union[SecurityEventType, str]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        min_risk_score: Optional[float] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[SecurityEventRecord]:
        return self.event_log.query(
            tenant_id=tenant_id,
            user_id=user_id,
            since=start_date,
            until=end_date,
            event_type=SecurityEventType(action) if action else None,
            min_risk_score=min_risk_score,
            limit=limit,
            offset=offset,
        )


def create_key_value_store(config: Settings, clock: Optional[Clock] = None) -> KeyValueStore:
    if config.CACHE_BACKEND == "redis":
        return RedisKeyValueStore(url=config.REDIS_URL)
    return InMemoryKeyValueStore(clock=clock)


def create_trust_service(
    config: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    session_factory: Optional[sessionmaker] = None,
    devices: Optional[DeviceRepository] = None,
    security_logs: Optional[SecurityLogRepository] = None,
    store: Optional[KeyValueStore] = None,
    sms_sender: Optional[SMSSender] = None,
    location_provider: Optional[LocationIntelProvider] = None,
    cipher: Optional[SecretCipher] = None,
    in_memory: bool = False,
) -> TrustAccessService:
    """
    Wire a TrustAccessService from settings.

    Any collaborator passed in is used as-is. With ``in_memory`` the device and
    log repositories are the lock-guarded in-process ones; otherwise they run on
    ``session_factory`` (built from ``DATABASE_URL`` when not given).
    """
    config = config or get_settings()
    clock = clock or SystemClock()

    if devices is None or security_logs is None:
        if in_memory:
            devices = devices or InMemoryDeviceRepository()
            security_logs = security_logs or InMemorySecurityLogRepository()
        else:
            if session_factory is None:
                engine = create_database_engine(config=config)
                init_database(engine)
                session_factory = create_session_factory(engine)
            devices = devices or SQLDeviceRepository(session_factory)
            security_logs = security_logs or SQLSecurityLogRepository(session_factory)

    store = store or create_key_value_store(config, clock)
    if location_provider is None and config.GEOLOCATION_API_URL:
        location_provider = HttpLocationIntelProvider(
            config.GEOLOCATION_API_URL, timeout=config.GEOLOCATION_TIMEOUT
        )

    policy = TrustPolicy.from_settings(config)
    event_log = SecurityEventLog(security_logs, clock)

    mfa = MFASystemManager(
        devices=devices,
        event_log=event_log,
        store=store,
        sms_sender=sms_sender or LoggingSMSSender(),
        cipher=cipher or SecretCipher.from_b64(config.SECRET_ENCRYPTION_KEY),
        clock=clock,
        issuer_name=config.MFA_ISSUER_NAME,
        totp_interval=config.TOTP_INTERVAL,
        totp_digits=config.TOTP_DIGITS,
        totp_window=config.TOTP_VALID_WINDOW,
        backup_codes_count=config.BACKUP_CODE_COUNT,
        backup_code_bytes=config.BACKUP_CODE_BYTES,
        sms_code_ttl=config.SMS_CODE_TTL_SECONDS,
        lockout_threshold=config.MFA_LOCKOUT_THRESHOLD,
    )
    evaluator = TrustEvaluator(
        policy,
        event_log,
        DeviceTrustCache(store, ttl_seconds=config.DEVICE_TRUST_TTL_SECONDS),
        clock=clock,
        location_provider=location_provider,
    )
    decisions = AccessDecisionEngine(RiskScorer(policy, event_log, clock), event_log)
    analytics = SecurityAnalytics(
        event_log,
        devices,
        clock=clock,
        timezone=get_timezone(config.TIMEZONE),
        top_ips=config.ANALYTICS_TOP_IPS,
    )

    logger.debug(f"Trust service ready (cache backend: {config.CACHE_BACKEND}, in_memory: {in_memory})")
    return TrustAccessService(mfa, evaluator, decisions, analytics, event_log)
