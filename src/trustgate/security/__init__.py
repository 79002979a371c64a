"""
TrustGate Security Module
MFA credential engine, zero-trust evaluation, risk decisions and security analytics
"""

from .errors import (
    TrustGateError,
    NotFoundError,
    UnauthorizedError,
    ExpiredError,
    RateLimitedError,
    InvalidCodeError,
    AssessmentFailure,
    DeliveryError,
    EventSchemaError,
    MFAError,
    DeviceTrustConflict,
)

from .models import (
    MFADevice,
    MFABackupCode,
    MFADeviceType,
    SecurityLog,
    SecurityEventType,
    SecurityStatus,
)

from .events import SecurityEventRecord, validate_details
from .audit import SecurityEventLog
from .sms import SMSSender, LoggingSMSSender

from .repository import (
    DeviceRepository,
    SecurityLogRepository,
    MFADeviceSnapshot,
    SQLDeviceRepository,
    SQLSecurityLogRepository,
    InMemoryDeviceRepository,
    InMemorySecurityLogRepository,
)

from .mfa_system import MFASystemManager, MFAMethod, TOTPSetupResult, MFADeviceInfo

from .zero_trust import (
    TrustPolicy,
    GeoLocation,
    LocationIntelProvider,
    HttpLocationIntelProvider,
    DeviceTrustCache,
    TrustEvaluator,
    ZeroTrustEvaluation,
)

from .risk import (
    AccessAction,
    AccessDecisionEngine,
    ResourceSensitivity,
    RiskAssessment,
    RiskFactor,
    RiskScorer,
    decide_action,
)

from .analytics import SecurityAnalytics, SecurityAnalyticsReport
from .service import TrustAccessService, create_trust_service

__all__ = [
    # Errors
    "TrustGateError",
    "NotFoundError",
    "UnauthorizedError",
    "ExpiredError",
    "RateLimitedError",
    "InvalidCodeError",
    "AssessmentFailure",
    "DeliveryError",
    "EventSchemaError",
    "MFAError",
    "DeviceTrustConflict",

    # Models
    "MFADevice",
    "MFABackupCode",
    "MFADeviceType",
    "SecurityLog",
    "SecurityEventType",
    "SecurityStatus",
    "SecurityEventRecord",
    "validate_details",

    # Persistence and collaborators
    "SecurityEventLog",
    "SMSSender",
    "LoggingSMSSender",
    "DeviceRepository",
    "SecurityLogRepository",
    "MFADeviceSnapshot",
    "SQLDeviceRepository",
    "SQLSecurityLogRepository",
    "InMemoryDeviceRepository",
    "InMemorySecurityLogRepository",

    # MFA
    "MFASystemManager",
    "MFAMethod",
    "TOTPSetupResult",
    "MFADeviceInfo",

    # Zero trust
    "TrustPolicy",
    "GeoLocation",
    "LocationIntelProvider",
    "HttpLocationIntelProvider",
    "DeviceTrustCache",
    "TrustEvaluator",
    "ZeroTrustEvaluation",

    # Risk
    "AccessAction",
    "AccessDecisionEngine",
    "ResourceSensitivity",
    "RiskAssessment",
    "RiskFactor",
    "RiskScorer",
    "decide_action",

    # Analytics and facade
    "SecurityAnalytics",
    "SecurityAnalyticsReport",
    "TrustAccessService",
    "create_trust_service",
]
