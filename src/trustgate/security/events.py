"""
Security event records

Event details are a closed, versioned key-value structure: every event type
documents the keys it may carry and values are restricted to scalars or lists
of strings, so analytics can aggregate them without guessing at shapes.
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from trustgate.core.clock import as_utc

from .errors import EventSchemaError
from .models import SecurityEventType, SecurityStatus

DETAILS_SCHEMA_VERSION = 1

DetailValue = Union[bool, int, float, str, List[str]]

_COMMON_KEYS = frozenset({"schema_version"})

# Allowed detail keys per event type
ALLOWED_DETAIL_KEYS: Dict[SecurityEventType, FrozenSet[str]] = {
    SecurityEventType.LOGIN_SUCCESS: frozenset({"method", "session_id"}),
    SecurityEventType.LOGIN_FAILED: frozenset({"method", "reason"}),
    SecurityEventType.LOGOUT: frozenset({"session_id"}),
    SecurityEventType.MFA_SUCCESS: frozenset({
        "action", "device_id", "device_name", "method", "phone_suffix",
        "remaining_codes", "codes_generated",
    }),
    SecurityEventType.MFA_FAILURE: frozenset({
        "device_id", "method", "reason", "failed_attempts",
    }),
    SecurityEventType.SUSPICIOUS_ACTIVITY: frozenset({"reason", "indicators", "source"}),
    SecurityEventType.DATA_ACCESS: frozenset({
        "action", "risk_score", "recommendation", "factors", "sensitivity", "error",
    }),
    SecurityEventType.ZERO_TRUST_EVALUATION: frozenset({
        "overall_trust", "device_trusted", "location_trusted", "behavior_trusted",
        "time_trusted",
    }),
    SecurityEventType.PERMISSION_DENIED: frozenset({"action", "resource", "reason"}),
}

FAILURE_EVENT_TYPES = frozenset({
    SecurityEventType.LOGIN_FAILED,
    SecurityEventType.MFA_FAILURE,
    SecurityEventType.PERMISSION_DENIED,
})

BLOCKED_RISK_THRESHOLD = 70


def validate_details(event_type: SecurityEventType, details: Dict[str, Any]) -> Dict[str, Any]:
    """Check ``details`` against the schema of ``event_type``; returns a stamped copy"""
    allowed = ALLOWED_DETAIL_KEYS[SecurityEventType(event_type)] | _COMMON_KEYS
    unknown = sorted(set(details) - allowed)
    if unknown:
        raise EventSchemaError(
            f"Keys {unknown} are not allowed on {SecurityEventType(event_type).value} events"
        )

    for key, value in details.items():
        if isinstance(value, (bool, int, float, str)):
            continue
        if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
            continue
        raise EventSchemaError(f"Unsupported value type for '{key}': {type(value).__name__}")

    stamped = {k: list(v) if isinstance(v, tuple) else v for k, v in details.items()}
    stamped.setdefault("schema_version", DETAILS_SCHEMA_VERSION)
    return stamped


def derive_status(event_type: SecurityEventType, risk_score: float) -> SecurityStatus:
    if risk_score > BLOCKED_RISK_THRESHOLD:
        return SecurityStatus.BLOCKED
    if SecurityEventType(event_type) in FAILURE_EVENT_TYPES:
        return SecurityStatus.FAILURE
    return SecurityStatus.SUCCESS


class SecurityEventRecord(BaseModel):
    """Immutable security event as written to and read from the log"""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    timestamp: datetime
    tenant_id: str
    user_id: Optional[str] = None
    event_type: SecurityEventType
    ip_address: str = "unknown"
    user_agent: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    details: Dict[str, DetailValue] = Field(default_factory=dict)
    risk_score: float = Field(default=0.0, ge=0.0, le=100.0)
    status: SecurityStatus

    @field_validator("timestamp")
    @classmethod
    def normalise_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="before")
    @classmethod
    def fill_status(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("status") is None and "event_type" in data:
            data = dict(data)
            data["status"] = derive_status(data["event_type"], data.get("risk_score") or 0.0)
        if isinstance(data, dict) and not data.get("ip_address"):
            data = dict(data)
            data["ip_address"] = "unknown"
        return data

    @model_validator(mode="after")
    def check_details(self) -> "SecurityEventRecord":
        validate_details(self.event_type, self.details)
        return self
