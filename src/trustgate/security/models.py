"""
TrustGate Security Database Models
MFA devices, backup codes and the append-only security log
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, Boolean, DateTime, Enum as SQLEnum, Float, ForeignKey, Index, Integer,
    String, Text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from trustgate.database.models import Base, TimestampMixin


def _new_id() -> str:
    return str(uuid.uuid4())


class MFADeviceType(str, Enum):
    """Second factor kinds"""
    TOTP = "TOTP"
    SMS = "SMS"


class SecurityEventType(str, Enum):
    """Security log event types"""
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    MFA_SUCCESS = "MFA_SUCCESS"
    MFA_FAILURE = "MFA_FAILURE"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    DATA_ACCESS = "DATA_ACCESS"
    ZERO_TRUST_EVALUATION = "ZERO_TRUST_EVALUATION"
    PERMISSION_DENIED = "PERMISSION_DENIED"


class SecurityStatus(str, Enum):
    """Outcome recorded on a security event"""
    SUCCESS = "SUCCESS"
    BLOCKED = "BLOCKED"
    FAILURE = "FAILURE"


class MFADevice(Base, TimestampMixin):
    """Enrolled second factor"""
    __tablename__ = "mfa_devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)

    device_type: Mapped[MFADeviceType] = mapped_column(SQLEnum(MFADeviceType), nullable=False)
    device_name: Mapped[str] = mapped_column(String(200), nullable=False)
    secret: Mapped[Optional[str]] = mapped_column(Text)  # Encrypted
    phone_number: Mapped[Optional[str]] = mapped_column(String(32))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    backup_codes: Mapped[List["MFABackupCode"]] = relationship(
        "MFABackupCode",
        back_populates="device",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_mfa_devices_tenant_user", "tenant_id", "user_id"),
    )


class MFABackupCode(Base):
    """Single-use recovery code, stored as a SHA-256 digest"""
    __tablename__ = "mfa_backup_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    device_id: Mapped[str] = mapped_column(ForeignKey("mfa_devices.id", ondelete="CASCADE"), nullable=False)
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    device: Mapped["MFADevice"] = relationship("MFADevice", back_populates="backup_codes")

    __table_args__ = (
        Index("ix_mfa_backup_codes_device_hash", "device_id", "code_hash"),
    )


class SecurityLog(Base):
    """Append-only security event record"""
    __tablename__ = "security_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(100))

    event_type: Mapped[SecurityEventType] = mapped_column(SQLEnum(SecurityEventType), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False, default="unknown")
    user_agent: Mapped[Optional[str]] = mapped_column(String(500))
    location: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    risk_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    status: Mapped[SecurityStatus] = mapped_column(
        SQLEnum(SecurityStatus),
        default=SecurityStatus.SUCCESS,
        nullable=False
    )

    __table_args__ = (
        Index("ix_security_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_security_logs_tenant_user_created", "tenant_id", "user_id", "created_at"),
        Index("ix_security_logs_event_type", "event_type"),
    )
