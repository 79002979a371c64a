"""
Persistence collaborator

Contracts for MFA device storage and the security log, each with a SQLAlchemy
implementation and a lock-guarded in-memory one. Every call is scoped by
tenant id. Per-device counters and backup-code redemption are single atomic
statements so concurrent verifications never lose an update.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import and_, func, select, update, delete
from sqlalchemy.orm import Session, sessionmaker

from trustgate.core.clock import as_utc
from trustgate.core.logging import LoggerMixin
from .events import SecurityEventRecord
from .models import (
    MFABackupCode, MFADevice, MFADeviceType, SecurityEventType, SecurityLog
)


@dataclass(frozen=True)
class MFADeviceSnapshot:
    """Read-only view of an enrolled device"""
    id: str
    user_id: str
    tenant_id: str
    device_type: MFADeviceType
    device_name: str
    secret: Optional[str]
    phone_number: Optional[str]
    is_active: bool
    is_verified: bool
    failed_attempts: int
    last_used: Optional[datetime]
    created_at: Optional[datetime]
    backup_codes_remaining: int = 0


class DeviceRepository(ABC):
    """MFA device storage"""

    @abstractmethod
    def create(
        self,
        user_id: str,
        tenant_id: str,
        device_type: MFADeviceType,
        device_name: str,
        created_at: datetime,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
        backup_code_hashes: Iterable[str] = (),
    ) -> MFADeviceSnapshot:
        ...

    @abstractmethod
    def get(self, device_id: str, tenant_id: str) -> Optional[MFADeviceSnapshot]:
        ...

    @abstractmethod
    def list_for_tenant(self, tenant_id: str, user_id: Optional[str] = None) -> List[MFADeviceSnapshot]:
        ...

    @abstractmethod
    def increment_failed_attempts(self, device_id: str, tenant_id: str) -> int:
        """Atomically add one failure; returns the new counter value"""

    @abstractmethod
    def record_success(
        self,
        device_id: str,
        tenant_id: str,
        used_at: datetime,
        mark_verified: bool = False
    ) -> None:
        """Atomically reset the failure counter and stamp ``last_used``"""

    @abstractmethod
    def consume_backup_code(self, device_id: str, tenant_id: str, code_hash: str, used_at: datetime) -> bool:
        """Mark one unused backup code as used; only one concurrent caller wins"""

    @abstractmethod
    def replace_backup_codes(self, device_id: str, tenant_id: str, code_hashes: Iterable[str]) -> None:
        ...

    @abstractmethod
    def deactivate(self, device_id: str, tenant_id: str) -> bool:
        ...


class SecurityLogRepository(ABC):
    """Append-only security event storage"""

    @abstractmethod
    def append(self, record: SecurityEventRecord) -> SecurityEventRecord:
        ...

    @abstractmethod
    def query(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        event_type: Optional[SecurityEventType] = None,
        min_risk_score: Optional[float] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[SecurityEventRecord]:
        """Matching events, newest first"""


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

class SQLDeviceRepository(DeviceRepository, LoggerMixin):
    """MFA devices in a relational database"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _snapshot(self, db: Session, device: MFADevice) -> MFADeviceSnapshot:
        remaining = db.scalar(
            select(func.count(MFABackupCode.id)).where(
                and_(MFABackupCode.device_id == device.id, MFABackupCode.used_at.is_(None))
            )
        )
        return MFADeviceSnapshot(
            id=device.id,
            user_id=device.user_id,
            tenant_id=device.tenant_id,
            device_type=device.device_type,
            device_name=device.device_name,
            secret=device.secret,
            phone_number=device.phone_number,
            is_active=device.is_active,
            is_verified=device.is_verified,
            failed_attempts=device.failed_attempts,
            last_used=as_utc(device.last_used) if device.last_used else None,
            created_at=as_utc(device.created_at) if device.created_at else None,
            backup_codes_remaining=remaining or 0,
        )

    def create(
        self,
        user_id: str,
        tenant_id: str,
        device_type: MFADeviceType,
        device_name: str,
        created_at: datetime,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
        backup_code_hashes: Iterable[str] = (),
    ) -> MFADeviceSnapshot:
        with self.session_factory() as db:
            try:
                device = MFADevice(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    tenant_id=tenant_id,
                    device_type=device_type,
                    device_name=device_name,
                    secret=secret,
                    phone_number=phone_number,
                    is_active=True,
                    is_verified=False,
                    failed_attempts=0,
                    created_at=_utc(created_at),
                    updated_at=_utc(created_at),
                )
                device.backup_codes = [MFABackupCode(code_hash=h) for h in backup_code_hashes]
                db.add(device)
                db.commit()
                return self._snapshot(db, device)
            except Exception:
                db.rollback()
                raise

    def get(self, device_id: str, tenant_id: str) -> Optional[MFADeviceSnapshot]:
        with self.session_factory() as db:
            device = db.scalar(
                select(MFADevice).where(
                    and_(MFADevice.id == device_id, MFADevice.tenant_id == tenant_id)
                )
            )
            return self._snapshot(db, device) if device else None

    def list_for_tenant(self, tenant_id: str, user_id: Optional[str] = None) -> List[MFADeviceSnapshot]:
        with self.session_factory() as db:
            stmt = select(MFADevice).where(MFADevice.tenant_id == tenant_id)
            if user_id is not None:
                stmt = stmt.where(MFADevice.user_id == user_id)
            stmt = stmt.order_by(MFADevice.created_at)
            return [self._snapshot(db, device) for device in db.scalars(stmt)]

    def increment_failed_attempts(self, device_id: str, tenant_id: str) -> int:
        with self.session_factory() as db:
            try:
                db.execute(
                    update(MFADevice)
                    .where(and_(MFADevice.id == device_id, MFADevice.tenant_id == tenant_id))
                    .values(failed_attempts=MFADevice.failed_attempts + 1)
                )
                count = db.scalar(
                    select(MFADevice.failed_attempts).where(MFADevice.id == device_id)
                )
                db.commit()
                return count or 0
            except Exception:
                db.rollback()
                raise

    def record_success(
        self,
        device_id: str,
        tenant_id: str,
        used_at: datetime,
        mark_verified: bool = False
    ) -> None:
        values = {"failed_attempts": 0, "last_used": _utc(used_at), "updated_at": _utc(used_at)}
        if mark_verified:
            values["is_verified"] = True
        with self.session_factory() as db:
            try:
                db.execute(
                    update(MFADevice)
                    .where(and_(MFADevice.id == device_id, MFADevice.tenant_id == tenant_id))
                    .values(**values)
                )
                db.commit()
            except Exception:
                db.rollback()
                raise

    def consume_backup_code(self, device_id: str, tenant_id: str, code_hash: str, used_at: datetime) -> bool:
        with self.session_factory() as db:
            try:
                owned = db.scalar(
                    select(MFADevice.id).where(
                        and_(MFADevice.id == device_id, MFADevice.tenant_id == tenant_id)
                    )
                )
                if owned is None:
                    return False
                # Pick one unused row, then claim it with a conditional update
                row_id = db.scalar(
                    select(MFABackupCode.id).where(
                        and_(
                            MFABackupCode.device_id == device_id,
                            MFABackupCode.code_hash == code_hash,
                            MFABackupCode.used_at.is_(None),
                        )
                    ).limit(1)
                )
                if row_id is None:
                    return False
                result = db.execute(
                    update(MFABackupCode)
                    .where(and_(MFABackupCode.id == row_id, MFABackupCode.used_at.is_(None)))
                    .values(used_at=_utc(used_at))
                )
                db.commit()
                return result.rowcount == 1
            except Exception:
                db.rollback()
                raise

    def replace_backup_codes(self, device_id: str, tenant_id: str, code_hashes: Iterable[str]) -> None:
        with self.session_factory() as db:
            try:
                owned = db.scalar(
                    select(MFADevice.id).where(
                        and_(MFADevice.id == device_id, MFADevice.tenant_id == tenant_id)
                    )
                )
                if owned is None:
                    return
                db.execute(
                    delete(MFABackupCode).where(
                        and_(MFABackupCode.device_id == device_id, MFABackupCode.used_at.is_(None))
                    )
                )
                db.add_all(MFABackupCode(device_id=device_id, code_hash=h) for h in code_hashes)
                db.commit()
            except Exception:
                db.rollback()
                raise

    def deactivate(self, device_id: str, tenant_id: str) -> bool:
        with self.session_factory() as db:
            try:
                result = db.execute(
                    update(MFADevice)
                    .where(and_(MFADevice.id == device_id, MFADevice.tenant_id == tenant_id))
                    .values(is_active=False)
                )
                db.commit()
                return result.rowcount == 1
            except Exception:
                db.rollback()
                raise


class SQLSecurityLogRepository(SecurityLogRepository, LoggerMixin):
    """Security log in a relational database"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_record(row: SecurityLog) -> SecurityEventRecord:
        return SecurityEventRecord(
            id=row.id,
            timestamp=as_utc(row.created_at),
            tenant_id=row.tenant_id,
            user_id=row.user_id,
            event_type=row.event_type,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            location=row.location,
            details=row.details or {},
            risk_score=row.risk_score,
            status=row.status,
        )

    def append(self, record: SecurityEventRecord) -> SecurityEventRecord:
        with self.session_factory() as db:
            try:
                row = SecurityLog(
                    id=record.id or str(uuid.uuid4()),
                    created_at=_utc(record.timestamp),
                    tenant_id=record.tenant_id,
                    user_id=record.user_id,
                    event_type=record.event_type,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    location=record.location,
                    details=dict(record.details),
                    risk_score=record.risk_score,
                    status=record.status,
                )
                db.add(row)
                db.commit()
                return record.model_copy(update={"id": row.id})
            except Exception:
                db.rollback()
                raise

    def query(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        event_type: Optional[SecurityEventType] = None,
        min_risk_score: Optional[float] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[SecurityEventRecord]:
        stmt = select(SecurityLog).where(SecurityLog.tenant_id == tenant_id)
        if user_id is not None:
            stmt = stmt.where(SecurityLog.user_id == user_id)
        if since is not None:
            stmt = stmt.where(SecurityLog.created_at >= _utc(since))
        if until is not None:
            stmt = stmt.where(SecurityLog.created_at <= _utc(until))
        if event_type is not None:
            stmt = stmt.where(SecurityLog.event_type == event_type)
        if min_risk_score is not None:
            stmt = stmt.where(SecurityLog.risk_score >= min_risk_score)
        stmt = stmt.order_by(SecurityLog.created_at.desc(), SecurityLog.id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        with self.session_factory() as db:
            return [self._to_record(row) for row in db.scalars(stmt)]


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

@dataclass
class _DeviceRow:
    snapshot: MFADeviceSnapshot
    unused_codes: Dict[str, int]


class InMemoryDeviceRepository(DeviceRepository):
    """Process-local device storage; one mutex serialises every write"""

    def __init__(self):
        self._rows: Dict[str, _DeviceRow] = {}
        self._lock = threading.Lock()

    def _row(self, device_id: str, tenant_id: str) -> Optional[_DeviceRow]:
        row = self._rows.get(device_id)
        if row is None or row.snapshot.tenant_id != tenant_id:
            return None
        return row

    @staticmethod
    def _view(row: _DeviceRow) -> MFADeviceSnapshot:
        return replace(row.snapshot, backup_codes_remaining=sum(row.unused_codes.values()))

    def create(
        self,
        user_id: str,
        tenant_id: str,
        device_type: MFADeviceType,
        device_name: str,
        created_at: datetime,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
        backup_code_hashes: Iterable[str] = (),
    ) -> MFADeviceSnapshot:
        snapshot = MFADeviceSnapshot(
            id=str(uuid.uuid4()),
            user_id=user_id,
            tenant_id=tenant_id,
            device_type=device_type,
            device_name=device_name,
            secret=secret,
            phone_number=phone_number,
            is_active=True,
            is_verified=False,
            failed_attempts=0,
            last_used=None,
            created_at=_utc(created_at),
        )
        codes: Dict[str, int] = {}
        for code_hash in backup_code_hashes:
            codes[code_hash] = codes.get(code_hash, 0) + 1
        with self._lock:
            self._rows[snapshot.id] = _DeviceRow(snapshot=snapshot, unused_codes=codes)
            return self._view(self._rows[snapshot.id])

    def get(self, device_id: str, tenant_id: str) -> Optional[MFADeviceSnapshot]:
        with self._lock:
            row = self._row(device_id, tenant_id)
            return self._view(row) if row else None

    def list_for_tenant(self, tenant_id: str, user_id: Optional[str] = None) -> List[MFADeviceSnapshot]:
        with self._lock:
            rows = [
                row for row in self._rows.values()
                if row.snapshot.tenant_id == tenant_id
                and (user_id is None or row.snapshot.user_id == user_id)
            ]
            return [self._view(row) for row in rows]

    def increment_failed_attempts(self, device_id: str, tenant_id: str) -> int:
        with self._lock:
            row = self._row(device_id, tenant_id)
            if row is None:
                return 0
            row.snapshot = replace(row.snapshot, failed_attempts=row.snapshot.failed_attempts + 1)
            return row.snapshot.failed_attempts

    def record_success(
        self,
        device_id: str,
        tenant_id: str,
        used_at: datetime,
        mark_verified: bool = False
    ) -> None:
        with self._lock:
            row = self._row(device_id, tenant_id)
            if row is None:
                return
            row.snapshot = replace(
                row.snapshot,
                failed_attempts=0,
                last_used=_utc(used_at),
                is_verified=row.snapshot.is_verified or mark_verified,
            )

    def consume_backup_code(self, device_id: str, tenant_id: str, code_hash: str, used_at: datetime) -> bool:
        with self._lock:
            row = self._row(device_id, tenant_id)
            if row is None or row.unused_codes.get(code_hash, 0) == 0:
                return False
            row.unused_codes[code_hash] -= 1
            if row.unused_codes[code_hash] == 0:
                del row.unused_codes[code_hash]
            return True

    def replace_backup_codes(self, device_id: str, tenant_id: str, code_hashes: Iterable[str]) -> None:
        codes: Dict[str, int] = {}
        for code_hash in code_hashes:
            codes[code_hash] = codes.get(code_hash, 0) + 1
        with self._lock:
            row = self._row(device_id, tenant_id)
            if row is not None:
                row.unused_codes = codes

    def deactivate(self, device_id: str, tenant_id: str) -> bool:
        with self._lock:
            row = self._row(device_id, tenant_id)
            if row is None:
                return False
            row.snapshot = replace(row.snapshot, is_active=False)
            return True

    def unused_code_hashes(self, device_id: str, tenant_id: str) -> Set[str]:
        with self._lock:
            row = self._row(device_id, tenant_id)
            return set(row.unused_codes) if row else set()


class InMemorySecurityLogRepository(SecurityLogRepository):
    """Process-local append-only log"""

    def __init__(self):
        self._records: List[SecurityEventRecord] = []
        self._lock = threading.Lock()

    def append(self, record: SecurityEventRecord) -> SecurityEventRecord:
        stored = record if record.id else record.model_copy(update={"id": str(uuid.uuid4())})
        with self._lock:
            self._records.append(stored)
        return stored

    def query(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        event_type: Optional[SecurityEventType] = None,
        min_risk_score: Optional[float] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[SecurityEventRecord]:
        with self._lock:
            records = list(self._records)

        matches = [
            r for r in records
            if r.tenant_id == tenant_id
            and (user_id is None or r.user_id == user_id)
            and (since is None or r.timestamp >= _utc(since))
            and (until is None or r.timestamp <= _utc(until))
            and (event_type is None or r.event_type == event_type)
            and (min_risk_score is None or r.risk_score >= min_risk_score)
        ]
        # Stable sort keeps insertion order reversed for equal timestamps
        matches = sorted(reversed(matches), key=lambda r: r.timestamp, reverse=True)
        end = None if limit is None else offset + limit
        return matches[offset:end]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
