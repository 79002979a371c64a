"""
TrustGate Security Event Log
Append-only sink shared by the credential engine, trust evaluator and risk engine
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from trustgate.core.clock import Clock, SystemClock
from trustgate.core.logging import LoggerMixin
from .events import SecurityEventRecord, validate_details
from .models import SecurityEventType, SecurityStatus
from .repository import SecurityLogRepository


class SecurityEventLog(LoggerMixin):
    """
    Append-only security event log.

    Writes never raise: a failing store is reported on the application log and
    the caller's decision stands. Reads go straight to the repository.
    """

    def __init__(self, repository: SecurityLogRepository, clock: Optional[Clock] = None):
        self.repository = repository
        self.clock = clock or SystemClock()

    def record(
        self,
        event_type: SecurityEventType,
        tenant_id: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        risk_score: float = 0.0,
        status: Optional[SecurityStatus] = None,
    ) -> Optional[SecurityEventRecord]:
        """Append one event; returns the stored record or None when the write failed"""
        try:
            record = SecurityEventRecord(
                timestamp=self.clock.now(),
                tenant_id=tenant_id,
                user_id=user_id,
                event_type=event_type,
                ip_address=ip_address or "unknown",
                user_agent=user_agent,
                location=location,
                details=validate_details(event_type, details or {}),
                risk_score=risk_score,
                status=status,
            )
            stored = self.repository.append(record)
        except Exception as e:
            self.log_with_context(
                logging.ERROR,
                f"Failed to log security event {getattr(event_type, 'value', event_type)}: {e}",
                extra_data={
                    "tenant_id": tenant_id,
                    "user_id": user_id,
                    "ip_address": ip_address,
                    "details": details,
                    "risk_score": risk_score,
                },
            )
            return None

        self.logger.log(
            self._get_log_level(stored.status),
            f"Security Event: {stored.event_type.value} [{stored.status.value}] "
            f"(User: {user_id or 'N/A'}, IP: {stored.ip_address}, Risk: {stored.risk_score:.0f})"
        )
        return stored

    def recent_events(
        self,
        tenant_id: str,
        user_id: str,
        window: timedelta,
        limit: Optional[int] = None
    ) -> List[SecurityEventRecord]:
        """Events for ``user_id`` in the trailing ``window``, newest first"""
        since = self.clock.now() - window
        return self.repository.query(tenant_id=tenant_id, user_id=user_id, since=since, limit=limit)

    def query(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        event_type: Optional[SecurityEventType] = None,
        min_risk_score: Optional[float] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> List[SecurityEventRecord]:
        return self.repository.query(
            tenant_id=tenant_id,
            user_id=user_id,
            since=since,
            until=until,
            event_type=event_type,
            min_risk_score=min_risk_score,
            limit=limit,
            offset=offset,
        )

    @staticmethod
    def _get_log_level(status: SecurityStatus) -> int:
        if status == SecurityStatus.SUCCESS:
            return logging.INFO
        return logging.WARNING
