"""
TrustGate Security Analytics
Read-side aggregations over the security event log and enrolled MFA devices
"""

from collections import Counter, defaultdict
from datetime import date, timedelta, tzinfo
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from trustgate.core.clock import Clock, SystemClock
from trustgate.core.logging import LoggerMixin
from .audit import SecurityEventLog
from .events import SecurityEventRecord
from .repository import DeviceRepository


class RiskDistribution(BaseModel):
    low: int = 0       # <= 25
    medium: int = 0    # <= 50
    high: int = 0      # <= 75
    critical: int = 0  # > 75


class IPRiskSummary(BaseModel):
    ip_address: str
    event_count: int
    average_risk: float


class DailyRiskTrend(BaseModel):
    day: date
    event_count: int
    total_risk: float


class MFAUsage(BaseModel):
    total_devices: int = 0
    active_devices: int = 0
    verified_devices: int = 0
    recently_used_devices: int = 0
    adoption_rate: float = 0.0
    verification_rate: float = 0.0
    usage_rate: float = 0.0


class SecurityAnalyticsReport(BaseModel):
    tenant_id: str
    window_days: int
    total_events: int
    events_by_type: Dict[str, int] = Field(default_factory=dict)
    risk_distribution: RiskDistribution = Field(default_factory=RiskDistribution)
    top_risk_ips: List[IPRiskSummary] = Field(default_factory=list)
    daily_trends: List[DailyRiskTrend] = Field(default_factory=list)
    mfa_usage: MFAUsage = Field(default_factory=MFAUsage)


def risk_bucket(score: float) -> str:
    if score <= 25:
        return "low"
    if score <= 50:
        return "medium"
    if score <= 75:
        return "high"
    return "critical"


def _rate(part: int, whole: int) -> float:
    return round(part / whole, 4) if whole else 0.0


class SecurityAnalytics(LoggerMixin):
    """Builds the tenant security report; performs no writes"""

    def __init__(
        self,
        event_log: SecurityEventLog,
        devices: DeviceRepository,
        clock: Optional[Clock] = None,
        timezone: Optional[tzinfo] = None,
        top_ips: int = 10,
    ):
        self.event_log = event_log
        self.devices = devices
        self.clock = clock or SystemClock()
        self.timezone = timezone
        self.top_ips = top_ips

    def get_security_analytics(self, tenant_id: str, window_days: int = 30) -> SecurityAnalyticsReport:
        if window_days <= 0:
            raise ValueError("window_days must be positive")

        since = self.clock.now() - timedelta(days=window_days)
        events = self.event_log.query(tenant_id=tenant_id, since=since, limit=None)

        report = SecurityAnalyticsReport(
            tenant_id=tenant_id,
            window_days=window_days,
            total_events=len(events),
            events_by_type=self._events_by_type(events),
            risk_distribution=self._risk_distribution(events),
            top_risk_ips=self._top_risk_ips(events),
            daily_trends=self._daily_trends(events),
            mfa_usage=self._mfa_usage(tenant_id, since),
        )
        self.logger.debug(f"Analytics for tenant {tenant_id}: {len(events)} events over {window_days} days")
        return report

    @staticmethod
    def _events_by_type(events: List[SecurityEventRecord]) -> Dict[str, int]:
        counts = Counter(e.event_type.value for e in events)
        return dict(sorted(counts.items()))

    @staticmethod
    def _risk_distribution(events: List[SecurityEventRecord]) -> RiskDistribution:
        counts = Counter(risk_bucket(e.risk_score) for e in events)
        return RiskDistribution(**counts)

    def _top_risk_ips(self, events: List[SecurityEventRecord]) -> List[IPRiskSummary]:
        scores: Dict[str, List[float]] = defaultdict(list)
        for event in events:
            scores[event.ip_address].append(event.risk_score)

        summaries = [
            IPRiskSummary(
                ip_address=ip,
                event_count=len(values),
                average_risk=round(sum(values) / len(values), 2),
            )
            for ip, values in scores.items()
        ]
        summaries.sort(key=lambda s: (-s.average_risk, -s.event_count, s.ip_address))
        return summaries[:self.top_ips]

    def _daily_trends(self, events: List[SecurityEventRecord]) -> List[DailyRiskTrend]:
        days: Dict[date, List[float]] = defaultdict(list)
        for event in events:
            stamp = event.timestamp.astimezone(self.timezone) if self.timezone else event.timestamp
            days[stamp.date()].append(event.risk_score)

        return [
            DailyRiskTrend(day=day, event_count=len(values), total_risk=round(sum(values), 2))
            for day, values in sorted(days.items())
        ]

    def _mfa_usage(self, tenant_id: str, since) -> MFAUsage:
        devices = self.devices.list_for_tenant(tenant_id)
        total = len(devices)
        active = sum(1 for d in devices if d.is_active)
        verified = sum(1 for d in devices if d.is_verified)
        recent = sum(1 for d in devices if d.last_used is not None and d.last_used >= since)
        return MFAUsage(
            total_devices=total,
            active_devices=active,
            verified_devices=verified,
            recently_used_devices=recent,
            adoption_rate=_rate(active, total),
            verification_rate=_rate(verified, total),
            usage_rate=_rate(recent, total),
        )
