"""
TrustGate Risk Scorer & Access Decision Engine
Weighted risk factors mapped onto ALLOW / MONITOR / REQUIRE_MFA / DENY
"""

import logging
import math
from enum import Enum
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from trustgate.core.clock import Clock, SystemClock
from trustgate.core.logging import LoggerMixin
from .audit import SecurityEventLog
from .errors import AssessmentFailure
from .models import SecurityEventType, SecurityStatus
from .zero_trust import TrustPolicy


class ResourceSensitivity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AccessAction(str, Enum):
    ALLOW = "ALLOW"
    MONITOR = "MONITOR"
    REQUIRE_MFA = "REQUIRE_MFA"
    DENY = "DENY"


# Points out of 100 each factor contributes at full impact
IP_WEIGHT = 30
BEHAVIOR_WEIGHT = 25
TIME_WEIGHT = 15
SENSITIVITY_WEIGHT = 30

SENSITIVITY_IMPACT = {
    ResourceSensitivity.LOW: (0.1, "Low sensitivity resource"),
    ResourceSensitivity.MEDIUM: (0.3, "Medium sensitivity resource"),
    ResourceSensitivity.HIGH: (0.6, "High sensitivity resource"),
    ResourceSensitivity.CRITICAL: (0.9, "Critical sensitivity resource"),
}

# (minimum score, action, recommendation), highest first
DECISION_THRESHOLDS = (
    (80, AccessAction.DENY, "Access denied due to high security risk"),
    (60, AccessAction.REQUIRE_MFA, "Multi-factor authentication required"),
    (40, AccessAction.MONITOR, "Allow access but monitor closely"),
)
ALLOW_RECOMMENDATION = "Access granted - low risk"
ASSESSMENT_ERROR_RECOMMENDATION = "Access denied due to assessment error"


class RiskFactor(BaseModel):
    factor: str
    impact: float = Field(ge=0.0, le=1.0)
    description: str


class RiskAssessment(BaseModel):
    """
    Outcome of one access risk assessment.

    ``risk_score`` is the factor total rounded half-up for reporting, while
    ``action`` is chosen from the unrounded total. A total of 79.5 therefore
    reports 80 yet stays at REQUIRE_MFA rather than DENY.
    """
    risk_score: int
    factors: List[RiskFactor]
    recommendation: str
    action: AccessAction

    @property
    def factor_names(self) -> List[str]:
        return [f.factor for f in self.factors]


def decide_action(score: float) -> Tuple[AccessAction, str]:
    """Map an unrounded total risk score to ``(action, recommendation)``"""
    for minimum, action, recommendation in DECISION_THRESHOLDS:
        if score >= minimum:
            return action, recommendation
    return AccessAction.ALLOW, ALLOW_RECOMMENDATION


def round_score(score: float) -> int:
    return int(math.floor(score + 0.5))


class RiskScorer(LoggerMixin):
    """Computes the individual risk factors"""

    def __init__(self, policy: TrustPolicy, event_log: SecurityEventLog, clock: Optional[Clock] = None):
        self.policy = policy
        self.event_log = event_log
        self.clock = clock or SystemClock()

    def ip_risk(self, ip_address: str) -> RiskFactor:
        if self.policy.is_blacklisted(ip_address):
            return RiskFactor(factor="IP_ADDRESS", impact=1.0, description="IP address is blacklisted")
        if not self.policy.is_trusted_network(ip_address):
            return RiskFactor(
                factor="IP_ADDRESS", impact=0.3, description="IP address is outside trusted networks"
            )
        return RiskFactor(factor="IP_ADDRESS", impact=0.0, description="IP address appears normal")

    def behavior_risk(self, user_id: str, tenant_id: str) -> RiskFactor:
        events = self.event_log.recent_events(tenant_id, user_id, window=self.policy.risk_window)

        impact = 0.0
        description = "User behavior appears normal"
        if len(events) > 50:
            impact, description = 0.8, "Unusually high activity rate"
        elif len(events) > 20:
            impact, description = 0.4, "Higher than normal activity"

        failed = sum(1 for e in events if e.status == SecurityStatus.FAILURE)
        if failed > 5:
            impact = max(impact, 0.9)
            description = "Multiple failed attempts detected"

        return RiskFactor(factor="USER_BEHAVIOR", impact=impact, description=description)

    def time_risk(self) -> RiskFactor:
        local = self.clock.local_now(self.policy.timezone)

        impact = 0.0
        description = "Access during normal hours"
        if local.hour >= 22 or local.hour <= 6:
            impact, description = 0.3, "Access during night hours"
        if local.weekday() >= 5:
            impact = max(impact, 0.2)
            description = "Access during weekend"

        return RiskFactor(factor="TIME_BASED", impact=impact, description=description)

    @staticmethod
    def sensitivity_risk(sensitivity: Union[ResourceSensitivity, str]) -> RiskFactor:
        try:
            level = ResourceSensitivity(str(getattr(sensitivity, "value", sensitivity)).upper())
        except ValueError:
            raise AssessmentFailure(f"Unknown resource sensitivity: {sensitivity!r}")
        impact, description = SENSITIVITY_IMPACT[level]
        return RiskFactor(factor="RESOURCE_SENSITIVITY", impact=impact, description=description)


class AccessDecisionEngine(LoggerMixin):
    """
    Turns risk factors into an access decision.

    Every call returns a decision and writes exactly one DATA_ACCESS event. Any
    error while scoring yields DENY with score 100.
    """

    def __init__(self, scorer: RiskScorer, event_log: SecurityEventLog):
        self.scorer = scorer
        self.event_log = event_log

    def assess_risk(
        self,
        user_id: str,
        action: str,
        ip_address: str,
        user_agent: Optional[str],
        sensitivity: Union[ResourceSensitivity, str],
        tenant_id: str,
    ) -> RiskAssessment:
        try:
            assessment, total = self._score(user_id, ip_address, sensitivity, tenant_id)
        except Exception as e:
            self.log_with_context(
                logging.ERROR,
                f"Risk assessment failed for user {user_id}: {e}",
                extra_data={"tenant_id": tenant_id, "action": action, "ip_address": ip_address},
            )
            assessment = RiskAssessment(
                risk_score=100,
                factors=[RiskFactor(factor="ASSESSMENT_ERROR", impact=1.0, description="Risk assessment failed")],
                recommendation=ASSESSMENT_ERROR_RECOMMENDATION,
                action=AccessAction.DENY,
            )
            self._log_assessment(user_id, action, ip_address, user_agent, tenant_id,
                                 assessment, 100.0, sensitivity, error=type(e).__name__)
            return assessment

        self._log_assessment(user_id, action, ip_address, user_agent, tenant_id,
                             assessment, total, sensitivity)
        if assessment.action != AccessAction.ALLOW:
            self.logger.warning(
                f"Access {assessment.action.value} for user {user_id} on {action} "
                f"(risk {assessment.risk_score})"
            )
        return assessment

    def _score(self, user_id: str, ip_address: str, sensitivity, tenant_id: str):
        weighted: List[tuple] = [
            (self.scorer.ip_risk(ip_address), IP_WEIGHT),
            (self.scorer.behavior_risk(user_id, tenant_id), BEHAVIOR_WEIGHT),
            (self.scorer.time_risk(), TIME_WEIGHT),
        ]
        sensitivity_factor = self.scorer.sensitivity_risk(sensitivity)

        factors = [factor for factor, _ in weighted if factor.impact > 0]
        factors.append(sensitivity_factor)

        total = sum(factor.impact * weight for factor, weight in weighted)
        total += sensitivity_factor.impact * SENSITIVITY_WEIGHT

        # Thresholds apply to the exact total, the reported score is rounded
        decision, recommendation = decide_action(total)
        assessment = RiskAssessment(
            risk_score=round_score(total),
            factors=factors,
            recommendation=recommendation,
            action=decision,
        )
        return assessment, total

    def _log_assessment(
        self,
        user_id: str,
        action: str,
        ip_address: str,
        user_agent: Optional[str],
        tenant_id: str,
        assessment: RiskAssessment,
        total: float,
        sensitivity,
        error: Optional[str] = None,
    ) -> None:
        details = {
            "action": action,
            "risk_score": round(total, 2),
            "recommendation": assessment.action.value,
            "factors": assessment.factor_names,
            "sensitivity": str(getattr(sensitivity, "value", sensitivity)),
        }
        if error:
            details["error"] = error

        self.event_log.record(
            SecurityEventType.DATA_ACCESS,
            tenant_id=tenant_id,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
            risk_score=min(round(total, 2), 100.0),
            status=SecurityStatus.BLOCKED if total > 70 else SecurityStatus.SUCCESS,
        )

