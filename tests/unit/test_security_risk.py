"""
Unit tests for the risk scorer and access decision engine.
"""
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from trustgate.core.clock import FixedClock
from trustgate.security.models import SecurityEventType, SecurityStatus
from trustgate.security.risk import (
    AccessAction, AccessDecisionEngine, ResourceSensitivity, RiskScorer, decide_action, round_score
)

TENANT = "tenant-a"
USER = "user-1"

TUESDAY_14 = datetime(2024, 3, 12, 14, 0, tzinfo=timezone.utc)
TUESDAY_23 = datetime(2024, 3, 12, 23, 0, tzinfo=timezone.utc)
SATURDAY_14 = datetime(2024, 3, 16, 14, 0, tzinfo=timezone.utc)
SATURDAY_23 = datetime(2024, 3, 16, 23, 0, tzinfo=timezone.utc)


@pytest.fixture
def scorer(policy, event_log, clock):
    return RiskScorer(policy, event_log, clock)


@pytest.fixture
def engine(scorer, event_log):
    return AccessDecisionEngine(scorer, event_log)


def data_access_events(event_log):
    return event_log.query(TENANT, event_type=SecurityEventType.DATA_ACCESS)


class TestDecisionThresholds:
    """Test cases for mapping scores to actions."""

    @pytest.mark.parametrize("score, action", [
        (85, AccessAction.DENY),
        (80, AccessAction.DENY),
        (79, AccessAction.REQUIRE_MFA),
        (65, AccessAction.REQUIRE_MFA),
        (60, AccessAction.REQUIRE_MFA),
        (59.99, AccessAction.MONITOR),
        (45, AccessAction.MONITOR),
        (40, AccessAction.MONITOR),
        (39.5, AccessAction.ALLOW),
        (10, AccessAction.ALLOW),
        (0, AccessAction.ALLOW),
    ])
    def test_thresholds(self, score, action):
        assert decide_action(score)[0] == action

    def test_recommendations(self):
        assert decide_action(90)[1] == "Access denied due to high security risk"
        assert decide_action(5)[1] == "Access granted - low risk"

    def test_round_score_half_up(self):
        assert round_score(12.5) == 13
        assert round_score(12.49) == 12
        assert round_score(79.5) == 80


class TestRiskFactors:
    """Test cases for the individual risk factors."""

    def test_ip_risk(self, scorer):
        assert scorer.ip_risk("203.0.113.66").impact == 1.0
        assert scorer.ip_risk("8.8.8.8").impact == 0.3
        assert scorer.ip_risk("10.1.2.3").impact == 0.0
        assert scorer.ip_risk("garbage").impact == 0.3

    def test_behavior_risk_activity_levels(self, scorer, event_log):
        assert scorer.behavior_risk(USER, TENANT).impact == 0.0

        for _ in range(21):
            event_log.record(SecurityEventType.LOGIN_SUCCESS, TENANT, USER)
        assert scorer.behavior_risk(USER, TENANT).impact == 0.4

        for _ in range(30):
            event_log.record(SecurityEventType.LOGIN_SUCCESS, TENANT, USER)
        assert scorer.behavior_risk(USER, TENANT).impact == 0.8

    def test_behavior_risk_failed_attempts(self, scorer, event_log):
        for _ in range(6):
            event_log.record(SecurityEventType.MFA_FAILURE, TENANT, USER, details={"reason": "INVALID_TOKEN"})

        factor = scorer.behavior_risk(USER, TENANT)
        assert factor.impact == 0.9
        assert factor.description == "Multiple failed attempts detected"

    def test_behavior_risk_window(self, scorer, event_log, clock):
        for _ in range(6):
            event_log.record(SecurityEventType.LOGIN_FAILED, TENANT, USER)
        clock.advance(minutes=61)
        assert scorer.behavior_risk(USER, TENANT).impact == 0.0

    @pytest.mark.parametrize("instant, impact", [
        (TUESDAY_14, 0.0),
        (TUESDAY_23, 0.3),
        (datetime(2024, 3, 12, 6, 30, tzinfo=timezone.utc), 0.3),
        (datetime(2024, 3, 12, 7, 0, tzinfo=timezone.utc), 0.0),
        (SATURDAY_14, 0.2),
        (SATURDAY_23, 0.3),
    ])
    def test_time_risk(self, policy, event_log, instant, impact):
        scorer = RiskScorer(policy, event_log, FixedClock(instant))
        assert scorer.time_risk().impact == impact

    @pytest.mark.parametrize("level, impact", [
        ("LOW", 0.1), ("MEDIUM", 0.3), ("HIGH", 0.6), ("CRITICAL", 0.9), ("critical", 0.9),
    ])
    def test_sensitivity_risk(self, level, impact):
        assert RiskScorer.sensitivity_risk(level).impact == impact


class TestAccessDecisionEngine:
    """Test cases for end-to-end risk assessment."""

    def test_low_risk_allowed(self, engine):
        result = engine.assess_risk(USER, "read_dashboard", "10.0.0.5", "Mozilla/5.0", ResourceSensitivity.LOW, TENANT)

        assert result.action == AccessAction.ALLOW
        assert result.risk_score == 3
        assert result.factor_names == ["RESOURCE_SENSITIVITY"]

    def test_factors_and_weighting(self, engine):
        # 0.3*30 outside network + 0.9*30 critical = 36
        result = engine.assess_risk(USER, "export", "8.8.8.8", None, "CRITICAL", TENANT)

        assert result.risk_score == 36
        assert result.action == AccessAction.ALLOW
        assert result.factor_names == ["IP_ADDRESS", "RESOURCE_SENSITIVITY"]

    def test_blacklisted_critical_monitored(self, engine):
        # 1.0*30 + 0.9*30 = 57
        result = engine.assess_risk(USER, "export", "203.0.113.66", None, "CRITICAL", TENANT)
        assert result.risk_score == 57
        assert result.action == AccessAction.MONITOR

    def test_thresholds_use_unrounded_total(self, engine, event_log):
        for _ in range(6):
            event_log.record(SecurityEventType.LOGIN_FAILED, TENANT, USER)

        # 30 blacklisted + 22.5 behavior + 27 critical = 79.5
        result = engine.assess_risk(USER, "export", "203.0.113.66", None, "CRITICAL", TENANT)

        assert result.risk_score == 80
        assert result.action == AccessAction.REQUIRE_MFA

    def test_deny_at_night(self, policy, event_log):
        clock = FixedClock(TUESDAY_23)
        engine = AccessDecisionEngine(RiskScorer(policy, event_log, clock), event_log)
        for _ in range(6):
            event_log.record(SecurityEventType.LOGIN_FAILED, TENANT, USER)

        # 30 + 22.5 + 4.5 + 27 = 84
        result = engine.assess_risk(USER, "export", "203.0.113.66", None, "CRITICAL", TENANT)

        assert result.risk_score == 84
        assert result.action == AccessAction.DENY

    def test_sensitivity_monotonic(self, engine):
        scores = [
            engine.assess_risk(USER, "read", "8.8.8.8", None, level, TENANT).risk_score
            for level in (ResourceSensitivity.LOW, ResourceSensitivity.MEDIUM,
                          ResourceSensitivity.HIGH, ResourceSensitivity.CRITICAL)
        ]
        assert scores == sorted(scores)

    def test_exactly_one_event_per_assessment(self, engine, event_log):
        engine.assess_risk(USER, "export", "8.8.8.8", "curl/8", "HIGH", TENANT)

        events = data_access_events(event_log)
        assert len(events) == 1
        event = events[0]
        assert event.details["action"] == "export"
        assert event.details["recommendation"] == "ALLOW"
        assert event.details["factors"] == ["IP_ADDRESS", "RESOURCE_SENSITIVITY"]
        assert event.details["sensitivity"] == "HIGH"
        assert event.risk_score == pytest.approx(27.0)
        assert event.status == SecurityStatus.SUCCESS
        assert event.user_agent == "curl/8"

    def test_high_risk_event_blocked(self, policy, event_log):
        engine = AccessDecisionEngine(RiskScorer(policy, event_log, FixedClock(TUESDAY_23)), event_log)
        for _ in range(6):
            event_log.record(SecurityEventType.LOGIN_FAILED, TENANT, USER)

        engine.assess_risk(USER, "export", "203.0.113.66", None, "CRITICAL", TENANT)

        assert data_access_events(event_log)[0].status == SecurityStatus.BLOCKED

    def test_invalid_sensitivity_fails_closed(self, engine, event_log):
        result = engine.assess_risk(USER, "export", "10.0.0.5", None, "EXTREME", TENANT)

        assert result.action == AccessAction.DENY
        assert result.risk_score == 100
        assert result.factor_names == ["ASSESSMENT_ERROR"]

        events = data_access_events(event_log)
        assert len(events) == 1
        assert events[0].status == SecurityStatus.BLOCKED
        assert events[0].details["error"] == "AssessmentFailure"

    def test_store_failure_fails_closed(self, policy, clock):
        event_log = Mock()
        event_log.recent_events.side_effect = ConnectionError("database down")
        engine = AccessDecisionEngine(RiskScorer(policy, event_log, clock), event_log)

        result = engine.assess_risk(USER, "read", "10.0.0.5", None, "LOW", TENANT)

        assert result.action == AccessAction.DENY
        assert result.risk_score == 100
        event_log.record.assert_called_once()

    def test_event_log_outage_keeps_decision(self, policy, clock, log_repo):
        from trustgate.security.audit import SecurityEventLog

        log_repo.append = Mock(side_effect=ConnectionError("log store down"))
        event_log = SecurityEventLog(log_repo, clock)
        engine = AccessDecisionEngine(RiskScorer(policy, event_log, clock), event_log)

        result = engine.assess_risk(USER, "read", "10.0.0.5", None, "LOW", TENANT)

        assert result.action == AccessAction.ALLOW
