"""
TrustGate Zero-Trust Evaluation
Device, location, behavior and time trust signals for every request
"""

import ipaddress
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta, tzinfo
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from trustgate.core.cache import KeyValueStore
from trustgate.core.clock import Clock, SystemClock, get_timezone
from trustgate.core.config import Settings
from trustgate.core.logging import LoggerMixin
from .audit import SecurityEventLog
from .errors import DeviceTrustConflict
from .events import SecurityEventRecord
from .models import SecurityEventType

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Weights of the four signals in overall_trust
DEVICE_WEIGHT = 0.30
LOCATION_WEIGHT = 0.25
BEHAVIOR_WEIGHT = 0.25
TIME_WEIGHT = 0.20

BEHAVIOR_TRUST_THRESHOLD = 0.6
ATTENTION_THRESHOLD = 0.7


def parse_ip(value: Optional[str]) -> Optional[IPAddress]:
    if not value:
        return None
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class TrustPolicy:
    """
    Explicit zero-trust configuration owned by the host and injected at startup
    """
    trusted_networks: Tuple[IPNetwork, ...] = ()
    blacklisted_ips: FrozenSet[IPAddress] = frozenset()
    device_trust_threshold: float = 0.7
    business_hours: Tuple[int, int] = (9, 18)
    timezone: Optional[tzinfo] = None
    behavior_window: timedelta = timedelta(hours=24)
    behavior_sample: Optional[int] = 50
    risk_window: timedelta = timedelta(minutes=60)

    @classmethod
    def build(
        cls,
        trusted_networks: Iterable[str] = (),
        blacklisted_ips: Iterable[str] = (),
        **kwargs: Any
    ) -> "TrustPolicy":
        return cls(
            trusted_networks=tuple(ipaddress.ip_network(n, strict=False) for n in trusted_networks),
            blacklisted_ips=frozenset(ipaddress.ip_address(ip) for ip in blacklisted_ips),
            **kwargs,
        )

    @classmethod
    def from_settings(cls, config: Settings) -> "TrustPolicy":
        return cls.build(
            trusted_networks=config.TRUSTED_NETWORKS,
            blacklisted_ips=config.BLACKLISTED_IPS,
            device_trust_threshold=config.DEVICE_TRUST_THRESHOLD,
            business_hours=(config.BUSINESS_HOURS_START, config.BUSINESS_HOURS_END),
            timezone=get_timezone(config.TIMEZONE),
            behavior_window=timedelta(hours=config.BEHAVIOR_WINDOW_HOURS),
            behavior_sample=config.BEHAVIOR_EVENT_SAMPLE,
            risk_window=timedelta(minutes=config.RISK_WINDOW_MINUTES),
        )

    def is_blacklisted(self, ip_address: Optional[str]) -> bool:
        address = parse_ip(ip_address)
        return address is not None and address in self.blacklisted_ips

    def is_trusted_network(self, ip_address: Optional[str]) -> bool:
        address = parse_ip(ip_address)
        if address is None:
            return False
        return any(
            address.version == network.version and address in network
            for network in self.trusted_networks
        )

    def with_blacklist(self, *ips: str) -> "TrustPolicy":
        """Copy of this policy with extra blacklisted addresses"""
        extra = frozenset(ipaddress.ip_address(ip) for ip in ips)
        return TrustPolicy(
            trusted_networks=self.trusted_networks,
            blacklisted_ips=self.blacklisted_ips | extra,
            device_trust_threshold=self.device_trust_threshold,
            business_hours=self.business_hours,
            timezone=self.timezone,
            behavior_window=self.behavior_window,
            behavior_sample=self.behavior_sample,
            risk_window=self.risk_window,
        )


class GeoLocation(BaseModel):
    """Enriched location metadata for an IP address"""

    model_config = ConfigDict(extra="ignore")

    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    is_hosting: bool = False
    threat_level: float = Field(default=0.0, ge=0.0, le=1.0)

    def risk_flags(self) -> List[str]:
        flags = []
        if self.is_vpn:
            flags.append("VPN")
        if self.is_proxy:
            flags.append("PROXY")
        if self.is_tor:
            flags.append("TOR")
        if self.is_hosting:
            flags.append("HOSTING")
        if self.threat_level > 0.3:
            flags.append("THREAT_LEVEL")
        return flags


class LocationIntelProvider(ABC):
    """Looks up location metadata for an IP; None means nothing is known"""

    @abstractmethod
    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        """Return enriched metadata for ``ip_address`` or None"""


class HttpLocationIntelProvider(LocationIntelProvider, LoggerMixin):
    """
    JSON geolocation API client.

    Queries ``{base_url}/{ip}`` and reads the usual security flags
    (``is_vpn``/``vpn``, ``is_proxy``/``proxy``, ``is_tor``/``tor``,
    ``is_hosting``/``hosting``, ``threat_level``). A malformed answer counts
    as no metadata.
    """

    def __init__(self, base_url: str, timeout: float = 3.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        address = parse_ip(ip_address)
        if address is None or address.is_private or address.is_loopback:
            return None

        try:
            response = self.client.get(f"{self.base_url}/{address}")
            response.raise_for_status()
            return self._to_location(response.json())
        except (httpx.HTTPError, TypeError, ValueError, AttributeError) as e:
            self.logger.warning(f"Geolocation lookup failed for {ip_address}: {e}")
            return None

    @staticmethod
    def _to_location(data: Dict[str, Any]) -> GeoLocation:
        security = data.get("security") if isinstance(data.get("security"), dict) else {}
        merged: Dict[str, Any] = {**data, **security}
        return GeoLocation(
            country=merged.get("country") or merged.get("country_code"),
            region=merged.get("region"),
            city=merged.get("city"),
            is_vpn=bool(merged.get("is_vpn", merged.get("vpn", False))),
            is_proxy=bool(merged.get("is_proxy", merged.get("proxy", False))),
            is_tor=bool(merged.get("is_tor", merged.get("tor", False))),
            is_hosting=bool(merged.get("is_hosting", merged.get("hosting", False))),
            threat_level=min(max(float(merged.get("threat_level") or 0.0), 0.0), 1.0),
        )


class DeviceTrustCache(LoggerMixin):
    """
    Trust history of device fingerprints per user and tenant.

    Scores move as an exponential moving average of what each evaluation
    observed, starting from a neutral 0.5, so a new fingerprint needs several
    clean sightings (or an explicit MFA-backed enrolment) before it counts.
    Updates are compare-and-set on the shared store and retried on conflict,
    so concurrent evaluations on any number of instances are all counted.
    """

    INITIAL_SCORE = 0.5
    SMOOTHING = 0.3
    MAX_ATTEMPTS = 10

    def __init__(self, store: KeyValueStore, ttl_seconds: Optional[int] = 30 * 24 * 60 * 60):
        self.store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(tenant_id: str, user_id: str, fingerprint: str) -> str:
        return f"device_trust:{tenant_id}:{user_id}:{fingerprint}"

    def get_score(self, tenant_id: str, user_id: str, fingerprint: str) -> Optional[float]:
        raw = self.store.get(self._key(tenant_id, user_id, fingerprint))
        if raw is None:
            return None
        return float(json.loads(raw)["score"])

    def observe(self, tenant_id: str, user_id: str, fingerprint: str, observed: float) -> float:
        """Fold one evaluation into the fingerprint's history; returns the new score"""
        key = self._key(tenant_id, user_id, fingerprint)
        for _ in range(self.MAX_ATTEMPTS):
            raw = self.store.get(key)
            if raw is None:
                previous, count = self.INITIAL_SCORE, 0
            else:
                entry = json.loads(raw)
                previous, count = float(entry["score"]), int(entry.get("observations", 0))
            score = previous * (1 - self.SMOOTHING) + observed * self.SMOOTHING
            payload = json.dumps({"score": round(score, 4), "observations": count + 1})
            if self.store.compare_and_set(key, raw, payload, ttl_seconds=self.ttl_seconds):
                return score

        raise DeviceTrustConflict(
            f"Trust history for {fingerprint} kept changing over {self.MAX_ATTEMPTS} attempts"
        )

    def trust(self, tenant_id: str, user_id: str, fingerprint: str, score: float = 1.0) -> None:
        """Pin a fingerprint's score, e.g. after the user completed MFA on it"""
        self.store.set(
            self._key(tenant_id, user_id, fingerprint),
            json.dumps({"score": score, "observations": 1}),
            ttl_seconds=self.ttl_seconds,
        )

    def forget(self, tenant_id: str, user_id: str, fingerprint: str) -> bool:
        return self.store.delete(self._key(tenant_id, user_id, fingerprint))


class ZeroTrustEvaluation(BaseModel):
    """Result of one zero-trust evaluation"""
    device_trusted: bool = False
    location_trusted: bool = False
    behavior_trusted: bool = False
    time_trusted: bool = False
    overall_trust: float = 0.0

    @property
    def needs_attention(self) -> bool:
        return self.overall_trust < ATTENTION_THRESHOLD


def combine_trust(device: bool, location: bool, behavior: bool, time: bool) -> float:
    total = (
        (DEVICE_WEIGHT if device else 0.0)
        + (LOCATION_WEIGHT if location else 0.0)
        + (BEHAVIOR_WEIGHT if behavior else 0.0)
        + (TIME_WEIGHT if time else 0.0)
    )
    return round(total, 4)


def behavior_score(events: List[SecurityEventRecord]) -> float:
    """1.0 minus penalties for IP churn, failed logins and suspicious activity"""
    unique_ips = {e.ip_address for e in events}
    failed_logins = sum(1 for e in events if e.event_type == SecurityEventType.LOGIN_FAILED)
    suspicious = sum(1 for e in events if e.event_type == SecurityEventType.SUSPICIOUS_ACTIVITY)

    score = 1.0
    if len(unique_ips) > 5:
        score -= 0.3
    if failed_logins > 3:
        score -= 0.4
    if suspicious > 0:
        score -= 0.5
    return round(score, 4)


class TrustEvaluator(LoggerMixin):
    """Computes the four zero-trust signals and their weighted combination"""

    def __init__(
        self,
        policy: TrustPolicy,
        event_log: SecurityEventLog,
        device_cache: DeviceTrustCache,
        clock: Optional[Clock] = None,
        location_provider: Optional[LocationIntelProvider] = None,
    ):
        self.policy = policy
        self.event_log = event_log
        self.device_cache = device_cache
        self.clock = clock or SystemClock()
        self.location_provider = location_provider

    def evaluate(
        self,
        user_id: str,
        tenant_id: str,
        ip_address: str,
        user_agent: Optional[str] = None,
        location: Optional[Union[GeoLocation, Dict[str, Any]]] = None,
        device_fingerprint: Optional[str] = None,
    ) -> ZeroTrustEvaluation:
        """Evaluate one request; any internal error yields an all-untrusted result"""
        try:
            geo = GeoLocation.model_validate(location) if isinstance(location, dict) else location

            device_trusted = self.evaluate_device_trust(user_id, tenant_id, device_fingerprint)
            location_trusted = self.evaluate_location_trust(ip_address, geo)
            behavior_trusted = self.evaluate_behavior_trust(user_id, tenant_id)
            time_trusted = self.evaluate_time_trust()

            evaluation = ZeroTrustEvaluation(
                device_trusted=device_trusted,
                location_trusted=location_trusted,
                behavior_trusted=behavior_trusted,
                time_trusted=time_trusted,
                overall_trust=combine_trust(device_trusted, location_trusted, behavior_trusted, time_trusted),
            )

            if device_fingerprint:
                observed = (
                    (LOCATION_WEIGHT if location_trusted else 0.0)
                    + (BEHAVIOR_WEIGHT if behavior_trusted else 0.0)
                    + (TIME_WEIGHT if time_trusted else 0.0)
                ) / (LOCATION_WEIGHT + BEHAVIOR_WEIGHT + TIME_WEIGHT)
                self.device_cache.observe(tenant_id, user_id, device_fingerprint, observed)
        except Exception as e:
            self.logger.error(f"Zero-trust evaluation failed for user {user_id}: {e}")
            evaluation = ZeroTrustEvaluation()
            geo = None

        self.event_log.record(
            SecurityEventType.ZERO_TRUST_EVALUATION,
            tenant_id=tenant_id,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            location=geo.model_dump() if isinstance(geo, GeoLocation) else None,
            details={
                "overall_trust": evaluation.overall_trust,
                "device_trusted": evaluation.device_trusted,
                "location_trusted": evaluation.location_trusted,
                "behavior_trusted": evaluation.behavior_trusted,
                "time_trusted": evaluation.time_trusted,
            },
            risk_score=round((1.0 - evaluation.overall_trust) * 100, 2),
        )
        return evaluation

    def evaluate_device_trust(self, user_id: str, tenant_id: str, fingerprint: Optional[str]) -> bool:
        if not fingerprint or not user_id:
            return False
        score = self.device_cache.get_score(tenant_id, user_id, fingerprint)
        # Never-seen fingerprints are untrusted
        return score is not None and score > self.policy.device_trust_threshold

    def evaluate_location_trust(self, ip_address: str, location: Optional[GeoLocation] = None) -> bool:
        if self.policy.is_blacklisted(ip_address):
            return False
        if self.policy.is_trusted_network(ip_address):
            return True

        if location is None and self.location_provider is not None:
            location = self.location_provider.lookup(ip_address)
        if location is not None:
            return len(location.risk_flags()) <= 1

        return False

    def evaluate_behavior_trust(self, user_id: str, tenant_id: str) -> bool:
        try:
            events = self.event_log.recent_events(
                tenant_id,
                user_id,
                window=self.policy.behavior_window,
                limit=self.policy.behavior_sample,
            )
        except Exception as e:
            self.logger.error(f"Behavior evaluation failed for user {user_id}: {e}")
            return False
        return behavior_score(events) >= BEHAVIOR_TRUST_THRESHOLD

    def evaluate_time_trust(self) -> bool:
        local = self.clock.local_now(self.policy.timezone)
        start, end = self.policy.business_hours
        return start <= local.hour < end and local.weekday() < 5
