"""
State models owned by the monitor's stores.

User profiles, network clusters, live risk entries and alerts.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from riskstream.core.models.events import BaseEvent


class Severity(str, Enum):
    """Alert severity bands."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def severity_for(score: float) -> Severity:
    """Map a composite score to its severity band (lower bounds inclusive)."""
    if score >= 0.9:
        return Severity.CRITICAL
    if score >= 0.7:
        return Severity.HIGH
    if score >= 0.5:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass(frozen=True)
class SuspiciousAction:
    type: str
    timestamp: int
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BehaviorMetrics:
    betting_velocity: int = 0
    location_changes: int = 0
    device_switches: int = 0
    pattern_deviations: int = 0
    suspicious_actions: List[SuspiciousAction] = field(default_factory=list)


@dataclass(frozen=True)
class RiskHistoryEntry:
    timestamp: int
    risk: float
    event_count: int


@dataclass(frozen=True)
class GeoLocation:
    """Result of a geolocation lookup."""
    country: Optional[str]
    region: Optional[str]
    city: Optional[str]
    latitude: float
    longitude: float
    timezone: Optional[str] = None

    @property
    def place_key(self) -> str:
        return f"{self.country}_{self.city}"


@dataclass(frozen=True)
class NetworkObservation:
    """One IP address or device fingerprint seen for a user."""
    value: str
    timestamp: int


@dataclass(frozen=True)
class LocationObservation:
    location: GeoLocation
    timestamp: int


@dataclass(frozen=True)
class NetworkSnapshot:
    """Detached copy of the profile fields read when scoring coordination."""
    user_id: str
    ip_history: Tuple[NetworkObservation, ...]
    device_history: Tuple[NetworkObservation, ...]
    behavior_vector: Tuple[float, ...]


@dataclass
class BiometricTemplate:
    """Stored baseline metrics for one biometric modality."""
    metrics: Dict[str, float]
    session_count: int
    updated_at: int


@dataclass
class UserProfile:
    """Per-user behavioral state, owned by the UserProfileRegistry."""
    user_id: str
    first_seen: int
    last_activity: int
    event_count: int = 0
    behavior_metrics: BehaviorMetrics = field(default_factory=BehaviorMetrics)
    risk_history: List[RiskHistoryEntry] = field(default_factory=list)

    # Biometric baselines stay empty until a modality has enough samples
    biometric_baselines: Dict[str, BiometricTemplate] = field(default_factory=dict)
    biometric_score_history: Deque[float] = field(default_factory=lambda: deque(maxlen=20))

    # Network history, oldest evicted first
    ip_history: Deque[NetworkObservation] = field(default_factory=lambda: deque(maxlen=100))
    device_history: Deque[NetworkObservation] = field(default_factory=lambda: deque(maxlen=100))
    location_history: Deque[LocationObservation] = field(default_factory=lambda: deque(maxlen=100))

    def to_dict(self) -> Dict[str, Any]:
        """Detached, JSON-friendly snapshot of the profile."""
        metrics = self.behavior_metrics
        return {
            "user_id": self.user_id,
            "first_seen": self.first_seen,
            "last_activity": self.last_activity,
            "event_count": self.event_count,
            "behavior_metrics": {
                "betting_velocity": metrics.betting_velocity,
                "location_changes": metrics.location_changes,
                "device_switches": metrics.device_switches,
                "pattern_deviations": metrics.pattern_deviations,
                "suspicious_actions": [
                    {"type": a.type, "timestamp": a.timestamp, "detail": dict(a.detail)}
                    for a in metrics.suspicious_actions
                ],
            },
            "risk_history": [
                {"timestamp": r.timestamp, "risk": r.risk, "event_count": r.event_count}
                for r in self.risk_history
            ],
            "biometric_modalities": sorted(self.biometric_baselines.keys()),
            "ip_history": [o.value for o in self.ip_history],
            "device_history": [o.value for o in self.device_history],
            "location_history": [o.location.place_key for o in self.location_history],
        }


@dataclass
class NetworkCluster:
    """Users observed behind one IP address or one device fingerprint."""
    kind: str  # 'ip' or 'device'
    key: str
    first_seen: int
    last_seen: int
    users: Set[str] = field(default_factory=set)
    geolocation: Optional[GeoLocation] = None
    risk_score: float = 0.0
    suspicious_features: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def member_count(self) -> int:
        return len(self.users)


@dataclass(frozen=True)
class RiskFactor:
    type: str
    value: float
    impact: str


@dataclass(frozen=True)
class RiskScoreEntry:
    """Current risk for a user; overwritten on every evaluation."""
    user_id: str
    score: float
    timestamp: int
    factors: Tuple[RiskFactor, ...] = ()
    categories: Dict[str, float] = field(default_factory=dict)
    insufficient_data: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "score": self.score,
            "timestamp": self.timestamp,
            "factors": [{"type": f.type, "value": f.value, "impact": f.impact} for f in self.factors],
            "categories": dict(self.categories),
            "insufficient_data": self.insufficient_data,
        }


@dataclass(frozen=True)
class Recommendation:
    action: str
    priority: str
    reason: str


@dataclass(frozen=True)
class Alert:
    """Fraud alert raised when a composite score crosses the threshold."""
    alert_id: str
    timestamp: int
    user_id: str
    risk_score: float
    severity: Severity
    triggering_event: Optional[BaseEvent]
    profile_snapshot: Dict[str, Any]
    recommendations: Tuple[Recommendation, ...]
    factors: Tuple[RiskFactor, ...] = ()
    source: str = "event"  # 'event' or 'aggregate'

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "timestamp": self.timestamp,
            "user_id": self.user_id,
            "risk_score": self.risk_score,
            "severity": self.severity.value,
            "triggering_event": (
                self.triggering_event.model_dump(mode="json") if self.triggering_event else None
            ),
            "profile_snapshot": self.profile_snapshot,
            "recommendations": [
                {"action": r.action, "priority": r.priority, "reason": r.reason}
                for r in self.recommendations
            ],
            "factors": [{"type": f.type, "value": f.value, "impact": f.impact} for f in self.factors],
            "source": self.source,
        }
