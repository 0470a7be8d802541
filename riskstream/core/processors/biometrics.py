"""
Behavioral biometrics.

Collects pointer, keystroke, touch and scroll samples per user session,
turns each modality into a metrics vector, compares it with the user's
stored baseline and flags interaction anomalies that suggest scripted input.
"""

import math
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np
import structlog

from riskstream.core.models.config import BiometricConfig
from riskstream.core.models.events import (
    BaseEvent, KeystrokeEvent, MouseMoveEvent, ScrollEvent, TouchEvent,
)
from riskstream.core.models.state import Recommendation
from riskstream.core.processors.scoring import InsufficientDataError, RiskSignal
from riskstream.core.stores.profile_registry import UserProfileRegistry
from riskstream.core.utils.windowing import current_timestamp_ms

logger = structlog.get_logger(__name__)

MODALITIES = ("mouse", "keystroke", "touch", "scroll")

EVENT_MODALITY = {
    "mouse_move": "mouse",
    "keystroke": "keystroke",
    "touch": "touch",
    "scroll": "scroll",
}

ANOMALY_RISK = {"high": 0.8, "medium": 0.5}

# Typical population values used by the default uniqueness scorer
POPULATION_REFERENCE = {
    "mouse": {"average_velocity": 800.0, "velocity_variation": 0.6, "movement_smoothness": 0.5},
    "keystroke": {"typing_speed": 300.0, "mean_dwell_ms": 100.0, "mean_flight_ms": 150.0},
    "touch": {"mean_pressure": 0.5, "mean_area": 20.0},
    "scroll": {"mean_velocity": 500.0, "down_ratio": 0.7},
}

UniquenessScorer = Callable[[str, Dict[str, float]], float]


def relative_deviation(current: Dict[str, float], reference: Dict[str, float]) -> float:
    """Mean relative deviation over shared keys, each key capped at 1."""
    deviations = []
    for key, ref in reference.items():
        value = current.get(key)
        if value is None or not isinstance(ref, (int, float)):
            continue
        scale = abs(ref) if ref != 0 else 1.0
        deviations.append(min(abs(value - ref) / scale, 1.0))
    return sum(deviations) / len(deviations) if deviations else 0.0


class ReferenceUniquenessScorer:
    """Uniqueness as distance from typical population behavior."""

    def __init__(self, reference: Optional[Dict[str, Dict[str, float]]] = None):
        self.reference = reference or POPULATION_REFERENCE

    def __call__(self, modality: str, metrics: Dict[str, float]) -> float:
        return relative_deviation(metrics, self.reference.get(modality, {}))


def similarity(current: Dict[str, Any], baseline: Dict[str, Any]) -> float:
    """
    Cosine similarity over the numeric keys both metric sets share.

    Zero vectors have similarity 0. The result is clamped to [0, 1].
    """
    keys = [
        k for k, v in current.items()
        if isinstance(v, (int, float)) and isinstance(baseline.get(k), (int, float))
    ]
    if not keys:
        return 0.0

    a = np.array([float(current[k]) for k in keys])
    b = np.array([float(baseline[k]) for k in keys])
    magnitude = float(np.linalg.norm(a) * np.linalg.norm(b))
    if magnitude == 0:
        return 0.0
    return float(min(1.0, max(0.0, float(np.dot(a, b)) / magnitude)))


def _mean(values) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def _variation(values) -> float:
    """Coefficient of variation; 0 for fewer than two values or a zero mean."""
    if len(values) < 2:
        return 0.0
    mean = float(np.mean(values))
    return float(np.std(values)) / mean if mean else 0.0


def timing_consistency(timings: List[float]) -> float:
    """1 for perfectly regular timings, towards 0 as variation grows."""
    if len(timings) < 2:
        return 0.0
    return 1.0 / (1.0 + _variation(np.asarray(timings, dtype=float)))


# --- samples ---

@dataclass(frozen=True)
class MouseSample:
    timestamp: int
    x: float
    y: float
    velocity: float  # px/s
    acceleration: float  # px/s^2
    pressure: float


@dataclass(frozen=True)
class KeystrokeSample:
    timestamp: int
    key: str
    action: str
    dwell_ms: Optional[float]
    flight_ms: Optional[float]
    pressure: float


@dataclass(frozen=True)
class TouchSample:
    timestamp: int
    phase: str
    gesture: str
    pressure: float
    area: float
    touch_count: int


@dataclass(frozen=True)
class ScrollSample:
    timestamp: int
    delta_x: float
    delta_y: float
    velocity: float
    direction: str


# --- modality analyzers ---

def analyze_mouse(samples: List[MouseSample]) -> Dict[str, float]:
    velocities = np.array([s.velocity for s in samples if s.velocity > 0])
    accelerations = np.array([abs(s.acceleration) for s in samples])
    average_velocity = _mean(velocities)

    smoothness = 0.0
    if len(velocities) > 2 and average_velocity > 0:
        smoothness = 1.0 / (1.0 + float(np.std(np.diff(velocities))) / average_velocity)

    return {
        "average_velocity": average_velocity,
        "velocity_variation": _variation(velocities),
        "average_acceleration": _mean(accelerations),
        "movement_smoothness": smoothness,
        "pressure_mean": _mean([s.pressure for s in samples]),
    }


def analyze_keystrokes(samples: List[KeystrokeSample]) -> Dict[str, float]:
    keydowns = [s.timestamp for s in samples if s.action == "keydown"]
    typing_speed = 0.0
    if len(keydowns) > 1 and keydowns[-1] > keydowns[0]:
        typing_speed = len(keydowns) / (keydowns[-1] - keydowns[0]) * 60000  # keys per minute

    intervals = np.diff([s.timestamp for s in samples]) if len(samples) > 1 else np.array([])
    rhythm = 1.0 / (1.0 + float(np.std(intervals))) if len(intervals) > 1 else 0.0

    dwell = [s.dwell_ms for s in samples if s.dwell_ms]
    flight = [s.flight_ms for s in samples if s.flight_ms]
    return {
        "typing_speed": typing_speed,
        "rhythm": rhythm,
        "mean_dwell_ms": _mean(dwell),
        "mean_flight_ms": _mean(flight),
        "dwell_variability": _variation(np.asarray(dwell, dtype=float)),
        "timing_consistency": timing_consistency(dwell),
        "pressure_mean": _mean([s.pressure for s in samples]),
    }


def analyze_touch(samples: List[TouchSample]) -> Dict[str, float]:
    pressures = np.array([s.pressure for s in samples])
    count = len(samples) or 1
    return {
        "mean_pressure": _mean(pressures),
        "pressure_variation": _variation(pressures),
        "mean_area": _mean([s.area for s in samples]),
        "swipe_ratio": sum(1 for s in samples if s.gesture == "swipe") / count,
        "multi_touch_ratio": sum(1 for s in samples if s.touch_count > 1) / count,
    }


def analyze_scroll(samples: List[ScrollSample]) -> Dict[str, float]:
    velocities = np.array([s.velocity for s in samples if s.velocity > 0])
    count = len(samples) or 1
    return {
        "mean_velocity": _mean(velocities),
        "velocity_variation": _variation(velocities),
        "mean_delta": _mean([math.hypot(s.delta_x, s.delta_y) for s in samples]),
        "down_ratio": sum(1 for s in samples if s.direction == "down") / count,
    }


ANALYZERS = {
    "mouse": analyze_mouse,
    "keystroke": analyze_keystrokes,
    "touch": analyze_touch,
    "scroll": analyze_scroll,
}


# --- session and results ---

@dataclass
class PatternSnapshot:
    modality: str
    timestamp: int
    metrics: Dict[str, float]


@dataclass
class BiometricSession:
    user_id: str
    session_id: str
    started_at: int
    device_info: Dict[str, Any]
    max_samples: int
    samples: Dict[str, Deque] = field(default_factory=dict)
    collected: Dict[str, int] = field(default_factory=lambda: {m: 0 for m in MODALITIES})
    snapshots: List[PatternSnapshot] = field(default_factory=list)
    last_sample_at: int = 0
    is_active: bool = True

    def __post_init__(self):
        for modality in MODALITIES:
            self.samples.setdefault(modality, deque(maxlen=self.max_samples))
        self.last_sample_at = self.last_sample_at or self.started_at


@dataclass
class ModalityAnalysis:
    modality: str
    metrics: Dict[str, float]
    sample_count: int
    uniqueness_score: float
    anomaly_score: float
    similarity: Optional[float] = None
    is_suspicious: bool = False


@dataclass(frozen=True)
class Authenticity:
    authentic: bool
    confidence: Optional[str]
    reason: Optional[str] = None


@dataclass
class BiometricAnalysis:
    user_id: str
    timestamp: int
    modalities: Dict[str, ModalityAnalysis]
    composite_score: Optional[float]
    authenticity: Authenticity
    anomalies: List[Dict[str, Any]]

    @property
    def risk(self) -> float:
        similarity_risk = 1.0 - self.composite_score if self.composite_score is not None else 0.0
        anomaly_risk = max((ANOMALY_RISK.get(a["severity"], 0.0) for a in self.anomalies), default=0.0)
        return max(similarity_risk, anomaly_risk)


@dataclass
class BiometricReport:
    """Final analysis produced when a session ends."""
    user_id: str
    session_id: str
    timestamp: int
    session_duration_ms: int
    device_info: Dict[str, Any]
    analysis: BiometricAnalysis
    data_quality: Dict[str, Any]
    recommendations: List[Recommendation]
    baseline_updated: List[str]


class BiometricProfiler:
    """Per-user biometric sessions, baselines and anomaly detection."""

    def __init__(
        self,
        registry: UserProfileRegistry,
        config: Optional[BiometricConfig] = None,
        uniqueness_scorer: Optional[UniquenessScorer] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.registry = registry
        self.config = config or BiometricConfig()
        self.uniqueness_scorer = uniqueness_scorer or ReferenceUniquenessScorer()
        self.clock = clock or current_timestamp_ms

        self._lock = threading.RLock()
        self._sessions: Dict[str, BiometricSession] = {}

    # --- sessions ---

    def start_session(self, user_id: str, device_info: Optional[Dict[str, Any]] = None,
                      timestamp: Optional[int] = None) -> str:
        """Open a collection session for the user, replacing any active one."""
        started_at = timestamp if timestamp is not None else self.clock()
        session = BiometricSession(
            user_id=user_id,
            session_id=f"bio_{started_at}_{uuid.uuid4().hex[:9]}",
            started_at=started_at,
            device_info=dict(device_info or {}),
            max_samples=self.config.min_data_points * 3,
        )
        with self._lock:
            self._sessions[user_id] = session
        logger.debug("Biometric session started", user_id=user_id, session_id=session.session_id)
        return session.session_id

    def get_session(self, user_id: str) -> Optional[BiometricSession]:
        with self._lock:
            return self._sessions.get(user_id)

    def active_session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def end_session(self, user_id: str, timestamp: Optional[int] = None) -> Optional[BiometricReport]:
        """
        Close the user's session, produce the final report and apply the
        baseline update policy.

        Returns:
            BiometricReport, or None if the user had no session
        """
        with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            return None
        return self._finish_session(session, timestamp)

    def _finish_session(self, session: BiometricSession, timestamp: Optional[int]) -> BiometricReport:
        user_id = session.user_id
        session.is_active = False
        now = timestamp if timestamp is not None else session.last_sample_at
        analysis = self.analyze_session(session, now)
        updated = self._apply_baseline_policy(session, analysis, now)
        if analysis.composite_score is not None:
            self.registry.record_biometric_score(user_id, analysis.composite_score)

        report = BiometricReport(
            user_id=user_id,
            session_id=session.session_id,
            timestamp=now,
            session_duration_ms=now - session.started_at,
            device_info=session.device_info,
            analysis=analysis,
            data_quality=self._data_quality(session),
            recommendations=self._recommendations(analysis),
            baseline_updated=updated,
        )
        logger.info("Biometric session ended", user_id=user_id, session_id=session.session_id,
                    composite_score=analysis.composite_score,
                    authentic=analysis.authenticity.authentic, anomalies=len(analysis.anomalies))
        return report

    def expire_sessions(self, cutoff: int) -> int:
        """End sessions with no samples since the cutoff, applying the baseline policy to each."""
        with self._lock:
            stale = [s for s in self._sessions.values() if s.last_sample_at < cutoff]
            for session in stale:
                del self._sessions[session.user_id]
        for session in stale:
            self._finish_session(session, None)
        return len(stale)

    # --- collection ---

    def collect(self, event: BaseEvent) -> Optional[BiometricSession]:
        """
        Add a biometric event to the user's session, starting one if needed.

        A sample arriving more than the idle timeout after the session's last
        sample ends that session first.
        """
        modality = EVENT_MODALITY.get(event.type)
        if modality is None:
            return None

        with self._lock:
            current = self._sessions.get(event.user_id)
            idle = current is not None and (
                event.timestamp - current.last_sample_at > self.config.session_idle_timeout_ms
            )
        if idle:
            self.end_session(event.user_id)

        with self._lock:
            session = self._sessions.get(event.user_id)
            if session is None or not session.is_active:
                self.start_session(event.user_id, timestamp=event.timestamp)
                session = self._sessions[event.user_id]

            window = session.samples[modality]
            window.append(self._to_sample(event, window))
            session.collected[modality] += 1
            session.last_sample_at = max(session.last_sample_at, event.timestamp)

            if session.collected[modality] % self.config.analysis_intervals.get(modality, 50) == 0:
                metrics = ANALYZERS[modality](list(window))
                session.snapshots.append(PatternSnapshot(modality, event.timestamp, metrics))
        return session

    def _to_sample(self, event: BaseEvent, window: Deque):
        previous = window[-1] if window else None

        if isinstance(event, MouseMoveEvent):
            velocity = acceleration = 0.0
            if previous is not None and event.timestamp > previous.timestamp:
                dt = (event.timestamp - previous.timestamp) / 1000
                velocity = math.hypot(event.x - previous.x, event.y - previous.y) / dt
                acceleration = (velocity - previous.velocity) / dt
            return MouseSample(event.timestamp, event.x, event.y, velocity, acceleration, event.pressure)

        if isinstance(event, KeystrokeEvent):
            dwell = flight = None
            if event.action == "keyup":
                down = next((s for s in reversed(window) if s.key == event.key and s.action == "keydown"), None)
                if down is not None:
                    dwell = float(event.timestamp - down.timestamp)
            else:
                up = next((s for s in reversed(window) if s.action == "keyup"), None)
                if up is not None:
                    flight = float(event.timestamp - up.timestamp)
            return KeystrokeSample(event.timestamp, event.key, event.action, dwell, flight, event.pressure)

        if isinstance(event, TouchEvent):
            if event.touch_count > 1:
                gesture = "pinch_or_zoom"
            else:
                gesture = {"touchstart": "tap_start", "touchmove": "swipe", "touchend": "tap_end"}[event.phase]
            return TouchSample(event.timestamp, event.phase, gesture, event.pressure, event.area, event.touch_count)

        if isinstance(event, ScrollEvent):
            distance = math.hypot(event.delta_x, event.delta_y)
            velocity = 0.0
            if previous is not None and event.timestamp > previous.timestamp:
                velocity = distance / ((event.timestamp - previous.timestamp) / 1000)
            direction = "down" if event.delta_y > 0 else "up" if event.delta_y < 0 else "horizontal"
            return ScrollSample(event.timestamp, event.delta_x, event.delta_y, velocity, direction)

        raise TypeError(f"Not a biometric event: {event.type}")

    # --- analysis ---

    def analyze_modality(self, session: BiometricSession, modality: str) -> Optional[ModalityAnalysis]:
        samples = list(session.samples[modality])
        if len(samples) < 2:
            return None

        metrics = ANALYZERS[modality](samples)
        profile = self.registry.get(session.user_id)
        template = profile.biometric_baselines.get(modality) if profile else None

        result = ModalityAnalysis(
            modality=modality,
            metrics=metrics,
            sample_count=len(samples),
            uniqueness_score=float(self.uniqueness_scorer(modality, metrics)),
            anomaly_score=relative_deviation(metrics, template.metrics) if template else 0.0,
        )
        if template is not None:
            result.similarity = similarity(metrics, template.metrics)
            result.is_suspicious = result.similarity < self.config.similarity_threshold
        return result

    def analyze_session(self, session: BiometricSession, timestamp: Optional[int] = None) -> BiometricAnalysis:
        modalities = {}
        for modality in MODALITIES:
            result = self.analyze_modality(session, modality)
            if result is not None:
                modalities[modality] = result

        composite = self.composite_score(modalities)
        return BiometricAnalysis(
            user_id=session.user_id,
            timestamp=timestamp if timestamp is not None else session.last_sample_at,
            modalities=modalities,
            composite_score=composite,
            authenticity=self.authenticity(composite),
            anomalies=self.detect_anomalies(session),
        )

    def composite_score(self, modalities: Dict[str, ModalityAnalysis]) -> Optional[float]:
        """Weighted similarity over modalities with enough samples and a baseline."""
        total = 0.0
        weight_sum = 0.0
        for name, result in modalities.items():
            if result.similarity is None or result.sample_count < self.config.min_data_points:
                continue
            weight = self.config.modality_weights.get(name, 0.25)
            total += result.similarity * weight
            weight_sum += weight
        return total / weight_sum if weight_sum > 0 else None

    def authenticity(self, composite: Optional[float]) -> Authenticity:
        threshold = self.config.similarity_threshold
        if composite is None:
            return Authenticity(authentic=False, confidence=None, reason="insufficient_data")
        if composite >= threshold:
            return Authenticity(authentic=True, confidence="high")
        if composite >= threshold - self.config.authentic_margin:
            return Authenticity(authentic=True, confidence="medium")
        return Authenticity(authentic=False, confidence="high")

    def detect_anomalies(self, session: BiometricSession) -> List[Dict[str, Any]]:
        anomalies = []

        if len(session.snapshots) > 5:
            recent = self._average_metrics(session.snapshots[-5:])
            earlier = self._average_metrics(session.snapshots[:-5])
            deviation = relative_deviation(recent, earlier)
            if deviation > self.config.sudden_change_threshold:
                anomalies.append({
                    "type": "sudden_behavior_change",
                    "severity": "high",
                    "deviation": deviation,
                })

        mouse = session.samples["mouse"]
        if len(mouse) > 100:
            fast = sum(1 for s in mouse if s.velocity > self.config.max_pointer_speed_px_s)
            ratio = fast / len(mouse)
            if ratio > self.config.impossible_velocity_ratio:
                anomalies.append({
                    "type": "impossible_mouse_velocity",
                    "severity": "high",
                    "ratio": ratio,
                })

        keystrokes = session.samples["keystroke"]
        if len(keystrokes) > 50:
            consistency = timing_consistency([s.dwell_ms for s in keystrokes if s.dwell_ms])
            if consistency > self.config.timing_consistency_threshold:
                anomalies.append({
                    "type": "overly_consistent_timing",
                    "severity": "medium",
                    "consistency_score": consistency,
                })

        return anomalies

    def _average_metrics(self, snapshots: List[PatternSnapshot]) -> Dict[str, float]:
        collected: Dict[str, List[float]] = {}
        for snapshot in snapshots:
            for key, value in snapshot.metrics.items():
                collected.setdefault(f"{snapshot.modality}.{key}", []).append(value)
        return {key: float(np.mean(values)) for key, values in collected.items()}

    def risk_signal(self, event: BaseEvent) -> RiskSignal:
        """
        Collect the event and score the user's current session.

        Raises:
            InsufficientDataError: when no modality has a baseline comparison
                and no anomaly was found
        """
        session = self.collect(event)
        if session is None:
            raise InsufficientDataError(f"{event.type} is not a biometric event")

        analysis = self.analyze_session(session)
        if analysis.composite_score is None and not analysis.anomalies:
            raise InsufficientDataError("not enough biometric samples")
        return RiskSignal(analysis.risk, 1.0)

    # --- baselines ---

    def _apply_baseline_policy(self, session: BiometricSession, analysis: BiometricAnalysis,
                               timestamp: int) -> List[str]:
        """Enroll or update baselines; impostor, outlier and scripted sessions leave them untouched."""
        profile = self.registry.get_or_create(session.user_id, timestamp)
        composite = analysis.composite_score
        trusted = composite is None or (
            analysis.authenticity.authentic and not self.is_outlier(list(profile.biometric_score_history), composite)
        )
        if any(a["severity"] == "high" for a in analysis.anomalies):
            trusted = False
        if not trusted:
            logger.info("Biometric baseline not updated", user_id=session.user_id, composite_score=composite)
            return []

        updated = []
        for name, result in analysis.modalities.items():
            if result.sample_count < self.config.min_data_points:
                continue
            self.registry.update_biometric_baseline(
                session.user_id, name, result.metrics, timestamp, self.config.baseline_learning_rate
            )
            updated.append(name)
        return updated

    def is_outlier(self, history: List[float], score: float) -> bool:
        if len(history) < 3:
            return False
        values = np.asarray(history, dtype=float)
        std = float(np.std(values))
        if std == 0:
            return False
        return abs(score - float(np.mean(values))) / std > self.config.outlier_z_score

    def _data_quality(self, session: BiometricSession) -> Dict[str, Any]:
        counts = {f"{m}_data_points": len(session.samples[m]) for m in MODALITIES}
        sufficient = sum(1 for m in MODALITIES if len(session.samples[m]) >= self.config.min_data_points)
        counts["overall_quality"] = sufficient / len(MODALITIES)
        return counts

    def _recommendations(self, analysis: BiometricAnalysis) -> List[Recommendation]:
        recs = []
        if any(a["type"] == "impossible_mouse_velocity" for a in analysis.anomalies):
            recs.append(Recommendation("block_automated_access", "critical",
                                       "Pointer movement suggests scripted input"))
        if analysis.composite_score is not None and not analysis.authenticity.authentic:
            recs.append(Recommendation("step_up_authentication", "high",
                                       "Session behavior does not match the user's baseline"))
        elif analysis.authenticity.confidence == "medium":
            recs.append(Recommendation("monitor_session", "medium",
                                       "Session behavior partially matches the user's baseline"))
        return recs
