#!/usr/bin/env python3
"""
Tests for behavioral biometrics: sessions, baselines and anomaly detection.

Uniqueness scoring is injected so results do not depend on population data.
"""

import pytest

from riskstream.core.models.config import BiometricConfig
from riskstream.core.models.events import BetPlacedEvent, KeystrokeEvent, MouseMoveEvent
from riskstream.core.processors.biometrics import BiometricProfiler, similarity, timing_consistency
from riskstream.core.processors.scoring import InsufficientDataError
from riskstream.core.stores.event_store import EventStore
from riskstream.core.stores.profile_registry import UserProfileRegistry

BASE_TIME = 1_700_000_000_000


def fixed_uniqueness(modality, metrics):
    return 0.42


def make_profiler(config=None):
    registry = UserProfileRegistry(EventStore(clock=lambda: BASE_TIME))
    profiler = BiometricProfiler(registry, config or BiometricConfig(), fixed_uniqueness, clock=lambda: BASE_TIME)
    return registry, profiler


def mouse_path(user_id: str, count: int, step_px: float, interval_ms: int = 10, start: int = BASE_TIME):
    """Straight-line pointer movement at a constant speed."""
    return [
        MouseMoveEvent(user_id=user_id, timestamp=start + i * interval_ms, x=i * step_px, y=100.0)
        for i in range(count)
    ]


def typing(user_id: str, keys: int, dwell_ms: int = 80, gap_ms: int = 200, start: int = BASE_TIME):
    events = []
    for i in range(keys):
        down = start + i * gap_ms
        events.append(KeystrokeEvent(user_id=user_id, timestamp=down, key="a", action="keydown"))
        events.append(KeystrokeEvent(user_id=user_id, timestamp=down + dwell_ms, key="a", action="keyup"))
    return events


def test_similarity_edge_cases():
    print("🧪 Testing metric similarity...")

    assert similarity({"a": 0.0, "b": 0.0}, {"a": 1.0, "b": 2.0}) == 0.0
    assert similarity({"a": 1.0}, {"b": 1.0}) == 0.0
    assert similarity({"a": 3.0, "b": 4.0}, {"a": 3.0, "b": 4.0}) == pytest.approx(1.0)
    assert similarity({"a": 1.0, "b": 0.0}, {"a": 0.0, "b": 1.0}) == 0.0
    # Non-numeric values are ignored
    assert similarity({"a": 2.0, "label": "x"}, {"a": 5.0, "label": "y"}) == pytest.approx(1.0)

    print("  ✅ Similarity tests passed!")


def test_timing_consistency():
    assert timing_consistency([80.0] * 10) == pytest.approx(1.0)
    assert timing_consistency([20.0, 200.0, 60.0, 300.0]) < 0.6
    assert timing_consistency([80.0]) == 0.0


def test_authenticity_bands():
    _, profiler = make_profiler()

    assert profiler.authenticity(0.90).authentic is True
    assert profiler.authenticity(0.90).confidence == "high"
    assert profiler.authenticity(0.70).authentic is True
    assert profiler.authenticity(0.70).confidence == "medium"
    assert profiler.authenticity(0.60).authentic is False
    assert profiler.authenticity(0.60).confidence == "high"

    missing = profiler.authenticity(None)
    assert missing.authentic is False
    assert missing.reason == "insufficient_data"


def test_enrollment_then_matching_session():
    """A first full session enrolls the baseline; a matching session scores as authentic."""
    print("🧪 Testing baseline enrollment...")

    registry, profiler = make_profiler()
    for event in mouse_path("user_001", 120, step_px=5):
        profiler.collect(event)

    report = profiler.end_session("user_001")
    profile = registry.get("user_001")

    print(f"  📊 Data quality: {report.data_quality}")
    assert report.analysis.composite_score is None
    assert report.baseline_updated == ["mouse"]
    assert "mouse" in profile.biometric_baselines
    assert report.analysis.modalities["mouse"].uniqueness_score == 0.42
    assert profiler.get_session("user_001") is None

    later = BASE_TIME + 3_600_000
    events = mouse_path("user_001", 120, step_px=5, start=later)
    for event in events[:-1]:
        profiler.collect(event)
    signal = profiler.risk_signal(events[-1])

    analysis = profiler.analyze_session(profiler.get_session("user_001"))
    print(f"  📊 Composite similarity: {analysis.composite_score:.4f}")
    assert analysis.composite_score == pytest.approx(1.0)
    assert analysis.authenticity.authentic is True
    assert signal.risk == pytest.approx(0.0, abs=1e-6)

    second = profiler.end_session("user_001")
    assert second.baseline_updated == ["mouse"]
    assert profile.biometric_baselines["mouse"].session_count == 2
    assert list(profile.biometric_score_history) == [pytest.approx(1.0)]

    print("  ✅ Enrollment tests passed!")


def test_short_session_does_not_enroll():
    registry, profiler = make_profiler()
    for event in mouse_path("user_001", 30, step_px=5):
        profiler.collect(event)

    report = profiler.end_session("user_001")

    assert report.baseline_updated == []
    assert registry.get("user_001").biometric_baselines == {}
    assert report.data_quality["mouse_data_points"] == 30


def test_impossible_pointer_velocity():
    """Pointer speed far beyond 10000 px/s is flagged as scripted input."""
    print("🧪 Testing impossible pointer velocity...")

    registry, profiler = make_profiler()
    events = mouse_path("bot_001", 150, step_px=200)  # 20000 px/s
    for event in events[:-1]:
        profiler.collect(event)
    signal = profiler.risk_signal(events[-1])

    anomalies = profiler.detect_anomalies(profiler.get_session("bot_001"))
    assert [a["type"] for a in anomalies] == ["impossible_mouse_velocity"]
    assert anomalies[0]["ratio"] > 0.9
    assert signal.risk == pytest.approx(0.8)

    report = profiler.end_session("bot_001")
    assert "block_automated_access" in [r.action for r in report.recommendations]
    assert report.baseline_updated == []
    assert registry.get("bot_001").biometric_baselines == {}

    print("  ✅ Pointer velocity tests passed!")


def test_overly_consistent_keystroke_timing():
    _, profiler = make_profiler()
    for event in typing("bot_002", 30):
        profiler.collect(event)

    anomalies = profiler.detect_anomalies(profiler.get_session("bot_002"))

    assert [a["type"] for a in anomalies] == ["overly_consistent_timing"]
    assert anomalies[0]["severity"] == "medium"
    assert anomalies[0]["consistency_score"] == pytest.approx(1.0)


def test_human_keystroke_timing_not_flagged():
    _, profiler = make_profiler()
    start = BASE_TIME
    for i, dwell in enumerate([60, 140, 90, 210, 75, 160] * 5):
        for event in typing("user_001", 1, dwell_ms=dwell, start=start + i * 400):
            profiler.collect(event)

    assert profiler.detect_anomalies(profiler.get_session("user_001")) == []


def test_risk_signal_insufficient_data():
    _, profiler = make_profiler()

    with pytest.raises(InsufficientDataError):
        profiler.risk_signal(MouseMoveEvent(user_id="user_001", timestamp=BASE_TIME, x=1, y=1))
    with pytest.raises(InsufficientDataError):
        profiler.risk_signal(BetPlacedEvent(user_id="user_001", timestamp=BASE_TIME, amount=10))


def test_outlier_detection():
    _, profiler = make_profiler()

    assert profiler.is_outlier([0.90, 0.91, 0.89, 0.90], 0.50) is True
    assert profiler.is_outlier([0.90, 0.91, 0.89, 0.90], 0.90) is False
    assert profiler.is_outlier([0.90, 0.91], 0.10) is False


def test_snapshots_and_session_expiry():
    registry, profiler = make_profiler()
    for event in mouse_path("user_001", 150, step_px=5):
        profiler.collect(event)
    profiler.start_session("user_002", timestamp=BASE_TIME + 600000)

    session = profiler.get_session("user_001")
    assert len(session.snapshots) == 3
    assert session.collected["mouse"] == 150

    expired = profiler.expire_sessions(BASE_TIME + 300000)

    assert expired == 1
    assert profiler.get_session("user_001") is None
    assert "mouse" in registry.get("user_001").biometric_baselines
    assert profiler.active_session_count() == 1
    assert profiler.end_session("nobody") is None


def test_idle_gap_starts_new_session():
    """A sample after the idle timeout ends the previous session, which enrolls the baseline."""
    registry, profiler = make_profiler(BiometricConfig(session_idle_timeout_ms=60000))
    for event in mouse_path("user_001", 120, step_px=5):
        profiler.collect(event)
    first = profiler.get_session("user_001")

    profiler.collect(mouse_path("user_001", 1, step_px=5, start=BASE_TIME + 30000)[0])
    assert profiler.get_session("user_001") is first

    profiler.collect(mouse_path("user_001", 1, step_px=5, start=BASE_TIME + 120000)[0])
    session = profiler.get_session("user_001")

    assert session is not first
    assert first.is_active is False
    assert session.collected["mouse"] == 1
    assert registry.get("user_001").biometric_baselines["mouse"].session_count == 1
