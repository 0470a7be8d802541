#!/usr/bin/env python3
"""
End-to-end tests for the risk monitor: ingest, composite scoring, alert
dispatch, retention sweeps and monitoring stats.

The monitor runs against an injected clock; periodic sweeps are invoked
directly instead of waiting for their timers.
"""

from unittest.mock import MagicMock

import pytest

from riskstream.core.models.config import MonitorConfig
from riskstream.core.models.events import InvalidEventError
from riskstream.core.models.state import RiskScoreEntry, Severity
from riskstream.core.monitor import RealTimeRiskMonitor
from riskstream.core.sinks.alerts import AlertDispatcher, WebhookAlertSink
from riskstream.core.stores.risk_scores import RiskScoreStore

BASE_TIME = 1_700_000_000_000
WINDOW_MS = 300000


class FixedClock:
    def __init__(self, now: int = BASE_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


def make_monitor(threshold: float = 0.7, **kwargs):
    config = MonitorConfig()
    config.alerts.alert_threshold = threshold
    clock = kwargs.pop("clock", None) or FixedClock()
    return RealTimeRiskMonitor(config, clock=clock, **kwargs), clock


def bet(user_id: str, timestamp: int, amount: float = 2000.0, **extra):
    event = {"type": "bet_placed", "userId": user_id, "timestamp": timestamp, "amount": amount}
    event.update(extra)
    return event


def mouse_moves(user_id: str, steps, start: int):
    """Pointer samples 10ms apart, moving right by each step in turn."""
    events, x = [], 0.0
    for i, step in enumerate(steps):
        x += step
        events.append({"type": "mouse_move", "userId": user_id, "timestamp": start + i * 10, "x": x, "y": 100.0})
    return events


def test_alert_threshold_is_inclusive():
    """Alerts fire iff score >= threshold; exactly 0.7 is high severity."""
    print("🧪 Testing alert threshold...")

    dispatcher = AlertDispatcher(clock=lambda: BASE_TIME)

    at_threshold = dispatcher.evaluate(RiskScoreEntry("user_001", 0.7, BASE_TIME), None, {})
    below = dispatcher.evaluate(RiskScoreEntry("user_002", 0.6999, BASE_TIME), None, {})
    insufficient = dispatcher.evaluate(
        RiskScoreEntry("user_003", 0.95, BASE_TIME, insufficient_data=True), None, {}
    )
    critical = dispatcher.evaluate(RiskScoreEntry("user_004", 0.95, BASE_TIME), None, {})

    assert at_threshold.severity == Severity.HIGH
    assert below is None
    assert insufficient is None
    assert critical.severity == Severity.CRITICAL
    assert [r.action for r in critical.recommendations] == ["immediate_suspension", "manual_review"]
    assert dispatcher.alerts_sent == 2
    assert dispatcher.queue_size() == 2

    print("  ✅ Threshold tests passed!")


def test_betting_burst_raises_alerts_through_monitor():
    """Alerts fire exactly for the evaluations at or above the threshold."""
    print("🧪 Testing monitor ingest and alerting...")

    monitor, _ = make_monitor(threshold=0.5)
    alerts, scores = [], []
    monitor.subscribe_alerts(alerts.append)
    monitor.subscribe_scores(scores.append)

    for i in range(6):
        monitor.ingest(bet("user_001", BASE_TIME + i * 10000))

    print(f"  📊 Scores: {[round(s.score, 3) for s in scores]}")
    print(f"  🚨 Alerts: {[(a.severity.value, round(a.risk_score, 3)) for a in alerts]}")

    assert len(scores) == 6
    assert [s.score >= 0.5 for s in scores] == [False, False, False, False, True, True]
    assert len(alerts) == 2
    assert scores[-1].score == pytest.approx(0.57, abs=0.001)
    assert alerts[-1].severity == Severity.MEDIUM
    assert alerts[-1].triggering_event.amount == 2000.0
    assert alerts[-1].profile_snapshot["event_count"] == 6
    assert {f.type for f in alerts[-1].factors} >= {"multiple_suspicious_actions", "activity_risk"}
    assert monitor.get_user_risk_snapshot("user_001") == scores[-1]

    monitor.stop()
    print("  ✅ Monitor alert tests passed!")


def test_default_threshold_not_reached_by_burst():
    monitor, _ = make_monitor()
    alerts = []
    monitor.subscribe_alerts(alerts.append)

    for i in range(6):
        monitor.ingest(bet("user_001", BASE_TIME + i * 10000))

    assert alerts == []
    assert monitor.dispatcher.alerts_sent == 0
    monitor.stop()


def test_unsubscribed_listener_not_called():
    monitor, _ = make_monitor(threshold=0.0)
    received = []
    unsubscribe = monitor.subscribe_alerts(received.append)

    monitor.ingest(bet("user_001", BASE_TIME))
    unsubscribe()
    monitor.ingest(bet("user_001", BASE_TIME + 1000))

    assert len(received) == 1
    assert monitor.dispatcher.alerts_sent == 2
    monitor.stop()


def test_failing_listener_does_not_break_ingest():
    monitor, _ = make_monitor(threshold=0.0)

    def broken(alert):
        raise RuntimeError("listener crashed")

    monitor.subscribe_alerts(broken)
    entry = monitor.ingest(bet("user_001", BASE_TIME))

    assert entry.user_id == "user_001"
    assert len(monitor.recent_alerts()) == 1
    monitor.stop()


def test_webhook_failure_keeps_alert_in_memory():
    """Webhook delivery is retried, counted as failed, and the alert is kept."""
    print("🧪 Testing webhook delivery failure...")

    session = MagicMock()
    session.post.return_value = MagicMock(status_code=503)
    sink = WebhookAlertSink("http://alerts.example.com/hook", timeout=1.0, session=session)

    monitor, _ = make_monitor(threshold=0.0, alert_sinks=[sink])
    monitor.ingest(bet("user_001", BASE_TIME))

    assert monitor.dispatcher.wait_for_deliveries(5.0)
    assert session.post.call_count == monitor.config.alerts.max_delivery_attempts
    assert monitor.dispatcher.delivery_failures == 1
    assert len(monitor.recent_alerts()) == 1

    payload = session.post.call_args.kwargs["json"]
    assert payload["user_id"] == "user_001"
    assert payload["triggering_event"]["amount"] == 2000.0

    stats = monitor.get_monitoring_stats()
    assert stats["health"]["delivery_failures"] == 1
    monitor.stop()

    print("  ✅ Webhook failure handled")


def test_webhook_delivery_success():
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=200)
    sink = WebhookAlertSink("http://alerts.example.com/hook", session=session)

    monitor, _ = make_monitor(threshold=0.0, alert_sinks=[sink])
    monitor.ingest(bet("user_001", BASE_TIME))

    assert monitor.dispatcher.wait_for_deliveries(5.0)
    assert session.post.call_count == 1
    assert monitor.dispatcher.delivery_failures == 0
    monitor.stop()


def test_malformed_events_rejected_and_counted():
    monitor, _ = make_monitor()

    with pytest.raises(InvalidEventError):
        monitor.ingest({"type": "bet_placed", "timestamp": BASE_TIME, "amount": 10})
    with pytest.raises(InvalidEventError):
        monitor.ingest(b'{"type": "login"}')

    stats = monitor.get_monitoring_stats()
    assert stats["events_rejected"] == 2
    assert stats["events_processed"] == 0
    assert stats["event_store_size"] == 0
    monitor.stop()


def test_all_calculators_failing_is_insufficient_and_silent():
    def failing(ctx):
        raise RuntimeError("broken calculator")

    monitor, _ = make_monitor(threshold=0.0, calculators={"velocity": failing, "pattern": failing})
    entry = monitor.ingest(bet("user_001", BASE_TIME))

    assert entry.score == 0.0
    assert entry.insufficient_data is True
    assert monitor.recent_alerts() == []
    monitor.stop()


def test_network_category_included_when_present():
    monitor, _ = make_monitor()
    entry = monitor.ingest(bet("user_001", BASE_TIME, network={
        "ipAddress": "203.0.113.10",
        "userAgent": "Mozilla/5.0 (Windows NT 10.0) Selenium/4.15",
        "platform": "Win32",
    }))

    assert set(entry.categories) == {"activity", "network"}
    assert entry.categories["network"] > 0
    assert monitor.network.get_ip_cluster("203.0.113.10").member_count == 1
    monitor.stop()


def test_biometric_only_event_without_baseline():
    monitor, _ = make_monitor()
    entry = monitor.ingest({"type": "mouse_move", "userId": "user_001", "timestamp": BASE_TIME, "x": 1, "y": 2})

    # Activity still applies; biometrics has nothing to compare against yet
    assert "biometric" not in entry.categories
    assert monitor.biometrics.get_session("user_001") is not None
    monitor.stop()


def test_slow_sweep_removes_stale_state():
    """After the cleanup sweep nothing older than the monitoring window remains."""
    print("🧪 Testing cleanup sweep...")

    monitor, clock = make_monitor(threshold=0.0)
    for i in range(5):
        monitor.ingest(bet("old_user", BASE_TIME + i * 1000))
    clock.advance(WINDOW_MS + 60000)
    monitor.ingest(bet("new_user", clock.now))

    removed = monitor.sweeper.slow_sweep()
    cutoff = clock.now - WINDOW_MS

    print(f"  📊 Removed: {removed}")
    assert removed["events"] == 5
    assert removed["profiles"] == 1
    assert all(e.timestamp >= cutoff for e in monitor.event_store.all())
    assert monitor.registry.get("old_user") is None
    assert monitor.get_user_risk_snapshot("old_user") is None
    assert all(a.timestamp >= cutoff for a in monitor.dispatcher.alerts())
    assert monitor.registry.get("new_user") is not None
    monitor.stop()

    print("  ✅ Cleanup sweep tests passed!")


def test_fast_sweep_records_risk_history():
    monitor, clock = make_monitor()
    for i in range(3):
        monitor.ingest(bet("user_001", BASE_TIME + i * 1000))
    clock.advance(5000)

    aggregates = monitor.sweeper.fast_sweep()
    history = monitor.registry.get("user_001").risk_history

    assert set(aggregates) == {"user_001"}
    assert len(history) == 1
    assert history[0].event_count == 3
    assert history[0].risk == pytest.approx(aggregates["user_001"])
    assert monitor.recent_alerts() == []
    monitor.stop()


def test_aggregate_alerts_when_enabled():
    monitor, clock = make_monitor(threshold=0.3)
    monitor.config.alerts.alert_on_aggregate = True
    for i in range(6):
        monitor.ingest(bet("user_001", BASE_TIME + i * 1000))
    before = monitor.dispatcher.alerts_sent

    monitor.sweeper.fast_sweep()

    aggregate_alerts = [a for a in monitor.recent_alerts(50) if a.source == "aggregate"]
    assert monitor.dispatcher.alerts_sent == before + 1
    assert len(aggregate_alerts) == 1
    assert aggregate_alerts[0].triggering_event is None
    monitor.stop()


def test_monitoring_stats():
    monitor, _ = make_monitor(threshold=0.5)
    monitor.start()
    for i in range(6):
        monitor.ingest(bet("user_001", BASE_TIME + i * 10000))
    monitor.ingest(bet("user_002", BASE_TIME, amount=10))

    stats = monitor.get_monitoring_stats()
    print(f"  📊 Stats: {stats}")

    assert stats["is_monitoring"] is True
    assert stats["active_user_count"] == 2
    assert stats["events_processed"] == 7
    assert stats["alerts_sent"] == 2
    assert [u["user_id"] for u in stats["high_risk_users"]] == ["user_001"]
    assert 0.0 < stats["average_risk"] < 1.0
    assert stats["health"]["status"] == "healthy"
    assert stats["health"]["last_event_timestamp"] == BASE_TIME + 50000

    monitor.stop()
    assert monitor.get_monitoring_stats()["is_monitoring"] is False
    assert not monitor.sweeper.is_running
    with pytest.raises(RuntimeError):
        monitor.ingest(bet("user_001", BASE_TIME))


def test_fast_sweep_refreshes_fraud_rings():
    monitor, clock = make_monitor()
    for i in range(3):
        monitor.ingest(bet(f"user_{i:03d}", BASE_TIME + i * 1000, amount=20, network={
            "ipAddress": "203.0.113.10",
            "userAgent": f"Mozilla/5.0 (Windows NT 10.0) Agent/{i}",
        }))
    assert monitor.get_monitoring_stats()["fraud_ring_candidates"] == 0

    monitor.sweeper.fast_sweep()

    rings = monitor.network.fraud_rings
    assert [r.kind for r in rings] == ["ip_cluster"]
    assert rings[0].users == ("user_000", "user_001", "user_002")
    assert monitor.get_monitoring_stats()["fraud_ring_candidates"] == 1
    monitor.stop()


def test_idle_session_sweep_enrolls_baseline_used_by_later_sessions():
    """Sessions ended by the cleanup sweep enroll a baseline that later sessions are scored against."""
    print("🧪 Testing biometric baseline through ingest...")

    monitor, clock = make_monitor()
    for event in mouse_moves("user_001", [5.0] * 150, BASE_TIME):
        monitor.ingest(event)
    assert monitor.registry.get("user_001").biometric_baselines == {}

    clock.advance(3 * 60 * 1000)
    removed = monitor.sweeper.slow_sweep()

    assert removed["biometric_sessions"] == 1
    assert removed["profiles"] == 0
    assert monitor.biometrics.get_session("user_001") is None
    assert "mouse" in monitor.registry.get("user_001").biometric_baselines

    entries = [monitor.ingest(e) for e in mouse_moves("user_001", [5.0] * 150, clock.now)]

    print(f"  📊 Categories: {entries[-1].categories}")
    assert "biometric" not in entries[50].categories
    assert "biometric" in entries[-1].categories
    assert entries[-1].categories["biometric"] == pytest.approx(0.0, abs=1e-6)
    monitor.stop()

    print("  ✅ Baseline enrollment tests passed!")


def test_impostor_session_leaves_baseline_unchanged():
    monitor, _ = make_monitor()
    for event in mouse_moves("user_001", [5.0] * 150, BASE_TIME):
        monitor.ingest(event)
    # A login closes the active session
    monitor.ingest({"type": "login", "userId": "user_001", "timestamp": BASE_TIME + 2000})

    template = monitor.registry.get("user_001").biometric_baselines["mouse"]
    enrolled = dict(template.metrics)

    jittery = mouse_moves("user_001", [1.0, 30.0] * 75, BASE_TIME + 5000)
    entries = [monitor.ingest(e) for e in jittery]
    assert entries[-1].categories["biometric"] > 0.3

    report = monitor.end_biometric_session("user_001")

    assert report.analysis.authenticity.authentic is False
    assert report.baseline_updated == []
    assert "step_up_authentication" in [r.action for r in report.recommendations]
    assert template.metrics == enrolled
    assert template.session_count == 1
    assert monitor.biometrics.get_session("user_001") is None
    assert monitor.end_biometric_session("user_001") is None
    monitor.stop()


def test_average_risk_excludes_insufficient_entries():
    store = RiskScoreStore()
    assert store.average_score() == 0.0

    store.put(RiskScoreEntry("user_001", 0.6, BASE_TIME))
    store.put(RiskScoreEntry("user_002", 0.0, BASE_TIME, insufficient_data=True))

    assert store.average_score() == pytest.approx(0.6)
