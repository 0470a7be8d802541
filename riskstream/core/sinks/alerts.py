"""
Alert dispatching.

Turns a composite score at or above the alert threshold into an Alert,
keeps it in a bounded in-memory queue, notifies subscribers and hands it to
external sinks (webhook) without blocking the ingest path.
"""

import threading
import uuid
from collections import deque
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

import requests
import structlog

from riskstream.core.models.config import AlertConfig
from riskstream.core.models.events import BaseEvent
from riskstream.core.models.state import Alert, Recommendation, RiskScoreEntry, Severity, severity_for
from riskstream.core.utils.metrics import ALERT_DELIVERIES, ALERTS_FIRED
from riskstream.core.utils.windowing import current_timestamp_ms

logger = structlog.get_logger(__name__)

RECOMMENDATIONS: Dict[Severity, Tuple[Recommendation, ...]] = {
    Severity.CRITICAL: (
        Recommendation("immediate_suspension", "critical", "Critical risk level detected"),
        Recommendation("manual_review", "high", "Account requires manual investigation"),
    ),
    Severity.HIGH: (
        Recommendation("enhanced_monitoring", "high", "High risk activity detected"),
        Recommendation("manual_review", "medium", "Review recent account activity"),
    ),
    Severity.MEDIUM: (
        Recommendation("additional_verification", "medium", "Request additional identity verification"),
    ),
    Severity.LOW: (
        Recommendation("standard_monitoring", "low", "No action required"),
    ),
}

AlertListener = Callable[[Alert], None]


def recommendations_for(severity: Severity) -> Tuple[Recommendation, ...]:
    return RECOMMENDATIONS[severity]


class AlertSink(Protocol):
    name: str

    def deliver(self, alert: Alert) -> bool:
        ...


class WebhookAlertSink:
    """POST alerts as JSON to a webhook endpoint."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def deliver(self, alert: Alert) -> bool:
        response = self.session.post(self.url, json=alert.to_dict(), timeout=self.timeout)
        if not 200 <= response.status_code < 300:
            logger.warning("Webhook rejected alert", url=self.url,
                           status=response.status_code, alert_id=alert.alert_id)
            return False
        return True


class AlertDispatcher:
    """Raises alerts from scores and fans them out to subscribers and sinks."""

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        sinks: Sequence[AlertSink] = (),
        executor: Optional[Executor] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config or AlertConfig()
        self.sinks: List[AlertSink] = list(sinks)
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="alert-delivery")
        self.clock = clock or current_timestamp_ms

        self.alerts_sent = 0
        self.delivery_failures = 0

        self._lock = threading.RLock()
        self._alerts: deque = deque(maxlen=self.config.max_alert_queue)
        self._listeners: List[AlertListener] = []
        self._pending: Set[Future] = set()

    # --- subscriptions ---

    def subscribe(self, listener: AlertListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: AlertListener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def add_sink(self, sink: AlertSink):
        self.sinks.append(sink)

    # --- dispatch ---

    def should_alert(self, entry: RiskScoreEntry) -> bool:
        return not entry.insufficient_data and entry.score >= self.config.alert_threshold

    def evaluate(
        self,
        entry: RiskScoreEntry,
        triggering_event: Optional[BaseEvent],
        profile_snapshot: Dict[str, Any],
        source: str = "event",
    ) -> Optional[Alert]:
        """
        Raise an alert for the score entry if it crosses the threshold.

        Returns:
            The alert, or None when the score is below threshold or the
            entry has insufficient data
        """
        if not self.should_alert(entry):
            return None

        severity = severity_for(entry.score)
        alert = Alert(
            alert_id=f"alert_{entry.timestamp}_{uuid.uuid4().hex[:9]}",
            timestamp=entry.timestamp,
            user_id=entry.user_id,
            risk_score=entry.score,
            severity=severity,
            triggering_event=triggering_event,
            profile_snapshot=profile_snapshot,
            recommendations=recommendations_for(severity),
            factors=entry.factors,
            source=source,
        )

        with self._lock:
            self._alerts.append(alert)
            self.alerts_sent += 1
            listeners = list(self._listeners)

        ALERTS_FIRED.labels(severity=severity.value, source=source).inc()
        logger.warning("Fraud alert raised", alert_id=alert.alert_id, user_id=alert.user_id,
                       risk_score=round(alert.risk_score, 3), severity=severity.value, source=source)

        for listener in listeners:
            try:
                listener(alert)
            except Exception as e:
                logger.error("Alert listener failed", alert_id=alert.alert_id, error=str(e))

        for sink in self.sinks:
            self._submit_delivery(sink, alert)

        return alert

    def _submit_delivery(self, sink: AlertSink, alert: Alert):
        future = self.executor.submit(self._deliver, sink, alert)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._delivery_done)

    def _delivery_done(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def _deliver(self, sink: AlertSink, alert: Alert) -> bool:
        """Deliver with a bounded number of attempts, then give up."""
        name = getattr(sink, "name", type(sink).__name__)
        for attempt in range(1, self.config.max_delivery_attempts + 1):
            try:
                if sink.deliver(alert):
                    ALERT_DELIVERIES.labels(sink=name, status="success").inc()
                    return True
            except Exception as e:
                logger.warning("Alert delivery attempt failed", sink=name,
                               alert_id=alert.alert_id, attempt=attempt, error=str(e))

        with self._lock:
            self.delivery_failures += 1
        ALERT_DELIVERIES.labels(sink=name, status="failed").inc()
        logger.error("Alert delivery abandoned", sink=name, alert_id=alert.alert_id,
                     attempts=self.config.max_delivery_attempts)
        return False

    def wait_for_deliveries(self, timeout: Optional[float] = None) -> bool:
        """Block until in-flight deliveries finish. Returns False on timeout."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # --- queue access ---

    def alerts(self, since: Optional[int] = None) -> List[Alert]:
        with self._lock:
            if since is None:
                return list(self._alerts)
            return [a for a in self._alerts if a.timestamp >= since]

    def recent_alerts(self, limit: int = 10) -> List[Alert]:
        with self._lock:
            return list(self._alerts)[-limit:]

    def queue_size(self) -> int:
        with self._lock:
            return len(self._alerts)

    def expire(self, cutoff: int) -> int:
        """Drop alerts older than the cutoff. Returns the number removed."""
        with self._lock:
            kept = [a for a in self._alerts if a.timestamp >= cutoff]
            removed = len(self._alerts) - len(kept)
            self._alerts.clear()
            self._alerts.extend(kept)
        return removed
