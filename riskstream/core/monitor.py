"""
Real-time risk monitor.

Wires the stores, signal sources, composite scorer, alert dispatcher and
retention sweeper into a single ingest pipeline:

    ingest -> EventStore.append -> UserProfileRegistry.record_event
           -> {activity calculators, network analysis, biometrics}
           -> CompositeScorer -> AlertDispatcher

Events for the same user are processed one at a time; different users
proceed in parallel.
"""

import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import structlog

from riskstream.core.models.config import MonitorConfig
from riskstream.core.models.events import BaseEvent, InvalidEventError, decode_event
from riskstream.core.models.state import Alert, RiskFactor, RiskScoreEntry, UserProfile
from riskstream.core.processors.activity import ActivityRiskEvaluator, RiskCalculator, risk_factors
from riskstream.core.processors.biometrics import BiometricProfiler, BiometricReport, UniquenessScorer
from riskstream.core.processors.network import NetworkCorrelationAnalyzer
from riskstream.core.processors.scoring import CompositeScorer, InsufficientDataError
from riskstream.core.retention import RetentionSweeper
from riskstream.core.sinks.alerts import AlertDispatcher, AlertListener, AlertSink, WebhookAlertSink
from riskstream.core.stores.event_store import EventStore
from riskstream.core.stores.profile_registry import UserProfileRegistry
from riskstream.core.stores.risk_scores import RiskScoreStore
from riskstream.core.utils.geo import GeoLookup
from riskstream.core.utils.lookups import ProxyClassifier
from riskstream.core.utils.metrics import (
    CALCULATOR_FAILURES, EVENTS_INGESTED, PROCESSING_DURATION, RISK_SCORE_DISTRIBUTION,
)
from riskstream.core.utils.windowing import current_timestamp_ms

logger = structlog.get_logger(__name__)

USER_LOCK_STRIPES = 64

ScoreListener = Callable[[RiskScoreEntry], None]


def _impact(score: float) -> str:
    if score >= 0.7:
        return "high"
    if score >= 0.4:
        return "medium"
    return "low"


class RealTimeRiskMonitor:
    """Streaming behavioral risk monitor."""

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        geo_lookup: Optional[GeoLookup] = None,
        proxy_classifier: Optional[ProxyClassifier] = None,
        uniqueness_scorer: Optional[UniquenessScorer] = None,
        alert_sinks: Sequence[AlertSink] = (),
        calculators: Optional[Dict[str, RiskCalculator]] = None,
        clock: Optional[Callable[[], int]] = None,
        executor: Optional[Executor] = None,
    ):
        self.config = config or MonitorConfig()
        self.clock = clock or current_timestamp_ms
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="risk-signal"
        )
        self._lookup_executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="risk-lookup"
        )

        self.event_store = EventStore(self.config.retention.max_events, self.clock)
        self.registry = UserProfileRegistry(
            self.event_store, self.config.activity, self.config.network.max_history_size
        )
        self.risk_scores = RiskScoreStore()

        self.activity = ActivityRiskEvaluator(self.config.activity, calculators)
        self.network = NetworkCorrelationAnalyzer(
            self.registry,
            self.config.network,
            geo_lookup=geo_lookup,
            proxy_classifier=proxy_classifier,
            executor=self._lookup_executor,
            lookup_timeout=self.config.lookup_timeout_seconds,
        )
        self.biometrics = BiometricProfiler(self.registry, self.config.biometric, uniqueness_scorer, self.clock)
        self.scorer = CompositeScorer(self.config.category_weights, self.config.enabled_categories)

        sinks = list(alert_sinks)
        if self.config.alerts.webhook_url:
            sinks.append(WebhookAlertSink(self.config.alerts.webhook_url, self.config.alerts.webhook_timeout_seconds))
        self.dispatcher = AlertDispatcher(self.config.alerts, sinks, clock=self.clock)

        self.sweeper = RetentionSweeper(
            self.config,
            self.event_store,
            self.registry,
            self.risk_scores,
            self.dispatcher,
            self.activity,
            network=self.network,
            biometrics=self.biometrics,
            clock=self.clock,
        )

        self.events_processed = 0
        self.events_rejected = 0
        self.is_monitoring = False
        self.started_at: Optional[float] = None

        self._counter_lock = threading.Lock()
        self._user_locks = [threading.Lock() for _ in range(USER_LOCK_STRIPES)]
        self._score_listeners: List[ScoreListener] = []
        self._closed = False

    # --- lifecycle ---

    def start(self):
        """Start the retention timers."""
        if self._closed:
            raise RuntimeError("monitor has been stopped")
        self.is_monitoring = True
        self.started_at = time.time()
        self.sweeper.start()
        logger.info("Risk monitor started",
                    alert_threshold=self.config.alerts.alert_threshold,
                    monitoring_window_ms=self.config.retention.monitoring_window_ms,
                    categories=self.config.enabled_categories)

    def stop(self, timeout: Optional[float] = 5.0):
        """Halt both timers, let in-flight work finish and release worker threads."""
        self.is_monitoring = False
        self._closed = True
        self.sweeper.stop(timeout)
        self.dispatcher.wait_for_deliveries(timeout)
        self.dispatcher.executor.shutdown(wait=False)
        self.executor.shutdown(wait=True)
        self._lookup_executor.shutdown(wait=True)
        logger.info("Risk monitor stopped", events_processed=self.events_processed,
                    alerts_sent=self.dispatcher.alerts_sent)

    # --- subscriptions ---

    def subscribe_alerts(self, listener: AlertListener) -> Callable[[], None]:
        return self.dispatcher.subscribe(listener)

    def subscribe_scores(self, listener: ScoreListener):
        """Receive every RiskScoreEntry after it is stored."""
        self._score_listeners.append(listener)

    # --- ingest ---

    def _user_lock(self, user_id: str) -> threading.Lock:
        return self._user_locks[hash(user_id) % USER_LOCK_STRIPES]

    def ingest(self, raw: Union[BaseEvent, Dict[str, Any], str, bytes]) -> RiskScoreEntry:
        """
        Ingest one activity event and evaluate the user's risk.

        Args:
            raw: Event model, dict, or JSON text/bytes from the feed

        Returns:
            The user's new RiskScoreEntry

        Raises:
            InvalidEventError: if the event is malformed; it is not stored
        """
        if self._closed:
            raise RuntimeError("monitor has been stopped")

        try:
            event = decode_event(raw)
        except InvalidEventError as e:
            with self._counter_lock:
                self.events_rejected += 1
            EVENTS_INGESTED.labels(event_type="unknown", status="rejected").inc()
            logger.warning("Rejected malformed event", error=str(e))
            raise

        with PROCESSING_DURATION.labels(event_type=event.type).time():
            with self._user_lock(event.user_id):
                event = self.event_store.append(event)
                profile = self.registry.record_event(event.user_id, event)
                if event.type == "login":
                    self.biometrics.end_session(event.user_id, event.timestamp)
                entry = self._evaluate(event, profile)
                self.risk_scores.put(entry)
                self.dispatcher.evaluate(entry, event, profile.to_dict())

        with self._counter_lock:
            self.events_processed += 1
        EVENTS_INGESTED.labels(event_type=event.type, status="accepted").inc()
        RISK_SCORE_DISTRIBUTION.observe(entry.score)

        for listener in list(self._score_listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.error("Score listener failed", user_id=entry.user_id, error=str(e))

        return entry

    def _evaluate(self, event: BaseEvent, profile: UserProfile) -> RiskScoreEntry:
        futures: Dict[str, Future] = {}
        if self.scorer.is_enabled("network") and event.network is not None:
            futures["network"] = self.executor.submit(self.network.risk_signal, event)
        if self.scorer.is_enabled("biometric") and event.is_biometric:
            futures["biometric"] = self.executor.submit(self.biometrics.risk_signal, event)

        category_scores: Dict[str, Optional[float]] = {}
        if self.scorer.is_enabled("activity"):
            since = profile.last_activity - self.config.retention.monitoring_window_ms
            window_events = self.event_store.window(event.user_id, since)
            category_scores["activity"], _ = self.activity.evaluate(event, profile, window_events)

        for name, future in futures.items():
            category_scores[name] = self._collect_signal(name, future, event.user_id)

        composite = self.scorer.combine(category_scores)
        factors: List[RiskFactor] = risk_factors(profile)
        factors.extend(
            RiskFactor(f"{name}_risk", round(score, 4), _impact(score))
            for name, score in composite.categories.items()
        )

        if composite.insufficient_data:
            logger.info("Insufficient data for risk score", user_id=event.user_id, event_type=event.type)

        return RiskScoreEntry(
            user_id=event.user_id,
            score=composite.score,
            timestamp=self.clock(),
            factors=tuple(factors),
            categories=composite.categories,
            insufficient_data=composite.insufficient_data,
        )

    def _collect_signal(self, name: str, future: Future, user_id: str) -> Optional[float]:
        timeout = self.config.lookup_timeout_seconds * 3
        try:
            signal = future.result(timeout=timeout)
        except InsufficientDataError as e:
            logger.debug("Signal source has insufficient data", source=name, user_id=user_id, reason=str(e))
            return None
        except FutureTimeoutError:
            CALCULATOR_FAILURES.labels(calculator=name).inc()
            logger.warning("Signal source timed out", source=name, user_id=user_id, timeout=timeout)
            return None
        except Exception as e:
            CALCULATOR_FAILURES.labels(calculator=name).inc()
            logger.warning("Signal source failed", source=name, user_id=user_id, error=str(e))
            return None
        return signal.risk

    def end_biometric_session(self, user_id: str) -> Optional[BiometricReport]:
        """Close the user's biometric session and apply the baseline update policy."""
        with self._user_lock(user_id):
            return self.biometrics.end_session(user_id)

    # --- queries ---

    def get_user_risk_snapshot(self, user_id: str) -> Optional[RiskScoreEntry]:
        return self.risk_scores.get(user_id)

    def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        profile = self.registry.get(user_id)
        return profile.to_dict() if profile else None

    def recent_alerts(self, limit: int = 10) -> List[Alert]:
        return self.dispatcher.recent_alerts(limit)

    def get_monitoring_stats(self) -> Dict[str, Any]:
        threshold = self.config.alerts.alert_threshold
        return {
            "is_monitoring": self.is_monitoring,
            "active_user_count": self.registry.size(),
            "events_processed": self.events_processed,
            "events_rejected": self.events_rejected,
            "events_dropped": self.event_store.dropped_count,
            "event_store_size": self.event_store.size(),
            "alerts_sent": self.dispatcher.alerts_sent,
            "average_risk": self.risk_scores.average_score(),
            "high_risk_users": [
                {"user_id": e.user_id, "risk": e.score} for e in self.risk_scores.above(threshold)
            ],
            "fraud_ring_candidates": len(self.network.fraud_rings),
            "health": {
                "status": "healthy" if self.is_monitoring else "degraded",
                "uptime_seconds": time.time() - self.started_at if self.started_at else 0.0,
                "last_event_timestamp": self.event_store.latest_timestamp(),
                "delivery_failures": self.dispatcher.delivery_failures,
            },
        }
