"""
Retention sweeps.

The fast sweep records windowed aggregate risk on each profile's risk
history; the slow sweep ends idle biometric sessions and deletes everything
older than the monitoring window.
The sweeper is the only component that deletes state.
"""

from typing import Callable, Dict, Optional

import structlog

from riskstream.core.models.config import MonitorConfig
from riskstream.core.models.state import RiskHistoryEntry, RiskScoreEntry
from riskstream.core.processors.activity import ActivityRiskEvaluator, risk_factors
from riskstream.core.processors.biometrics import BiometricProfiler
from riskstream.core.processors.network import NetworkCorrelationAnalyzer
from riskstream.core.sinks.alerts import AlertDispatcher
from riskstream.core.stores.event_store import EventStore
from riskstream.core.stores.profile_registry import UserProfileRegistry
from riskstream.core.stores.risk_scores import RiskScoreStore
from riskstream.core.utils.metrics import EVICTIONS, SWEEP_DURATION
from riskstream.core.utils.scheduler import PeriodicTask
from riskstream.core.utils.windowing import current_timestamp_ms

logger = structlog.get_logger(__name__)


class RetentionSweeper:
    """Owns the fast (aggregate risk) and slow (eviction) periodic tasks."""

    def __init__(
        self,
        config: MonitorConfig,
        event_store: EventStore,
        registry: UserProfileRegistry,
        risk_scores: RiskScoreStore,
        dispatcher: AlertDispatcher,
        activity: ActivityRiskEvaluator,
        network: Optional[NetworkCorrelationAnalyzer] = None,
        biometrics: Optional[BiometricProfiler] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config
        self.event_store = event_store
        self.registry = registry
        self.risk_scores = risk_scores
        self.dispatcher = dispatcher
        self.activity = activity
        self.network = network
        self.biometrics = biometrics
        self.clock = clock or current_timestamp_ms

        retention = config.retention
        self.fast_task = PeriodicTask("aggregate-risk", retention.fast_sweep_interval_seconds, self.fast_sweep)
        self.slow_task = PeriodicTask("cleanup", retention.slow_sweep_interval_seconds, self.slow_sweep)

    def start(self):
        self.fast_task.start()
        self.slow_task.start()

    def stop(self, timeout: Optional[float] = 5.0):
        self.fast_task.stop(timeout)
        self.slow_task.stop(timeout)

    @property
    def is_running(self) -> bool:
        return self.fast_task.is_running or self.slow_task.is_running

    def fast_sweep(self) -> Dict[str, float]:
        """Append the aggregate risk over the monitoring window to every active profile
        and refresh the fraud ring candidates."""
        with SWEEP_DURATION.labels(sweep="fast").time():
            now = self.clock()
            since = now - self.config.retention.monitoring_window_ms
            aggregates = {}

            for profile in self.registry.profiles():
                events = self.event_store.window(profile.user_id, since)
                if not events:
                    continue

                aggregate = self.activity.aggregate(profile, events)
                if aggregate is None:
                    continue

                aggregates[profile.user_id] = aggregate
                self.registry.append_risk_history(
                    profile.user_id,
                    RiskHistoryEntry(timestamp=now, risk=aggregate, event_count=len(events)),
                    self.config.retention.risk_history_retention_ms,
                )

                if self.config.alerts.alert_on_aggregate:
                    entry = RiskScoreEntry(
                        user_id=profile.user_id,
                        score=round(aggregate, 6),
                        timestamp=now,
                        factors=tuple(risk_factors(profile)),
                        categories={"activity": aggregate},
                    )
                    self.dispatcher.evaluate(entry, None, profile.to_dict(), source="aggregate")

            if self.network is not None:
                self.network.detect_fraud_rings()

            logger.debug("Aggregate risk sweep complete", users=len(aggregates))
            return aggregates

    def slow_sweep(self) -> Dict[str, int]:
        """
        End idle biometric sessions, then delete events, profiles, scores,
        alerts and clusters older than the window.
        """
        with SWEEP_DURATION.labels(sweep="slow").time():
            now = self.clock()
            cutoff = now - self.config.retention.monitoring_window_ms

            removed = {}
            # Ending a session can update a profile baseline; runs before profile eviction
            if self.biometrics is not None:
                removed["biometric_sessions"] = self.biometrics.expire_sessions(
                    now - self.config.biometric.session_idle_timeout_ms
                )
            removed["events"] = self.event_store.evict_before(cutoff)
            removed["profiles"] = self.registry.remove_inactive(cutoff)
            removed["risk_scores"] = self.risk_scores.evict_before(cutoff)
            removed["alerts"] = self.dispatcher.expire(cutoff)
            if self.network is not None:
                removed["clusters"] = self.network.evict_stale(cutoff)

            for store, count in removed.items():
                if count:
                    EVICTIONS.labels(store=store).inc(count)

            logger.info("Cleanup sweep complete", cutoff=cutoff, **removed)
            return removed
