"""
Activity risk calculators.

Five independent calculators score a user's recent activity. Each one reads
the triggering event, the user's profile and the user's buffered events and
returns a RiskSignal. A calculator that raises is excluded from the
activity score instead of counting as zero risk.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from riskstream.core.models.config import ActivityConfig
from riskstream.core.models.events import BaseEvent
from riskstream.core.models.state import RiskFactor, UserProfile
from riskstream.core.processors.scoring import RiskSignal, weighted_average
from riskstream.core.utils.metrics import CALCULATOR_FAILURES

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RiskContext:
    """Inputs shared by every calculator for one evaluation."""
    event: BaseEvent
    profile: UserProfile
    window_events: List[BaseEvent]
    reference_time: int
    config: ActivityConfig

    def weight(self, name: str) -> float:
        return self.config.calculator_weights.get(name, 0.0)


RiskCalculator = Callable[[RiskContext], RiskSignal]


def velocity_risk(ctx: RiskContext) -> RiskSignal:
    """Events in the trailing velocity window relative to normal velocity."""
    since = ctx.reference_time - ctx.config.velocity_window_ms
    recent = sum(1 for e in ctx.window_events if since <= e.timestamp <= ctx.reference_time)
    return RiskSignal(min(recent / ctx.config.max_normal_velocity, 1.0), ctx.weight("velocity"))


def pattern_risk(ctx: RiskContext) -> RiskSignal:
    actions = ctx.profile.behavior_metrics.suspicious_actions
    return RiskSignal(min(len(actions) / 5, 1.0), ctx.weight("pattern"))


def location_risk(ctx: RiskContext) -> RiskSignal:
    # Only applies to location changes; weight 0 keeps it out of the average otherwise
    if ctx.event.type != "location_change":
        return RiskSignal(0.0, 0.0)
    changes = ctx.profile.behavior_metrics.location_changes
    return RiskSignal(min(changes / 3, 1.0), ctx.weight("location"))


def device_risk(ctx: RiskContext) -> RiskSignal:
    switches = ctx.profile.behavior_metrics.device_switches
    return RiskSignal(min(switches / 2, 1.0), ctx.weight("device"))


def behavior_risk(ctx: RiskContext) -> RiskSignal:
    velocity = ctx.profile.behavior_metrics.betting_velocity
    return RiskSignal(min(velocity / 100, 1.0), ctx.weight("behavior"))


DEFAULT_CALCULATORS: Dict[str, RiskCalculator] = {
    "velocity": velocity_risk,
    "pattern": pattern_risk,
    "location": location_risk,
    "device": device_risk,
    "behavior": behavior_risk,
}


def risk_factors(profile: UserProfile) -> List[RiskFactor]:
    """Human-readable factors behind a user's activity risk."""
    metrics = profile.behavior_metrics
    factors = []

    if metrics.betting_velocity > 50:
        factors.append(RiskFactor("high_betting_velocity", metrics.betting_velocity, "high"))
    if metrics.location_changes > 2:
        factors.append(RiskFactor("multiple_location_changes", metrics.location_changes, "medium"))
    if metrics.device_switches > 1:
        factors.append(RiskFactor("device_switching", metrics.device_switches, "medium"))
    if len(metrics.suspicious_actions) > 3:
        factors.append(RiskFactor("multiple_suspicious_actions", len(metrics.suspicious_actions), "high"))

    return factors


class ActivityRiskEvaluator:
    """Runs the activity calculators and combines them into one activity score."""

    def __init__(self, config: Optional[ActivityConfig] = None,
                 calculators: Optional[Dict[str, RiskCalculator]] = None):
        self.config = config or ActivityConfig()
        self.calculators = dict(calculators if calculators is not None else DEFAULT_CALCULATORS)

    def signals(self, ctx: RiskContext) -> Dict[str, RiskSignal]:
        """Run every calculator, leaving out the ones that fail."""
        results = {}
        for name, calculator in self.calculators.items():
            try:
                results[name] = calculator(ctx)
            except Exception as e:
                CALCULATOR_FAILURES.labels(calculator=name).inc()
                logger.warning("Risk calculator failed", calculator=name,
                               user_id=ctx.profile.user_id, error=str(e))
        return results

    def evaluate(self, event: BaseEvent, profile: UserProfile, window_events: List[BaseEvent],
                 reference_time: Optional[int] = None) -> Tuple[Optional[float], Dict[str, RiskSignal]]:
        """
        Score one event for its user.

        Args:
            event: The triggering event
            profile: The user's profile after the event was recorded
            window_events: The user's buffered events, chronological
            reference_time: "Now" for windowed counts; defaults to the user's
                event-time watermark

        Returns:
            (activity score or None if no calculator produced a signal, signals by calculator)
        """
        ctx = RiskContext(
            event=event,
            profile=profile,
            window_events=window_events,
            reference_time=reference_time if reference_time is not None else profile.last_activity,
            config=self.config,
        )
        signals = self.signals(ctx)
        return weighted_average(signals.values()), signals

    def aggregate(self, profile: UserProfile, window_events: List[BaseEvent]) -> Optional[float]:
        """Mean of per-event activity scores over the user's window."""
        scores = []
        for event in window_events:
            score, _ = self.evaluate(event, profile, window_events, reference_time=event.timestamp)
            if score is not None:
                scores.append(score)

        if not scores:
            return None
        return sum(scores) / len(scores)
