"""
Per-user behavioral state.

The registry owns every UserProfile. Other components read profiles through
accessors and write through the registry's update entrypoints; only the
retention sweeper deletes profiles.
"""

import threading
from collections import deque
from typing import Callable, Dict, List, Optional

import structlog

from riskstream.core.models.config import ActivityConfig
from riskstream.core.models.events import (
    BaseEvent, BetPlacedEvent, DeviceSwitchEvent, LocationChangeEvent, LoginEvent,
)
from riskstream.core.models.state import (
    BiometricTemplate, GeoLocation, LocationObservation, NetworkObservation, NetworkSnapshot,
    RiskHistoryEntry, SuspiciousAction, UserProfile,
)
from riskstream.core.stores.event_store import EventStore
from riskstream.core.utils.metrics import ACTIVE_USERS

logger = structlog.get_logger(__name__)


class UserProfileRegistry:
    """Lazily created user profiles keyed by user id."""

    def __init__(self, event_store: EventStore, config: Optional[ActivityConfig] = None,
                 history_size: int = 100):
        self.event_store = event_store
        self.config = config or ActivityConfig()
        self.history_size = history_size
        self._profiles: Dict[str, UserProfile] = {}
        self._lock = threading.RLock()

        self._updaters: Dict[str, Callable[[UserProfile, BaseEvent], None]] = {
            "bet_placed": self._update_bet_placed,
            "location_change": self._update_location_change,
            "device_switch": self._update_device_switch,
            "login": self._update_login,
        }

    # --- accessors ---

    def get(self, user_id: str) -> Optional[UserProfile]:
        with self._lock:
            return self._profiles.get(user_id)

    def get_or_create(self, user_id: str, timestamp: Optional[int] = None) -> UserProfile:
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                seen = timestamp if timestamp is not None else self.event_store.clock()
                profile = UserProfile(
                    user_id=user_id,
                    first_seen=seen,
                    last_activity=seen,
                    ip_history=deque(maxlen=self.history_size),
                    device_history=deque(maxlen=self.history_size),
                    location_history=deque(maxlen=self.history_size),
                )
                self._profiles[user_id] = profile
                ACTIVE_USERS.set(len(self._profiles))
                logger.debug("Created user profile", user_id=user_id)
            return profile

    def user_ids(self) -> List[str]:
        with self._lock:
            return list(self._profiles.keys())

    def profiles(self) -> List[UserProfile]:
        with self._lock:
            return list(self._profiles.values())

    def size(self) -> int:
        with self._lock:
            return len(self._profiles)

    def network_snapshot(self, user_id: str) -> Optional[NetworkSnapshot]:
        """Copy of the user's network histories and behavior counts, taken under the lock."""
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return None
            metrics = profile.behavior_metrics
            return NetworkSnapshot(
                user_id=user_id,
                ip_history=tuple(profile.ip_history),
                device_history=tuple(profile.device_history),
                behavior_vector=(
                    float(metrics.betting_velocity),
                    float(metrics.location_changes),
                    float(metrics.device_switches),
                    float(len(metrics.suspicious_actions)),
                ),
            )

    # --- event updates ---

    def record_event(self, user_id: str, event: BaseEvent) -> UserProfile:
        """Apply an event to the user's profile and return the profile."""
        with self._lock:
            profile = self.get_or_create(user_id, event.timestamp)
            profile.last_activity = max(profile.last_activity, event.timestamp)
            profile.first_seen = min(profile.first_seen, event.timestamp)
            profile.event_count += 1

            updater = self._updaters.get(event.type)
            if updater is not None:
                updater(profile, event)

            self._prune_suspicious_actions(profile)
            return profile

    def _update_bet_placed(self, profile: UserProfile, event: BetPlacedEvent):
        metrics = profile.behavior_metrics
        metrics.betting_velocity = self.betting_velocity(profile.user_id, profile.last_activity)

        if event.amount > self.config.high_value_bet_threshold:
            self._add_suspicious_action(profile, SuspiciousAction(
                type="high_value_bet",
                timestamp=event.timestamp,
                detail={"amount": event.amount, "event_id": event.event_id},
            ))

    def _update_location_change(self, profile: UserProfile, event: LocationChangeEvent):
        profile.behavior_metrics.location_changes += 1

        previous = self._previous_location_change(profile.user_id, event)
        if previous is None:
            return

        gap_ms = event.timestamp - previous.timestamp
        if gap_ms < self.config.rapid_location_change_ms:
            self._add_suspicious_action(profile, SuspiciousAction(
                type="rapid_location_change",
                timestamp=event.timestamp,
                detail={
                    "from": event.previous_location,
                    "to": event.current_location,
                    "gap_ms": gap_ms,
                },
            ))

    def _update_device_switch(self, profile: UserProfile, event: DeviceSwitchEvent):
        profile.behavior_metrics.device_switches += 1
        self._add_suspicious_action(profile, SuspiciousAction(
            type="device_switch",
            timestamp=event.timestamp,
            detail={"from_device": event.previous_device, "to_device": event.current_device},
        ))

    def _update_login(self, profile: UserProfile, event: LoginEvent):
        if event.login_attempts > self.config.max_login_attempts:
            self._add_suspicious_action(profile, SuspiciousAction(
                type="multiple_login_attempts",
                timestamp=event.timestamp,
                detail={"attempts": event.login_attempts},
            ))

    def betting_velocity(self, user_id: str, reference_time: int) -> int:
        """Count of bet_placed events within the velocity window ending at reference_time."""
        since = reference_time - self.config.velocity_window_ms
        recent = self.event_store.window(user_id, since, reference_time)
        return sum(1 for e in recent if e.type == "bet_placed")

    def _previous_location_change(self, user_id: str, event: BaseEvent) -> Optional[BaseEvent]:
        candidates = [
            e for e in self.event_store.user_events(user_id)
            if e.type == "location_change"
            and e.event_id != event.event_id
            and e.timestamp <= event.timestamp
        ]
        return candidates[-1] if candidates else None

    def _add_suspicious_action(self, profile: UserProfile, action: SuspiciousAction):
        actions = profile.behavior_metrics.suspicious_actions
        actions.append(action)
        if len(actions) > 1 and actions[-2].timestamp > action.timestamp:
            actions.sort(key=lambda a: a.timestamp)

    def _prune_suspicious_actions(self, profile: UserProfile):
        cutoff = profile.last_activity - self.config.suspicious_action_retention_ms
        metrics = profile.behavior_metrics
        metrics.suspicious_actions = [a for a in metrics.suspicious_actions if a.timestamp >= cutoff]

    # --- updates from signal sources and sweeps ---

    def record_network_observation(self, user_id: str, ip_address: str, fingerprint: str,
                                   location: Optional[GeoLocation], timestamp: int) -> UserProfile:
        with self._lock:
            profile = self.get_or_create(user_id, timestamp)
            profile.ip_history.append(NetworkObservation(ip_address, timestamp))
            profile.device_history.append(NetworkObservation(fingerprint, timestamp))
            if location is not None:
                profile.location_history.append(LocationObservation(location, timestamp))
            return profile

    def update_biometric_baseline(self, user_id: str, modality: str, metrics: Dict[str, float],
                                  timestamp: int, learning_rate: float) -> BiometricTemplate:
        """Blend session metrics into the stored baseline (or enroll it)."""
        with self._lock:
            profile = self.get_or_create(user_id, timestamp)
            template = profile.biometric_baselines.get(modality)
            if template is None:
                template = BiometricTemplate(metrics=dict(metrics), session_count=1, updated_at=timestamp)
                profile.biometric_baselines[modality] = template
                return template

            blended = dict(template.metrics)
            for key, value in metrics.items():
                if key in blended:
                    blended[key] = (1 - learning_rate) * blended[key] + learning_rate * value
                else:
                    blended[key] = value
            template.metrics = blended
            template.session_count += 1
            template.updated_at = timestamp
            return template

    def record_biometric_score(self, user_id: str, score: float):
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is not None:
                profile.biometric_score_history.append(score)

    def append_risk_history(self, user_id: str, entry: RiskHistoryEntry, retention_ms: int):
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return
            profile.risk_history.append(entry)
            cutoff = entry.timestamp - retention_ms
            profile.risk_history = [r for r in profile.risk_history if r.timestamp > cutoff]

    def remove_inactive(self, cutoff: int) -> int:
        """Delete profiles whose last activity is older than the cutoff."""
        with self._lock:
            stale = [uid for uid, p in self._profiles.items() if p.last_activity < cutoff]
            for user_id in stale:
                del self._profiles[user_id]
            ACTIVE_USERS.set(len(self._profiles))
            return len(stale)
