"""
Network correlation analysis.

Clusters users by IP address and device fingerprint, classifies the
connection through the injected proxy and geolocation lookups, checks
travel plausibility against the user's location history and scores
coordination between users sharing infrastructure.
"""

import hashlib
import json
import math
import threading
from collections import Counter as TallyCounter
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import structlog

from riskstream.core.models.config import NetworkConfig
from riskstream.core.models.events import BaseEvent, NetworkInfo
from riskstream.core.models.state import (
    GeoLocation, LocationObservation, NetworkCluster, NetworkSnapshot, Recommendation, UserProfile,
)
from riskstream.core.processors.scoring import InsufficientDataError, RiskSignal, weighted_average
from riskstream.core.stores.profile_registry import UserProfileRegistry
from riskstream.core.utils.geo import GeoLookup, NullGeoLookup, haversine_km
from riskstream.core.utils.lookups import NullProxyClassifier, ProxyClassifier, guarded_call

logger = structlog.get_logger(__name__)

AUTOMATION_MARKERS = ("Selenium", "WebDriver", "PhantomJS", "HeadlessChrome", "Headless")

# platform prefix -> user agent tokens that are consistent with it
PLATFORM_TOKENS = {
    "Win": ("Windows",),
    "Mac": ("Macintosh", "Mac OS"),
    "Linux": ("Linux", "Android", "X11"),
    "iPhone": ("iPhone",),
    "iPad": ("iPad",),
}


def device_fingerprint(info: NetworkInfo) -> str:
    """Stable SHA-256 fingerprint of the browser characteristics."""
    canonical = {
        "user_agent": info.user_agent,
        "screen_resolution": info.screen_resolution,
        "timezone": info.timezone,
        "language": info.language,
        "platform": info.platform,
        "color_depth": info.color_depth,
        "plugins": sorted(info.plugins),
        "cookies_enabled": info.cookies_enabled,
        "do_not_track": info.do_not_track,
    }
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def parse_resolution(value: Optional[str]) -> Optional[Tuple[int, int]]:
    if not value:
        return None
    parts = value.lower().split("x")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


def category_risk(indicators: Dict[str, Any], shared_user_threshold: int = 5) -> float:
    """Additive risk rules over one category's indicators, capped at 1."""
    risk = 0.0

    if indicators.get("is_shared_ip"):
        risk += 0.3
    if indicators.get("is_proxy"):
        risk += 0.4
    if indicators.get("is_vpn"):
        risk += 0.3
    if indicators.get("is_tor"):
        risk += 0.8

    if indicators.get("shared_users", 0) > shared_user_threshold:
        risk += 0.4
    if indicators.get("automation_signs"):
        risk += 0.6
    if indicators.get("spoofing_indicators"):
        risk += 0.5

    if indicators.get("impossible_travel"):
        risk += 0.8
    if indicators.get("rapid_movement"):
        risk += 0.4

    if indicators.get("is_coordinated"):
        risk += 0.7
    coordination_score = indicators.get("coordination_score", 0.0)
    if coordination_score > 0.5:
        risk += coordination_score * 0.5

    return min(risk, 1.0)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


@dataclass
class NetworkAnalysis:
    """Result of analyzing one network observation for a user."""
    user_id: str
    timestamp: int
    fingerprint: str
    ip_analysis: Dict[str, Any]
    device_analysis: Dict[str, Any]
    proxy_vpn: Dict[str, Any]
    geolocation: Dict[str, Any]
    coordination: Dict[str, Any]
    category_risks: Dict[str, float] = field(default_factory=dict)
    risk_score: float = 0.0
    recommendations: List[Recommendation] = field(default_factory=list)


@dataclass(frozen=True)
class FraudRing:
    kind: str  # 'ip_cluster' or 'device_cluster'
    key: str
    users: Tuple[str, ...]
    risk_score: float
    indicators: Tuple[str, ...]


class NetworkCorrelationAnalyzer:
    """Owns the IP and device-fingerprint cluster maps."""

    def __init__(
        self,
        registry: UserProfileRegistry,
        config: Optional[NetworkConfig] = None,
        geo_lookup: Optional[GeoLookup] = None,
        proxy_classifier: Optional[ProxyClassifier] = None,
        executor: Optional[Executor] = None,
        lookup_timeout: float = 2.0,
    ):
        self.registry = registry
        self.config = config or NetworkConfig()
        self.geo_lookup = geo_lookup or NullGeoLookup()
        self.proxy_classifier = proxy_classifier or NullProxyClassifier()
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="network-lookup")
        self.lookup_timeout = lookup_timeout

        self._lock = threading.RLock()
        self._ip_clusters: Dict[str, NetworkCluster] = {}
        self._device_clusters: Dict[str, NetworkCluster] = {}
        self._coordinated_users: Dict[str, int] = {}
        self.fraud_rings: List[FraudRing] = []

    # --- accessors ---

    def get_ip_cluster(self, ip_address: str) -> Optional[NetworkCluster]:
        with self._lock:
            return self._ip_clusters.get(ip_address)

    def get_device_cluster(self, fingerprint: str) -> Optional[NetworkCluster]:
        with self._lock:
            return self._device_clusters.get(fingerprint)

    def cluster_counts(self) -> Dict[str, int]:
        with self._lock:
            return {"ip": len(self._ip_clusters), "device": len(self._device_clusters)}

    # --- analysis ---

    def risk_signal(self, event: BaseEvent) -> RiskSignal:
        """Network category signal for an event; raises InsufficientDataError without network info."""
        if event.network is None:
            raise InsufficientDataError("event carries no network information")
        analysis = self.analyze(event.user_id, event.network, event.timestamp)
        return RiskSignal(analysis.risk_score, 1.0)

    def analyze(self, user_id: str, info: NetworkInfo, timestamp: Optional[int] = None) -> NetworkAnalysis:
        """
        Analyze one network observation for a user.

        Args:
            user_id: User the observation belongs to
            info: Connection and browser characteristics
            timestamp: Event time of the observation in milliseconds; defaults
                to the event store clock

        Returns:
            NetworkAnalysis with per-category indicators, risk and recommendations
        """
        if timestamp is None:
            timestamp = self.registry.event_store.clock()
        fingerprint = device_fingerprint(info)
        location = guarded_call(self.executor, "geolocation", self.geo_lookup.lookup,
                                info.ip_address, timeout=self.lookup_timeout)
        proxy = guarded_call(self.executor, "proxy_classification", self.proxy_classifier.classify,
                             info.ip_address, timeout=self.lookup_timeout)

        profile = self.registry.get_or_create(user_id, timestamp)
        previous_location = profile.location_history[-1] if profile.location_history else None

        with self._lock:
            ip_cluster = self._touch_cluster(self._ip_clusters, "ip", info.ip_address, user_id, timestamp)
            device_cluster = self._touch_cluster(self._device_clusters, "device", fingerprint, user_id, timestamp)
            if location is not None:
                ip_cluster.geolocation = location

            ip_analysis = {
                "ip_address": info.ip_address,
                "shared_users": ip_cluster.member_count,
                "is_shared_ip": ip_cluster.member_count > self.config.suspicious_network_threshold,
                "is_proxy": bool(proxy and proxy.is_proxy),
                "is_vpn": bool(proxy and proxy.is_vpn),
                "is_tor": bool(proxy and proxy.is_tor),
                "geolocation": location,
            }
            ip_cluster.risk_score = self._category_risk(ip_analysis)

            features = self._suspicious_device_features(info, location)
            spoofing = self._spoofing_indicators(info)
            device_analysis = {
                "fingerprint": fingerprint,
                "shared_users": device_cluster.member_count,
                "suspicious_features": features,
                "automation_signs": any(f["type"] == "automation_tool" for f in features),
                "spoofing_indicators": spoofing,
            }
            device_cluster.suspicious_features = features
            device_cluster.risk_score = self._category_risk(device_analysis)

        self.registry.record_network_observation(user_id, info.ip_address, fingerprint, location, timestamp)

        proxy_vpn = {
            "known": proxy is not None,
            "is_proxy": bool(proxy and proxy.is_proxy),
            "is_vpn": bool(proxy and proxy.is_vpn),
            "is_tor": bool(proxy and proxy.is_tor),
            "is_data_center": bool(proxy and proxy.is_data_center),
            "anonymization_level": proxy.anonymization_level if proxy else 0.0,
        }
        geolocation = self._analyze_geolocation(profile, previous_location, location, timestamp)
        coordination = self._analyze_coordination(user_id, ip_cluster, device_cluster, timestamp)

        category_risks = {
            "ip_analysis": self._category_risk(ip_analysis),
            "device_analysis": self._category_risk(device_analysis),
            "proxy_vpn": category_risk(proxy_vpn),
            "geolocation": category_risk(geolocation),
            "coordination": category_risk(coordination),
        }
        risk_score = weighted_average(
            RiskSignal(risk, self.config.category_weights.get(name, 0.1))
            for name, risk in category_risks.items()
        ) or 0.0

        analysis = NetworkAnalysis(
            user_id=user_id,
            timestamp=timestamp,
            fingerprint=fingerprint,
            ip_analysis=ip_analysis,
            device_analysis=device_analysis,
            proxy_vpn=proxy_vpn,
            geolocation=geolocation,
            coordination=coordination,
            category_risks=category_risks,
            risk_score=risk_score,
        )
        analysis.recommendations = self.recommendations(analysis)

        if risk_score > 0.5:
            logger.info("Suspicious network activity", user_id=user_id,
                        ip_address=info.ip_address, risk_score=round(risk_score, 3))
        return analysis

    def _category_risk(self, indicators: Dict[str, Any]) -> float:
        return category_risk(indicators, self.config.suspicious_network_threshold)

    def _touch_cluster(self, clusters: Dict[str, NetworkCluster], kind: str, key: str,
                       user_id: str, timestamp: int) -> NetworkCluster:
        cluster = clusters.get(key)
        if cluster is None:
            cluster = NetworkCluster(kind=kind, key=key, first_seen=timestamp, last_seen=timestamp)
            clusters[key] = cluster
        cluster.users.add(user_id)
        cluster.first_seen = min(cluster.first_seen, timestamp)
        cluster.last_seen = max(cluster.last_seen, timestamp)
        return cluster

    def _suspicious_device_features(self, info: NetworkInfo, location: Optional[GeoLocation]) -> List[Dict[str, Any]]:
        features = []

        marker = next((m for m in AUTOMATION_MARKERS if m in info.user_agent), None)
        if marker:
            features.append({"type": "automation_tool", "feature": "user_agent", "value": marker})

        resolution = parse_resolution(info.screen_resolution)
        if resolution:
            width, height = resolution
            if width < 800 or height < 600 or width > 4000 or height > 3000:
                features.append({"type": "unusual_resolution", "feature": "screen_resolution",
                                 "value": info.screen_resolution})

        if not info.cookies_enabled:
            features.append({"type": "privacy_feature", "feature": "cookies_disabled", "value": False})

        if info.timezone and location is not None and location.timezone and info.timezone != location.timezone:
            features.append({"type": "timezone_mismatch", "feature": "timezone",
                             "expected": location.timezone, "actual": info.timezone})

        return features

    def _spoofing_indicators(self, info: NetworkInfo) -> List[str]:
        if not info.platform or not info.user_agent:
            return []
        for prefix, tokens in PLATFORM_TOKENS.items():
            if info.platform.startswith(prefix):
                if not any(token in info.user_agent for token in tokens):
                    return ["platform_user_agent_mismatch"]
                return []
        return []

    def _analyze_geolocation(self, profile: UserProfile, previous: Optional[LocationObservation],
                             current: Optional[GeoLocation], timestamp: int) -> Dict[str, Any]:
        geo = {
            "current_location": current,
            "rapid_movement": False,
            "impossible_travel": False,
            "location_consistency": self._location_consistency(profile),
            "suspicious_jumps": [],
        }
        if previous is None or current is None:
            return geo

        distance = haversine_km(previous.location, current)
        elapsed_ms = abs(timestamp - previous.timestamp)
        if distance > 0:
            hours = elapsed_ms / 3600000
            required_speed = distance / hours if hours > 0 else math.inf
            if required_speed > self.config.max_travel_speed_kmh:
                geo["impossible_travel"] = True
                geo["suspicious_jumps"].append({
                    "from": previous.location.place_key,
                    "to": current.place_key,
                    "distance_km": round(distance, 1),
                    "time_minutes": elapsed_ms / 60000,
                    "required_speed_kmh": required_speed,
                })

        if distance > self.config.max_geo_distance_km and elapsed_ms < self.config.coordination_time_window_ms:
            geo["rapid_movement"] = True

        return geo

    def _location_consistency(self, profile: UserProfile) -> float:
        """Share of the location history at the most common place."""
        places = [obs.location.place_key for obs in profile.location_history]
        if not places:
            return 0.0
        _, most_common = TallyCounter(places).most_common(1)[0]
        return most_common / len(places)

    # --- coordination ---

    def _analyze_coordination(self, user_id: str, ip_cluster: NetworkCluster,
                              device_cluster: NetworkCluster, timestamp: int) -> Dict[str, Any]:
        with self._lock:
            candidates: Set[str] = (set(ip_cluster.users) | set(device_cluster.users)) - {user_id}

        mine = self.registry.network_snapshot(user_id)
        pair_scores = {}
        for other_id in sorted(candidates):
            theirs = self.registry.network_snapshot(other_id)
            if mine is None or theirs is None:
                continue
            pair_scores[other_id] = self.pair_coordination(mine, theirs, timestamp)

        score = max(pair_scores.values()) if pair_scores else 0.0
        coordinated_with = sorted(u for u, s in pair_scores.items() if s > self.config.coordination_threshold)
        is_coordinated = score > self.config.coordination_threshold

        if is_coordinated:
            with self._lock:
                self._coordinated_users[user_id] = timestamp
            logger.warning("Coordinated activity detected", user_id=user_id,
                           coordination_score=round(score, 3), coordinated_with=coordinated_with)

        return {
            "candidates": len(pair_scores),
            "coordination_score": score,
            "is_coordinated": is_coordinated,
            "coordinated_with": coordinated_with,
        }

    def pair_coordination(self, mine: NetworkSnapshot, theirs: NetworkSnapshot, timestamp: int) -> float:
        """Mean of cluster co-membership, timing correlation and behavioral similarity."""
        return (
            self._co_membership(mine, theirs)
            + self._timing_correlation(mine, theirs, timestamp)
            + cosine_similarity(mine.behavior_vector, theirs.behavior_vector)
        ) / 3

    def _co_membership(self, mine: NetworkSnapshot, theirs: NetworkSnapshot) -> float:
        own = {("ip", o.value) for o in mine.ip_history} | {("device", o.value) for o in mine.device_history}
        other = {("ip", o.value) for o in theirs.ip_history} | {("device", o.value) for o in theirs.device_history}
        if not own:
            return 0.0
        return len(own & other) / len(own)

    def _timing_correlation(self, mine: NetworkSnapshot, theirs: NetworkSnapshot, timestamp: int) -> float:
        since = timestamp - self.config.coordination_time_window_ms
        own = [o.timestamp for o in mine.ip_history if o.timestamp >= since]
        other = [o.timestamp for o in theirs.ip_history if o.timestamp >= since]
        if not own or not other:
            return 0.0

        tolerance = self.config.simultaneity_tolerance_ms
        matched = sum(1 for t in own if any(abs(t - u) <= tolerance for u in other))
        return matched / len(own)

    # --- batch ---

    def detect_fraud_rings(self) -> List[FraudRing]:
        """Clusters with at least min_cluster_size members, with their risk indicators."""
        rings = []
        with self._lock:
            for kind, clusters in (("ip_cluster", self._ip_clusters), ("device_cluster", self._device_clusters)):
                for key, cluster in clusters.items():
                    if cluster.member_count < self.config.min_cluster_size:
                        continue
                    rings.append(FraudRing(
                        kind=kind,
                        key=key,
                        users=tuple(sorted(cluster.users)),
                        risk_score=cluster.risk_score,
                        indicators=tuple(self._cluster_indicators(cluster)),
                    ))

        self.fraud_rings = rings
        if rings:
            logger.info("Fraud ring candidates detected", count=len(rings))
        return rings

    def _cluster_indicators(self, cluster: NetworkCluster) -> List[str]:
        indicators = []
        if cluster.member_count > self.config.suspicious_network_threshold:
            indicators.append("shared_infrastructure")
        indicators.extend(sorted({f["type"] for f in cluster.suspicious_features}))
        if any(u in self._coordinated_users for u in cluster.users):
            indicators.append("coordinated_activity")
        return indicators

    def recommendations(self, analysis: NetworkAnalysis) -> List[Recommendation]:
        recs = []
        if analysis.ip_analysis["is_proxy"] or analysis.ip_analysis["is_vpn"]:
            recs.append(Recommendation("enhanced_verification", "high",
                                       "User connecting through proxy/VPN, requires additional verification"))
        if analysis.ip_analysis["shared_users"] > 10:
            recs.append(Recommendation("investigate_ip_cluster", "medium",
                                       "High number of users from same IP address"))
        if analysis.device_analysis["automation_signs"]:
            recs.append(Recommendation("block_automated_access", "critical", "Automation tools detected"))
        if analysis.geolocation["impossible_travel"]:
            recs.append(Recommendation("immediate_review", "critical", "Impossible travel pattern detected"))
        if analysis.coordination["is_coordinated"]:
            recs.append(Recommendation("investigate_fraud_ring", "critical",
                                       "Coordinated activity detected, possible fraud ring"))
        return recs

    # --- retention ---

    def evict_stale(self, cutoff: int) -> int:
        """Drop clusters last seen before the cutoff. Returns the number removed."""
        removed = 0
        with self._lock:
            for clusters in (self._ip_clusters, self._device_clusters):
                stale = [key for key, c in clusters.items() if c.last_seen < cutoff]
                for key in stale:
                    del clusters[key]
                removed += len(stale)
            self._coordinated_users = {u: ts for u, ts in self._coordinated_users.items() if ts >= cutoff}
        return removed
