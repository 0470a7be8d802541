"""
Configuration models for the risk monitor.

Centralized configuration for the ingestion pipeline, the risk signal
sources, alerting and retention. Supports environment-based overrides.
"""

import os
from typing import Dict, List, Optional
from dataclasses import dataclass, field
from pydantic import BaseModel, Field


class ActivityConfig(BaseModel):
    """Per-user activity metrics and the activity risk calculators."""

    velocity_window_ms: int = Field(default=60000, description="Trailing window for velocity counts")
    max_normal_velocity: int = Field(default=10, description="Events per velocity window considered normal")
    high_value_bet_threshold: float = Field(default=1000.0, description="Bet amount flagged as high value")
    rapid_location_change_ms: int = Field(default=300000, description="Gap below which location changes are rapid")
    max_login_attempts: int = Field(default=3, description="Login attempts above which a login is suspicious")
    suspicious_action_retention_ms: int = Field(default=86400000, description="Suspicious action retention")

    calculator_weights: Dict[str, float] = Field(
        default_factory=lambda: {
            "velocity": 0.25,
            "pattern": 0.30,
            "location": 0.20,
            "device": 0.15,
            "behavior": 0.10,
        },
        description="Weight of each activity risk calculator"
    )


class NetworkConfig(BaseModel):
    """Network correlation analysis configuration."""

    suspicious_network_threshold: int = Field(default=5, description="Members above which an IP is shared")
    max_geo_distance_km: float = Field(default=100.0, description="Distance flagged as rapid movement")
    max_travel_speed_kmh: float = Field(default=1000.0, description="Commercial flight speed ceiling")
    coordination_time_window_ms: int = Field(default=300000, description="Coordination window")
    coordination_threshold: float = Field(default=0.7, description="Pair score above which users are coordinated")
    min_cluster_size: int = Field(default=3, description="Minimum members for a fraud ring candidate")
    max_history_size: int = Field(default=100, description="Per-user network history length")
    simultaneity_tolerance_ms: int = Field(default=10000, description="Max gap for simultaneous observations")

    category_weights: Dict[str, float] = Field(
        default_factory=lambda: {
            "ip_analysis": 0.25,
            "device_analysis": 0.20,
            "proxy_vpn": 0.20,
            "geolocation": 0.15,
            "coordination": 0.20,
        },
        description="Weight of each network risk category"
    )


class BiometricConfig(BaseModel):
    """Behavioral biometrics configuration."""

    similarity_threshold: float = Field(default=0.85, description="Similarity below which a modality is suspicious")
    authentic_margin: float = Field(default=0.2, description="Band below threshold still judged authentic")
    min_data_points: int = Field(default=100, description="Samples required before a modality contributes")
    sudden_change_threshold: float = Field(default=0.3, description="Recent vs earlier snapshot deviation")
    max_pointer_speed_px_s: float = Field(default=10000.0, description="Physically implausible pointer speed")
    impossible_velocity_ratio: float = Field(default=0.1, description="Share of implausible pointer samples")
    timing_consistency_threshold: float = Field(default=0.9, description="Keystroke consistency flagged as scripted")
    baseline_learning_rate: float = Field(default=0.2, description="Weight of a new session in the baseline")
    outlier_z_score: float = Field(default=2.0, description="Composite score z-score treated as outlier")
    session_idle_timeout_ms: int = Field(default=120000, description="Sample gap after which a session is ended")

    modality_weights: Dict[str, float] = Field(
        default_factory=lambda: {
            "mouse": 0.30,
            "keystroke": 0.35,
            "touch": 0.25,
            "scroll": 0.10,
        },
        description="Weight of each modality in the composite biometric score"
    )
    analysis_intervals: Dict[str, int] = Field(
        default_factory=lambda: {
            "mouse": 50,
            "keystroke": 20,
            "touch": 30,
            "scroll": 15,
        },
        description="Samples between interaction-pattern snapshots"
    )


class AlertConfig(BaseModel):
    """Alerting configuration."""

    alert_threshold: float = Field(default=0.7, description="Composite score that raises an alert")
    webhook_url: Optional[str] = Field(default=None, description="Alert webhook endpoint")
    webhook_timeout_seconds: float = Field(default=5.0, description="Webhook request timeout")
    max_delivery_attempts: int = Field(default=3, description="Delivery attempts per sink")
    alert_on_aggregate: bool = Field(default=False, description="Let aggregate risk raise alerts")
    max_alert_queue: int = Field(default=1000, description="In-memory alert queue length")


class RetentionConfig(BaseModel):
    """Sliding window and cleanup configuration."""

    monitoring_window_ms: int = Field(default=300000, description="Monitoring window (5 minutes)")
    max_events: int = Field(default=10000, description="Event buffer size before oldest are dropped")
    fast_sweep_interval_seconds: float = Field(default=30.0, description="Aggregate risk interval")
    slow_sweep_interval_seconds: float = Field(default=300.0, description="Cleanup interval")
    risk_history_retention_ms: int = Field(default=86400000, description="Risk history retention")


class MonitorConfig(BaseModel):
    """Complete risk monitor configuration."""

    activity: ActivityConfig = Field(default_factory=ActivityConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    biometric: BiometricConfig = Field(default_factory=BiometricConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)

    category_weights: Dict[str, float] = Field(
        default_factory=lambda: {
            "activity": 0.30,
            "network": 0.20,
            "biometric": 0.15,
        },
        description="Weight of each signal category in the composite score"
    )
    enabled_categories: List[str] = Field(
        default_factory=lambda: ["activity", "network", "biometric"],
        description="Signal categories active in the composite score"
    )

    lookup_timeout_seconds: float = Field(default=2.0, description="Timeout for external lookups")
    max_workers: int = Field(default=8, description="Worker threads for signals, lookups and delivery")

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from environment variables."""
        config = cls()

        if os.getenv("RISK_ALERT_THRESHOLD"):
            config.alerts.alert_threshold = float(os.getenv("RISK_ALERT_THRESHOLD"))
        if os.getenv("RISK_ALERT_WEBHOOK"):
            config.alerts.webhook_url = os.getenv("RISK_ALERT_WEBHOOK")
        if os.getenv("RISK_ALERT_ON_AGGREGATE"):
            config.alerts.alert_on_aggregate = os.getenv("RISK_ALERT_ON_AGGREGATE").lower() == "true"

        if os.getenv("RISK_MONITORING_WINDOW_MS"):
            config.retention.monitoring_window_ms = int(os.getenv("RISK_MONITORING_WINDOW_MS"))
        if os.getenv("RISK_MAX_EVENTS"):
            config.retention.max_events = int(os.getenv("RISK_MAX_EVENTS"))

        if os.getenv("RISK_LOOKUP_TIMEOUT"):
            config.lookup_timeout_seconds = float(os.getenv("RISK_LOOKUP_TIMEOUT"))
        if os.getenv("RISK_ENABLED_CATEGORIES"):
            config.enabled_categories = [
                c.strip() for c in os.getenv("RISK_ENABLED_CATEGORIES").split(",") if c.strip()
            ]

        return config


@dataclass
class StreamConfig:
    """Configuration for the stream processor entrypoint."""

    # Kafka settings
    kafka_bootstrap_servers: str = "localhost:9092"
    consumer_group: str = "risk-monitor"
    topics: List[str] = field(default_factory=lambda: ["activity.events"])

    # Redis settings (optional snapshot sink)
    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_db: int = 0

    # Simulation feed
    simulate: bool = False
    simulation_events_per_second: float = 5.0

    # Monitoring
    metrics_port: int = 8000
