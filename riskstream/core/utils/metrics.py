"""
Shared Prometheus metrics for the risk monitor.

This module provides centralized metric definitions to avoid
duplicate registrations across different components.
"""

from prometheus_client import Counter, Gauge, Histogram

# Ingestion metrics
EVENTS_INGESTED = Counter(
    'risk_events_ingested_total',
    'Total events received at the ingest boundary',
    ['event_type', 'status']
)

EVENTS_DROPPED = Counter(
    'risk_events_dropped_total',
    'Events dropped because the event buffer was full'
)

EVENT_STORE_SIZE = Gauge(
    'risk_event_store_size',
    'Events currently held in the event store'
)

ACTIVE_USERS = Gauge(
    'risk_active_users',
    'User profiles currently tracked'
)

PROCESSING_DURATION = Histogram(
    'risk_processing_duration_seconds',
    'Time spent evaluating a single event',
    ['event_type']
)

# Signal metrics
CALCULATOR_FAILURES = Counter(
    'risk_calculator_failures_total',
    'Risk calculators excluded from a composite because they failed',
    ['calculator']
)

LOOKUP_FAILURES = Counter(
    'risk_lookup_failures_total',
    'External lookups that timed out or failed',
    ['lookup']
)

RISK_SCORE_DISTRIBUTION = Histogram(
    'risk_score_distribution',
    'Distribution of composite risk scores',
    buckets=[0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]
)

# Alert metrics
ALERTS_FIRED = Counter(
    'risk_alerts_fired_total',
    'Alerts raised by severity',
    ['severity', 'source']
)

ALERT_DELIVERIES = Counter(
    'risk_alert_deliveries_total',
    'Alert deliveries to external sinks',
    ['sink', 'status']
)

# Retention metrics
SWEEP_DURATION = Histogram(
    'risk_sweep_duration_seconds',
    'Time spent in periodic sweeps',
    ['sweep']
)

EVICTIONS = Counter(
    'risk_evictions_total',
    'Entries removed by retention sweeps',
    ['store']
)
