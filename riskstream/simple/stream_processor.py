#!/usr/bin/env python3
"""
Risk Monitor Stream Processor

Feeds activity events into the real-time risk monitor, either from Kafka
(JSON values) or from the in-process activity generator in simulation mode.

Features:
- Per-event risk scoring and alerting
- Periodic aggregate risk and cleanup sweeps
- Optional Redis snapshot sink and alert webhook
- Metrics and monitoring

Use simulation mode for development without Kafka.
"""

import os
import sys
import logging
from typing import Any, Iterable, Optional

# Add project root to path (go up two levels from riskstream/simple/ to project root)
sys.path.append(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from kafka import KafkaConsumer
import click
import structlog
from prometheus_client import start_http_server

from riskstream.core.models.config import MonitorConfig, StreamConfig
from riskstream.core.models.events import InvalidEventError
from riskstream.core.monitor import RealTimeRiskMonitor
from riskstream.core.sinks.redis_sink import RiskSnapshotSink
from generators.activitygen import ActivityGenerator

logger = structlog.get_logger(__name__)


def configure_logging(verbose: bool = False):
    """JSON structured logs through the stdlib root logger."""
    level = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class StreamProcessor:
    """Drives the risk monitor from a Kafka topic or a simulated feed."""

    def __init__(
        self,
        config: StreamConfig,
        monitor_config: Optional[MonitorConfig] = None,
        monitor: Optional[RealTimeRiskMonitor] = None,
        feed: Optional[Iterable[Any]] = None,
        snapshot_sink: Optional[RiskSnapshotSink] = None,
    ):
        self.config = config
        self.running = False
        self.consumer = None

        if snapshot_sink is None and config.redis_host:
            snapshot_sink = RiskSnapshotSink(host=config.redis_host, port=config.redis_port, db=config.redis_db)
        self.snapshot_sink = snapshot_sink

        sinks = [snapshot_sink] if snapshot_sink else []
        self.monitor = monitor or RealTimeRiskMonitor(monitor_config or MonitorConfig.from_env(), alert_sinks=sinks)
        if snapshot_sink:
            self.monitor.subscribe_scores(snapshot_sink.write_score)
        self.monitor.subscribe_alerts(self._log_alert)

        if feed is not None:
            self.feed = feed
        elif config.simulate:
            generator = ActivityGenerator(events_per_second=config.simulation_events_per_second)
            self.feed = generator.iter_events(paced=True)
        else:
            self.consumer = KafkaConsumer(
                *config.topics,
                bootstrap_servers=config.kafka_bootstrap_servers,
                group_id=config.consumer_group,
                enable_auto_commit=True,
                auto_offset_reset='latest'
            )
            self.feed = self.consumer

        logger.info("Stream processor initialized",
                    simulate=config.simulate,
                    topics=config.topics,
                    consumer_group=config.consumer_group)

    def _log_alert(self, alert):
        logger.info("Alert", alert_id=alert.alert_id, user_id=alert.user_id,
                    severity=alert.severity.value, risk_score=round(alert.risk_score, 3))

    def start(self, max_events: Optional[int] = None):
        """Start the monitor and process the feed until stopped or exhausted."""
        self.running = True

        if self.config.metrics_port:
            start_http_server(self.config.metrics_port)
            logger.info(f"Metrics server started on port {self.config.metrics_port}")

        self.monitor.start()
        logger.info("Starting stream processor...")

        processed = 0
        try:
            for message in self.feed:
                if not self.running:
                    break

                self.process_message(message)
                processed += 1
                if max_events is not None and processed >= max_events:
                    break

        except KeyboardInterrupt:
            logger.info("Received interrupt signal")
        finally:
            self.stop()

    def stop(self):
        """Stop consuming and shut the monitor down."""
        if not self.running:
            return
        self.running = False
        if self.consumer is not None:
            self.consumer.close()
        self.monitor.stop()
        logger.info("Stream processor stopped", stats=self.monitor.get_monitoring_stats())

    def process_message(self, message) -> bool:
        """Ingest one feed record. Returns False if it was rejected or failed."""
        value = getattr(message, 'value', message)
        try:
            self.monitor.ingest(value)
            return True
        except InvalidEventError:
            # Counted and logged by the monitor
            return False
        except Exception as e:
            logger.error("Error processing message", error=str(e))
            return False


@click.command()
@click.option('--kafka-servers', default='localhost:9092', help='Kafka bootstrap servers')
@click.option('--consumer-group', default='risk-monitor', help='Kafka consumer group')
@click.option('--topics', default='activity.events', help='Comma-separated topic list')
@click.option('--redis-host', default=None, help='Redis host for risk snapshots (optional)')
@click.option('--simulate', is_flag=True, help='Use the built-in activity generator instead of Kafka')
@click.option('--events-per-second', default=5.0, help='Simulated event rate')
@click.option('--alert-threshold', default=None, type=float, help='Override the alert threshold')
@click.option('--webhook-url', default=None, help='Alert webhook URL')
@click.option('--metrics-port', default=8000, help='Metrics server port (0 disables it)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose logging')
def main(kafka_servers, consumer_group, topics, redis_host, simulate, events_per_second,
         alert_threshold, webhook_url, metrics_port, verbose):
    """Run the real-time risk monitor over an activity event stream."""

    configure_logging(verbose)

    monitor_config = MonitorConfig.from_env()
    if alert_threshold is not None:
        monitor_config.alerts.alert_threshold = alert_threshold
    if webhook_url:
        monitor_config.alerts.webhook_url = webhook_url

    config = StreamConfig(
        kafka_bootstrap_servers=kafka_servers,
        consumer_group=consumer_group,
        topics=topics.split(','),
        redis_host=redis_host,
        simulate=simulate,
        simulation_events_per_second=events_per_second,
        metrics_port=metrics_port
    )

    processor = StreamProcessor(config, monitor_config)

    try:
        processor.start()
    except Exception as e:
        logger.error("Stream processor failed", error=str(e))
        raise


if __name__ == '__main__':
    main()
