#!/usr/bin/env python3
"""
Base generator class for synthetic activity feeds.

This module provides common functionality for all event generators:
- Kafka producer configuration (JSON values, user-id keys)
- Rate limiting
- In-process iteration for simulation mode
- Metrics and monitoring
"""

import json
import time
import uuid
import random
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Any, Iterator, Optional, List
import logging

from kafka import KafkaProducer
from prometheus_client import Counter, Gauge, Histogram, start_http_server


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

GENERATOR_EVENTS = Counter(
    'generator_events_total',
    'Total number of events generated',
    ['generator_type', 'topic', 'status']
)
GENERATOR_RATE = Gauge(
    'generator_events_per_second',
    'Current event generation rate',
    ['generator_type', 'topic']
)
GENERATION_DURATION = Histogram(
    'generator_event_generation_duration_seconds',
    'Time taken to generate a single event',
    ['generator_type', 'topic']
)


class BaseEventGenerator(ABC):
    """Base class for all event generators."""

    def __init__(
        self,
        topic: str,
        bootstrap_servers: str = "localhost:9092",
        events_per_second: float = 10.0,
        duration_seconds: Optional[int] = None,
        metrics_port: Optional[int] = None
    ):
        """
        Initialize the event generator.

        Args:
            topic: Kafka topic to produce to
            bootstrap_servers: Kafka broker addresses
            events_per_second: Target event generation rate
            duration_seconds: How long to run (None = infinite)
            metrics_port: Port for the Prometheus endpoint (None = no server)
        """
        self.topic = topic
        self.bootstrap_servers = bootstrap_servers
        self.events_per_second = events_per_second
        self.duration_seconds = duration_seconds
        self.metrics_port = metrics_port

        # Created on first use so simulation mode never needs a broker
        self.producer = None

        # Statistics
        self.events_produced = 0
        self.start_time = None
        self.errors = 0

    def _create_producer(self) -> KafkaProducer:
        """Create the Kafka producer."""
        return KafkaProducer(
            bootstrap_servers=self.bootstrap_servers.split(','),
            value_serializer=lambda v: json.dumps(v).encode('utf-8'),
            key_serializer=lambda k: k.encode('utf-8') if k else None,
            acks='all',  # Wait for all replicas
            retries=3,
            max_in_flight_requests_per_connection=1,  # Per-user ordering
            linger_ms=10,
        )

    @abstractmethod
    def generate_event(self) -> Dict[str, Any]:
        """Generate a single event. Must be implemented by subclasses."""
        pass

    @abstractmethod
    def get_partition_key(self, event: Dict[str, Any]) -> str:
        """Get the partition key for an event. Must be implemented by subclasses."""
        pass

    def _on_send_success(self, record_metadata):
        """Callback for successful sends."""
        self.events_produced += 1

        generator_type = self.__class__.__name__
        GENERATOR_EVENTS.labels(
            generator_type=generator_type,
            topic=self.topic,
            status='success'
        ).inc()

        if self.events_produced % 1000 == 0:
            elapsed = time.time() - self.start_time
            rate = self.events_produced / elapsed
            GENERATOR_RATE.labels(
                generator_type=generator_type,
                topic=self.topic
            ).set(rate)
            logger.info(f"Produced {self.events_produced} events, rate: {rate:.1f}/sec")

    def _on_send_error(self, ex):
        """Callback for send errors."""
        self.errors += 1

        GENERATOR_EVENTS.labels(
            generator_type=self.__class__.__name__,
            topic=self.topic,
            status='error'
        ).inc()

        logger.error(f"Failed to send event: {ex}")

    def produce_event(self, event: Dict[str, Any]) -> None:
        """Send a single event to Kafka."""
        if self.producer is None:
            self.producer = self._create_producer()

        try:
            key = self.get_partition_key(event)
            future = self.producer.send(
                self.topic,
                key=key,
                value=event
            )
            future.add_callback(self._on_send_success)
            future.add_errback(self._on_send_error)

        except Exception as e:
            logger.error(f"Failed to produce event: {e}")
            self.errors += 1

    def iter_events(self, limit: Optional[int] = None, paced: bool = False) -> Iterator[Dict[str, Any]]:
        """
        Yield generated events in-process instead of producing to Kafka.

        Args:
            limit: Number of events to yield (None = infinite)
            paced: Sleep between events to honour events_per_second
        """
        delay = 1.0 / self.events_per_second if paced and self.events_per_second > 0 else 0
        produced = 0
        while limit is None or produced < limit:
            yield self.generate_event()
            produced += 1
            if delay > 0:
                time.sleep(delay)

    def run(self) -> None:
        """Main execution loop."""
        logger.info(f"Starting {self.__class__.__name__}")
        logger.info(f"Target rate: {self.events_per_second} events/sec")
        logger.info(f"Topic: {self.topic}")
        logger.info(f"Duration: {self.duration_seconds}s" if self.duration_seconds else "Duration: infinite")

        # Start metrics server if port specified
        if self.metrics_port:
            start_http_server(self.metrics_port)
            logger.info(f"Metrics server started on port {self.metrics_port}")

        self.producer = self._create_producer()
        self.start_time = time.time()

        try:
            delay = 1.0 / self.events_per_second if self.events_per_second > 0 else 0

            while True:
                # Check duration limit
                if self.duration_seconds:
                    elapsed = time.time() - self.start_time
                    if elapsed >= self.duration_seconds:
                        logger.info(f"Reached duration limit of {self.duration_seconds}s")
                        break

                with GENERATION_DURATION.labels(
                    generator_type=self.__class__.__name__,
                    topic=self.topic
                ).time():
                    event = self.generate_event()
                    self.produce_event(event)

                # Rate limiting
                if delay > 0:
                    time.sleep(delay)

        except KeyboardInterrupt:
            logger.info("Received interrupt signal, shutting down...")

        finally:
            logger.info("Flushing producer...")
            self.producer.flush(timeout=30)
            self.producer.close()

            elapsed = time.time() - self.start_time
            avg_rate = self.events_produced / elapsed if elapsed > 0 else 0

            logger.info("="*50)
            logger.info(f"Generator completed:")
            logger.info(f"  Events produced: {self.events_produced}")
            logger.info(f"  Errors: {self.errors}")
            logger.info(f"  Duration: {elapsed:.1f}s")
            logger.info(f"  Average rate: {avg_rate:.1f} events/sec")
            logger.info("="*50)


class TimestampMixin:
    """Mixin for adding timestamp utilities."""

    @staticmethod
    def current_timestamp_ms() -> int:
        """Get current timestamp in milliseconds."""
        return int(datetime.now(timezone.utc).timestamp() * 1000)


class UserPool:
    """Stable user population with per-user home device and IP address."""

    def __init__(self, normal_users: int = 50, suspicious_users: int = 5):
        self.user_ids: List[str] = [f"user_{i:03d}" for i in range(normal_users)]
        self.suspicious_ids: List[str] = [f"suspicious_user_{i:03d}" for i in range(suspicious_users)]
        self.devices: Dict[str, str] = {}

    def pick_user(self, suspicious_share: float = 0.2) -> str:
        """Pick a user, suspicious ones with the given probability."""
        if self.suspicious_ids and random.random() < suspicious_share:
            return random.choice(self.suspicious_ids)
        return random.choice(self.user_ids)

    def is_suspicious(self, user_id: str) -> bool:
        return user_id.startswith("suspicious_")

    def device_for(self, user_id: str) -> str:
        """The user's current device, created on first use."""
        if user_id not in self.devices:
            self.devices[user_id] = f"dev_{uuid.uuid4().hex[:12]}"
        return self.devices[user_id]

    def switch_device(self, user_id: str) -> str:
        self.devices[user_id] = f"dev_{uuid.uuid4().hex[:12]}"
        return self.devices[user_id]
