#!/usr/bin/env python3
"""
Betting Activity Event Generator

Generates synthetic user-activity events for the risk monitor.
Features:
- Bets, logins, location changes and device switches per user
- Suspicious users with high-value bets, repeated logins, rapid location
  changes, device switching and shared or automated infrastructure
- Optional pointer/keystroke/touch/scroll interaction events
- Network information with a stable per-user fingerprint
"""

import os
import sys
import random
from typing import Dict, Any, List, Optional
import logging

import click
from faker import Faker
import numpy as np

# Add parent directory to path for imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from generators.base_generator import BaseEventGenerator, TimestampMixin, UserPool

logger = logging.getLogger(__name__)

NORMAL_EVENT_WEIGHTS = {
    'bet_placed': 0.70,
    'login': 0.20,
    'location_change': 0.07,
    'device_switch': 0.03,
}

SUSPICIOUS_EVENT_WEIGHTS = {
    'bet_placed': 0.45,
    'login': 0.20,
    'location_change': 0.20,
    'device_switch': 0.15,
}

AUTOMATION_USER_AGENTS = [
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) HeadlessChrome/120.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) Selenium/4.15 WebDriver',
]

SCREEN_RESOLUTIONS = ['1920x1080', '1366x768', '1536x864', '2560x1440', '390x844']


class ActivityGenerator(BaseEventGenerator, TimestampMixin):
    """Generates betting-platform activity events with suspicious patterns."""

    def __init__(self, **kwargs):
        self.suspicious_share = kwargs.pop('suspicious_share', 0.2)
        self.biometric_rate = kwargs.pop('biometric_rate', 0.0)
        self.user_pool = kwargs.pop('user_pool', None) or UserPool()

        super().__init__(
            topic="activity.events",
            **kwargs
        )

        self.fake = Faker()
        Faker.seed(42)  # Reproducible fake data

        self.cities = [self.fake.city() for _ in range(20)]
        # Suspicious users share a handful of addresses
        self.shared_ips = [self.fake.ipv4_public() for _ in range(3)]
        self.networks: Dict[str, Dict[str, Any]] = {}
        self.locations: Dict[str, str] = {}

        logger.info(f"Initialized ActivityGenerator with {len(self.user_pool.user_ids)} users "
                    f"and {len(self.user_pool.suspicious_ids)} suspicious users")

    def generate_event(self) -> Dict[str, Any]:
        """Generate a single activity event."""
        user_id = self.user_pool.pick_user(self.suspicious_share)

        if self.biometric_rate and random.random() < self.biometric_rate:
            return self.generate_biometric_event(user_id)

        suspicious = self.user_pool.is_suspicious(user_id)
        weights = SUSPICIOUS_EVENT_WEIGHTS if suspicious else NORMAL_EVENT_WEIGHTS
        event_type = random.choices(list(weights.keys()), weights=list(weights.values()))[0]

        event = {
            'user_id': user_id,
            'type': event_type,
            'timestamp': self.current_timestamp_ms(),
            'network': self._network_for(user_id),
        }

        if event_type == 'bet_placed':
            event['amount'] = self._bet_amount(suspicious)
            event['match_id'] = f"match_{random.randint(1, 500):04d}"
        elif event_type == 'login':
            event['login_attempts'] = random.randint(4, 8) if suspicious else random.choice([1, 1, 1, 2])
        elif event_type == 'location_change':
            previous = self.locations.get(user_id) or random.choice(self.cities)
            current = random.choice([c for c in self.cities if c != previous])
            self.locations[user_id] = current
            event['previous_location'] = previous
            event['current_location'] = current
        elif event_type == 'device_switch':
            event['previous_device'] = self.user_pool.device_for(user_id)
            event['current_device'] = self.user_pool.switch_device(user_id)

        return event

    def generate_biometric_event(self, user_id: str) -> Dict[str, Any]:
        """Generate one interaction event (pointer, keystroke, touch or scroll)."""
        kind = random.choice(['mouse_move', 'keystroke', 'touch', 'scroll'])
        event = {'user_id': user_id, 'type': kind, 'timestamp': self.current_timestamp_ms()}

        if kind == 'mouse_move':
            event.update(x=random.uniform(0, 1920), y=random.uniform(0, 1080))
        elif kind == 'keystroke':
            event.update(key=self.fake.random_letter(), action=random.choice(['keydown', 'keyup']))
        elif kind == 'touch':
            event.update(
                x=random.uniform(0, 390), y=random.uniform(0, 844),
                phase=random.choice(['touchstart', 'touchmove', 'touchend']),
                pressure=round(random.uniform(0.2, 0.9), 3),
                area=round(random.uniform(10, 40), 1),
            )
        else:
            event.update(delta_x=0.0, delta_y=random.choice([-1, 1]) * random.uniform(20, 200))

        return event

    def _bet_amount(self, suspicious: bool) -> float:
        """Log-normal stakes; suspicious users bet above the high-value threshold."""
        if suspicious and random.random() < 0.6:
            return round(float(np.random.uniform(1500, 5000)), 2)
        return round(float(min(np.random.lognormal(mean=3.5, sigma=0.8), 900.0)), 2)

    def _network_for(self, user_id: str) -> Dict[str, Any]:
        """Stable connection details per user; suspicious users share IPs and automation agents."""
        if user_id not in self.networks:
            suspicious = self.user_pool.is_suspicious(user_id)
            self.networks[user_id] = {
                'ip_address': random.choice(self.shared_ips) if suspicious else self.fake.ipv4_public(),
                'user_agent': random.choice(AUTOMATION_USER_AGENTS) if suspicious else self.fake.user_agent(),
                'screen_resolution': random.choice(SCREEN_RESOLUTIONS),
                'timezone': self.fake.timezone(),
                'language': random.choice(['en-US', 'en-GB', 'de-DE', 'fr-FR']),
                'platform': random.choice(['Win32', 'MacIntel', 'Linux x86_64']),
                'color_depth': 24,
                'plugins': [],
                'cookies_enabled': not suspicious,
            }
        return dict(self.networks[user_id])

    def get_partition_key(self, event: Dict[str, Any]) -> str:
        """Use user_id as partition key so a user's events stay ordered."""
        return event['user_id']


@click.command()
@click.option('--events-per-second', '-r', default=10.0, help='Events per second to generate')
@click.option('--duration', '-d', default=None, type=int, help='Duration in seconds (infinite if not set)')
@click.option('--suspicious-share', '-s', default=0.2, help='Share of events from suspicious users (0.0-1.0)')
@click.option('--biometric-rate', default=0.0, help='Share of interaction (biometric) events (0.0-1.0)')
@click.option('--bootstrap-servers', '-b', default='localhost:9092', help='Kafka bootstrap servers')
@click.option('--metrics-port', default=None, type=int, help='Port for metrics server (optional)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose logging')
def main(events_per_second, duration, suspicious_share, biometric_rate, bootstrap_servers, metrics_port, verbose):
    """Betting activity event generator for the risk monitor."""

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        generator = ActivityGenerator(
            events_per_second=events_per_second,
            duration_seconds=duration,
            suspicious_share=suspicious_share,
            biometric_rate=biometric_rate,
            bootstrap_servers=bootstrap_servers,
            metrics_port=metrics_port
        )

        generator.run()

    except Exception as e:
        logger.error(f"Generator failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
