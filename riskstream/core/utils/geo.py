"""
Geolocation utilities.

Great-circle distance plus the geolocation lookup capability consumed by the
network analyzer. Lookups are external collaborators: the monitor only sees
`lookup(ip_address) -> GeoLocation | None`.
"""

import math
from typing import Dict, Optional, Protocol

import requests
import structlog

from riskstream.core.models.state import GeoLocation

logger = structlog.get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Optional[GeoLocation], b: Optional[GeoLocation]) -> float:
    """Distance between two locations in kilometres (0 if either is unknown)."""
    if a is None or b is None:
        return 0.0

    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.latitude)) * math.cos(math.radians(b.latitude)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class GeoLookup(Protocol):
    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        ...


class NullGeoLookup:
    """Lookup that never resolves; every location is unknown."""

    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        return None


class StaticGeoLookup:
    """Lookup backed by a fixed IP -> location table."""

    def __init__(self, table: Dict[str, GeoLocation]):
        self.table = dict(table)

    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        return self.table.get(ip_address)


class HttpGeoLookup:
    """Lookup against an ip-api style JSON endpoint (`{base_url}/{ip}`)."""

    def __init__(self, base_url: str = "http://ip-api.com/json", timeout: float = 2.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def lookup(self, ip_address: str) -> Optional[GeoLocation]:
        response = requests.get(f"{self.base_url}/{ip_address}", timeout=self.timeout)
        if response.status_code != 200:
            logger.warning("Geolocation service returned error",
                           status=response.status_code, ip_address=ip_address)
            return None

        data = response.json()
        if data.get("status") == "fail" or data.get("lat") is None or data.get("lon") is None:
            return None

        return GeoLocation(
            country=data.get("countryCode"),
            region=data.get("region"),
            city=data.get("city"),
            latitude=float(data["lat"]),
            longitude=float(data["lon"]),
            timezone=data.get("timezone"),
        )
