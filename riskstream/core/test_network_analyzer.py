#!/usr/bin/env python3
"""
Tests for network correlation analysis.

External lookups are replaced with static tables so results are deterministic.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from riskstream.core.models.config import NetworkConfig
from riskstream.core.models.events import BetPlacedEvent, LoginEvent, NetworkInfo
from riskstream.core.models.state import GeoLocation
from riskstream.core.processors.network import NetworkCorrelationAnalyzer, category_risk, device_fingerprint
from riskstream.core.processors.scoring import InsufficientDataError
from riskstream.core.stores.event_store import EventStore
from riskstream.core.stores.profile_registry import UserProfileRegistry
from riskstream.core.utils.geo import StaticGeoLookup, haversine_km
from riskstream.core.utils.lookups import StaticProxyClassifier, guarded_call

BASE_TIME = 1_700_000_000_000

LONDON = GeoLocation("GB", "England", "London", 51.5074, -0.1278, "Europe/London")
NEW_YORK = GeoLocation("US", "New York", "New York", 40.7128, -74.0060, "America/New_York")

CHROME_WINDOWS = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


def network(ip_address: str = "203.0.113.10", **overrides) -> NetworkInfo:
    fields = {
        "ip_address": ip_address,
        "user_agent": CHROME_WINDOWS,
        "screen_resolution": "1920x1080",
        "timezone": "Europe/London",
        "language": "en-GB",
        "platform": "Win32",
        "color_depth": 24,
        "plugins": ["pdf", "widevine"],
        "cookies_enabled": True,
    }
    fields.update(overrides)
    return NetworkInfo(**fields)


def make_analyzer(config=None, geo=None, proxies=None, lookup_timeout=1.0):
    store = EventStore(clock=lambda: BASE_TIME)
    registry = UserProfileRegistry(store)
    analyzer = NetworkCorrelationAnalyzer(
        registry,
        config or NetworkConfig(),
        geo_lookup=geo,
        proxy_classifier=proxies,
        executor=ThreadPoolExecutor(max_workers=4),
        lookup_timeout=lookup_timeout,
    )
    return store, registry, analyzer


def test_fingerprint_is_deterministic():
    """Identical characteristics hash identically; any single change alters the hash."""
    print("🧪 Testing device fingerprinting...")

    a = network()
    b = NetworkInfo.model_validate({
        "cookiesEnabled": True,
        "plugins": ["widevine", "pdf"],
        "colorDepth": 24,
        "platform": "Win32",
        "language": "en-GB",
        "timezone": "Europe/London",
        "screenResolution": "1920x1080",
        "userAgent": CHROME_WINDOWS,
        "ipAddress": "198.51.100.7",
    })

    assert device_fingerprint(a) == device_fingerprint(b)
    assert len(device_fingerprint(a)) == 64
    assert device_fingerprint(a) != device_fingerprint(network(screen_resolution="1366x768"))
    assert device_fingerprint(a) != device_fingerprint(network(cookies_enabled=False))

    print(f"  📝 Fingerprint: {device_fingerprint(a)[:16]}...")
    print("  ✅ Fingerprint tests passed!")


def test_shared_ip_threshold():
    """Six users behind one IP are flagged shared; five are not."""
    print("🧪 Testing shared IP detection...")

    _, _, analyzer = make_analyzer()
    results = [
        analyzer.analyze(f"user_{i:03d}", network("203.0.113.10"), BASE_TIME + i * 1000)
        for i in range(6)
    ]

    assert results[4].ip_analysis["shared_users"] == 5
    assert results[4].ip_analysis["is_shared_ip"] is False
    assert results[5].ip_analysis["shared_users"] == 6
    assert results[5].ip_analysis["is_shared_ip"] is True
    assert analyzer.get_ip_cluster("203.0.113.10").member_count == 6

    print(f"  📊 Network risk with 6 users: {results[5].risk_score:.3f}")
    print("  ✅ Shared IP tests passed!")


def test_impossible_travel_detected():
    geo = StaticGeoLookup({"203.0.113.10": LONDON, "198.51.100.7": NEW_YORK})
    _, registry, analyzer = make_analyzer(geo=geo)

    analyzer.analyze("user_001", network("203.0.113.10"), BASE_TIME)
    analysis = analyzer.analyze("user_001", network("198.51.100.7"), BASE_TIME + 60 * 60 * 1000)

    jump = analysis.geolocation["suspicious_jumps"][0]
    assert haversine_km(LONDON, NEW_YORK) == pytest.approx(5570, rel=0.01)
    assert analysis.geolocation["impossible_travel"] is True
    assert jump["required_speed_kmh"] > 1000
    assert analysis.category_risks["geolocation"] >= 0.8
    assert "immediate_review" in [r.action for r in analysis.recommendations]
    assert [o.location.city for o in registry.get("user_001").location_history] == ["London", "New York"]


def test_plausible_travel_not_flagged():
    geo = StaticGeoLookup({"203.0.113.10": LONDON, "198.51.100.7": NEW_YORK})
    _, _, analyzer = make_analyzer(geo=geo)

    analyzer.analyze("user_001", network("203.0.113.10"), BASE_TIME)
    analysis = analyzer.analyze("user_001", network("198.51.100.7"), BASE_TIME + 8 * 60 * 60 * 1000)

    assert analysis.geolocation["impossible_travel"] is False
    assert analysis.geolocation["rapid_movement"] is False


def test_proxy_classification_raises_risk():
    proxies = StaticProxyClassifier(vpns=["198.51.100.7"], tor_exits=["192.0.2.66"])
    _, _, analyzer = make_analyzer(proxies=proxies)

    clean = analyzer.analyze("user_001", network("203.0.113.10"), BASE_TIME)
    vpn = analyzer.analyze("user_002", network("198.51.100.7"), BASE_TIME)
    tor = analyzer.analyze("user_003", network("192.0.2.66"), BASE_TIME)

    assert clean.proxy_vpn["known"] is True
    assert clean.category_risks["proxy_vpn"] == 0.0
    assert vpn.proxy_vpn["is_vpn"] is True
    assert vpn.category_risks["proxy_vpn"] == pytest.approx(0.3)
    assert tor.category_risks["proxy_vpn"] == pytest.approx(0.8)
    assert "enhanced_verification" in [r.action for r in vpn.recommendations]


def test_lookup_timeout_treated_as_unknown():
    """A slow geolocation lookup is substituted with an unknown location."""
    print("🧪 Testing lookup timeout...")

    class SlowGeoLookup:
        def lookup(self, ip_address):
            time.sleep(0.5)
            return LONDON

    _, _, analyzer = make_analyzer(geo=SlowGeoLookup(), lookup_timeout=0.05)
    analysis = analyzer.analyze("user_001", network(), BASE_TIME)

    assert analysis.ip_analysis["geolocation"] is None
    assert analysis.geolocation["current_location"] is None
    assert 0.0 <= analysis.risk_score <= 1.0

    print("  ✅ Timeout substituted with unknown")


def test_guarded_call_failure_returns_none():
    def broken(ip_address):
        raise ConnectionError("lookup service down")

    with ThreadPoolExecutor(max_workers=1) as executor:
        assert guarded_call(executor, "geolocation", broken, "203.0.113.10", timeout=1.0) is None
        assert guarded_call(executor, "geolocation", lambda ip: ip.upper(), "abc", timeout=1.0) == "ABC"


def test_automation_and_spoofing_features():
    _, _, analyzer = make_analyzer()
    info = network(
        user_agent="Mozilla/5.0 (Macintosh) HeadlessChrome/120.0",
        platform="Win32",
        screen_resolution="640x480",
        cookies_enabled=False,
    )

    analysis = analyzer.analyze("bot_001", info, BASE_TIME)
    features = {f["type"] for f in analysis.device_analysis["suspicious_features"]}

    assert features == {"automation_tool", "unusual_resolution", "privacy_feature"}
    assert analysis.device_analysis["automation_signs"] is True
    assert analysis.device_analysis["spoofing_indicators"] == ["platform_user_agent_mismatch"]
    assert analysis.category_risks["device_analysis"] == 1.0
    assert "block_automated_access" in [r.action for r in analysis.recommendations]


def test_coordinated_users_detected():
    """Users sharing infrastructure, timing and behavior are coordinated."""
    print("🧪 Testing coordination analysis...")

    store, registry, analyzer = make_analyzer(config=NetworkConfig(min_cluster_size=2))
    for user_id in ("user_a", "user_b"):
        event = store.append(BetPlacedEvent(user_id=user_id, timestamp=BASE_TIME, amount=50))
        registry.record_event(user_id, event)

    analyzer.analyze("user_a", network(), BASE_TIME)
    analysis = analyzer.analyze("user_b", network(), BASE_TIME + 2000)

    print(f"  📊 Coordination score: {analysis.coordination['coordination_score']:.3f}")
    assert analysis.coordination["is_coordinated"] is True
    assert analysis.coordination["coordinated_with"] == ["user_a"]
    assert "investigate_fraud_ring" in [r.action for r in analysis.recommendations]

    rings = analyzer.detect_fraud_rings()
    assert {r.kind for r in rings} == {"ip_cluster", "device_cluster"}
    assert all("coordinated_activity" in r.indicators for r in rings)

    print("  ✅ Coordination tests passed!")


def test_fraud_rings_require_min_cluster_size():
    _, _, analyzer = make_analyzer()
    for i, agent in enumerate(["Agent/1 Windows", "Agent/2 Windows", "Agent/3 Windows"]):
        analyzer.analyze(f"user_{i}", network("203.0.113.10", user_agent=agent), BASE_TIME + i)
    analyzer.analyze("user_9", network("198.51.100.7"), BASE_TIME)

    rings = analyzer.detect_fraud_rings()

    assert len(rings) == 1
    assert rings[0].kind == "ip_cluster"
    assert rings[0].users == ("user_0", "user_1", "user_2")
    assert analyzer.fraud_rings == rings


def test_risk_signal_requires_network_info():
    _, _, analyzer = make_analyzer()

    with pytest.raises(InsufficientDataError):
        analyzer.risk_signal(LoginEvent(user_id="user_001", timestamp=BASE_TIME))

    signal = analyzer.risk_signal(LoginEvent(user_id="user_001", timestamp=BASE_TIME, network=network()))
    assert 0.0 <= signal.risk <= 1.0


def test_evict_stale_clusters():
    _, _, analyzer = make_analyzer()
    analyzer.analyze("user_001", network("203.0.113.10"), BASE_TIME)
    analyzer.analyze("user_002", network("198.51.100.7", timezone="UTC"), BASE_TIME + 600000)

    removed = analyzer.evict_stale(BASE_TIME + 300000)

    assert removed == 2
    assert analyzer.cluster_counts() == {"ip": 1, "device": 1}
    assert analyzer.get_ip_cluster("203.0.113.10") is None


def test_category_risk_rules():
    assert category_risk({}) == 0.0
    assert category_risk({"is_shared_ip": True, "is_proxy": True}) == pytest.approx(0.7)
    assert category_risk({"is_tor": True, "is_vpn": True}) == 1.0
    assert category_risk({"coordination_score": 0.6}) == pytest.approx(0.3)


def test_coordination_while_other_user_updates():
    """Coordination scoring works on history snapshots while another thread records observations."""
    print("🧪 Testing coordination under concurrent updates...")

    _, registry, analyzer = make_analyzer()
    analyzer.analyze("user_a", network(), BASE_TIME)
    analyzer.analyze("user_b", network(), BASE_TIME)

    stop = threading.Event()

    def record_observations():
        i = 0
        while not stop.is_set():
            registry.record_network_observation("user_b", "203.0.113.10", "fp", None, BASE_TIME + i)
            i += 1

    writer = threading.Thread(target=record_observations)
    writer.start()
    errors = []
    try:
        for i in range(200):
            try:
                analysis = analyzer.analyze("user_a", network(), BASE_TIME + i)
                assert analysis.coordination["candidates"] == 1
            except RuntimeError as e:
                errors.append(str(e))
    finally:
        stop.set()
        writer.join()

    assert errors == []
    print("  ✅ No errors from concurrent history updates")


def test_network_snapshot_is_detached():
    _, registry, analyzer = make_analyzer()
    analyzer.analyze("user_a", network(), BASE_TIME)

    snapshot = registry.network_snapshot("user_a")
    registry.record_network_observation("user_a", "198.51.100.7", "fp", None, BASE_TIME + 1000)

    assert [o.value for o in snapshot.ip_history] == ["203.0.113.10"]
    assert len(registry.get("user_a").ip_history) == 2
    assert snapshot.behavior_vector == (0.0, 0.0, 0.0, 0.0)
    assert registry.network_snapshot("nobody") is None


def test_shared_users_rule_follows_configured_threshold():
    _, _, analyzer = make_analyzer(config=NetworkConfig(suspicious_network_threshold=2))
    results = [analyzer.analyze(f"user_{i}", network(), BASE_TIME + i) for i in range(3)]

    assert results[1].ip_analysis["is_shared_ip"] is False
    assert results[2].ip_analysis["is_shared_ip"] is True
    assert results[2].category_risks["ip_analysis"] == pytest.approx(0.7)
    assert category_risk({"shared_users": 3}, shared_user_threshold=2) == pytest.approx(0.4)
    assert category_risk({"shared_users": 3}) == 0.0
