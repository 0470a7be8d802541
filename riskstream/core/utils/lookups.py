"""
External lookup capabilities and the timeout guard around them.

Proxy/VPN/Tor/datacenter classification is supplied from outside the
monitor. Every external call goes through `guarded_call`, which substitutes
"unknown" (None) on timeout or failure so the pipeline never blocks.
"""

from concurrent.futures import Executor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol, TypeVar

import structlog

from riskstream.core.utils.metrics import LOOKUP_FAILURES

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ProxyClassification:
    is_proxy: bool = False
    is_vpn: bool = False
    is_tor: bool = False
    is_data_center: bool = False

    @property
    def anonymization_level(self) -> float:
        """Rough share of anonymizing layers detected."""
        flags = [self.is_proxy, self.is_vpn, self.is_tor, self.is_data_center]
        return sum(flags) / len(flags)


class ProxyClassifier(Protocol):
    def classify(self, ip_address: str) -> Optional[ProxyClassification]:
        ...


class NullProxyClassifier:
    """Classifier that knows nothing; every IP is unknown."""

    def classify(self, ip_address: str) -> Optional[ProxyClassification]:
        return None


class StaticProxyClassifier:
    """Classifier backed by known address lists."""

    def __init__(
        self,
        proxies: Iterable[str] = (),
        vpns: Iterable[str] = (),
        tor_exits: Iterable[str] = (),
        data_centers: Iterable[str] = (),
    ):
        self.proxies = set(proxies)
        self.vpns = set(vpns)
        self.tor_exits = set(tor_exits)
        self.data_centers = set(data_centers)

    def classify(self, ip_address: str) -> Optional[ProxyClassification]:
        return ProxyClassification(
            is_proxy=ip_address in self.proxies,
            is_vpn=ip_address in self.vpns,
            is_tor=ip_address in self.tor_exits,
            is_data_center=ip_address in self.data_centers,
        )


def guarded_call(
    executor: Executor,
    name: str,
    fn: Callable[..., Optional[T]],
    *args,
    timeout: float = 2.0,
) -> Optional[T]:
    """
    Run an external lookup with a timeout.

    Args:
        executor: Pool the lookup runs on
        name: Lookup name for logs and metrics
        fn: The lookup callable
        timeout: Seconds to wait before treating the result as unknown

    Returns:
        The lookup result, or None when it timed out or failed
    """
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        LOOKUP_FAILURES.labels(lookup=name).inc()
        logger.warning("External lookup timed out", lookup=name, timeout=timeout)
        return None
    except Exception as e:
        LOOKUP_FAILURES.labels(lookup=name).inc()
        logger.warning("External lookup failed", lookup=name, error=str(e))
        return None
