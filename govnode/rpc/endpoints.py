"""
Endpoint registry — canonical list of candidate RPC endpoints and their live
health state.

Health model per endpoint (two independent axes):
  - HEALTHY → UNHEALTHY after `unhealthy_threshold` consecutive errors;
    back to HEALTHY when the error count decays to zero (successes,
    probe successes, or the monitor's periodic decay).
  - NOT_RATE_LIMITED ⇄ RATE_LIMITED for `rate_limit_cooldown` seconds
    after the last rate-limit error.

The registry only records state, it never raises on bookkeeping calls.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Dict, List, Optional
from urllib.parse import urlparse

from govnode.rpc.errors import ErrorKind

UNHEALTHY_THRESHOLD = 3          # consecutive errors before an endpoint is skipped
RATE_LIMIT_COOLDOWN = 60.0       # seconds an endpoint is skipped after a 429
DEFAULT_MAX_RPS = 1.0            # requests per second per endpoint


@dataclass
class HealthSample:
    """Rolling per-endpoint aggregate, fed by probes and real operations."""
    total_checks: int = 0
    failed_checks: int = 0
    average_latency_ms: float = 0.0
    last_successful_check_at: float = 0.0   # 0 = never

    EMA_WEIGHT: ClassVar[float] = 0.1

    @property
    def success_rate(self) -> float:
        if self.total_checks == 0:
            return 0.0
        return (self.total_checks - self.failed_checks) / self.total_checks

    def record(self, ok: bool, now: float, latency_ms: Optional[float] = None):
        self.total_checks += 1
        if not ok:
            self.failed_checks += 1
            return
        self.last_successful_check_at = now
        if latency_ms is None:
            return
        if self.total_checks - self.failed_checks == 1:
            self.average_latency_ms = latency_ms
        else:
            self.average_latency_ms = (
                self.average_latency_ms * (1 - self.EMA_WEIGHT) + latency_ms * self.EMA_WEIGHT
            )


@dataclass
class Endpoint:
    """Single named RPC endpoint. Lower priority value = preferred."""
    name: str
    url: str
    priority: int
    max_requests_per_second: float = DEFAULT_MAX_RPS

    # Mutable health state
    last_used_at: float = 0.0
    consecutive_error_count: int = 0
    is_healthy: bool = True
    last_rate_limited_at: Optional[float] = None

    health: HealthSample = field(default_factory=HealthSample)

    @property
    def min_interval(self) -> float:
        """Minimum seconds between two requests to stay inside the rate budget."""
        if self.max_requests_per_second <= 0:
            return 0.0
        return 1.0 / self.max_requests_per_second

    @property
    def short_url(self) -> str:
        return self.url[:40] + ("..." if len(self.url) > 40 else "")


def endpoint_name_for(url: str) -> str:
    """Readable endpoint name derived from the URL host (e.g. "sepolia.infura.io")."""
    host = urlparse(url).hostname or url
    return host


def endpoints_from_urls(urls: List[str], max_rps: float = DEFAULT_MAX_RPS) -> List[Endpoint]:
    """Build endpoints from an ordered URL list; list order is priority order.

    Duplicate hosts get a numeric suffix so names stay unique.
    """
    endpoints: List[Endpoint] = []
    seen: Dict[str, int] = {}
    for i, url in enumerate(urls):
        name = endpoint_name_for(url)
        seen[name] = seen.get(name, 0) + 1
        if seen[name] > 1:
            name = f"{name}#{seen[name]}"
        endpoints.append(Endpoint(name=name, url=url, priority=i + 1,
                                  max_requests_per_second=max_rps))
    return endpoints


class EndpointRegistry:
    """Owns Endpoint records for the lifetime of the process."""

    def __init__(
        self,
        endpoints: List[Endpoint],
        unhealthy_threshold: int = UNHEALTHY_THRESHOLD,
        rate_limit_cooldown: float = RATE_LIMIT_COOLDOWN,
        clock: Callable[[], float] = time.time,
    ):
        if not endpoints:
            raise ValueError("EndpointRegistry requires at least one endpoint")
        names = [ep.name for ep in endpoints]
        if len(set(names)) != len(names):
            raise ValueError(f"Endpoint names must be unique: {names}")

        # Stable sort: equal priorities keep their configured order
        self._endpoints: List[Endpoint] = sorted(endpoints, key=lambda ep: ep.priority)
        self._by_name: Dict[str, Endpoint] = {ep.name: ep for ep in self._endpoints}
        self.unhealthy_threshold = unhealthy_threshold
        self.rate_limit_cooldown = rate_limit_cooldown
        self._clock = clock

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def endpoints(self) -> List[Endpoint]:
        return list(self._endpoints)

    def get(self, name: str) -> Endpoint:
        return self._by_name[name]

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._endpoints)

    @property
    def healthy_count(self) -> int:
        return sum(1 for ep in self._endpoints if ep.is_healthy)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def list_healthy(self) -> List[Endpoint]:
        """Healthy endpoints ordered by (priority, least recently used).

        When nothing is healthy every endpoint is reset and the full list is
        returned, so callers always have something to try.
        """
        healthy = [ep for ep in self._endpoints if ep.is_healthy]
        if not healthy:
            print(f"[RPC] ⚠️  No healthy endpoints — resetting all {len(self._endpoints)} endpoints")
            self.reset_all()
            healthy = list(self._endpoints)
        return sorted(healthy, key=lambda ep: (ep.priority, ep.last_used_at))

    def is_rate_limited(self, name: str, cooldown: Optional[float] = None) -> bool:
        ep = self._by_name.get(name)
        if ep is None or ep.last_rate_limited_at is None:
            return False
        if cooldown is None:
            cooldown = self.rate_limit_cooldown
        return self._clock() - ep.last_rate_limited_at < cooldown

    def is_available(self, name: str) -> bool:
        """Healthy and outside any rate-limit cooldown."""
        ep = self._by_name.get(name)
        return ep is not None and ep.is_healthy and not self.is_rate_limited(name)

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def record_success(self, name: str, latency_ms: Optional[float] = None):
        ep = self._by_name.get(name)
        if ep is None:
            return
        now = self._clock()
        # Pacing may have reserved a later slot already
        ep.last_used_at = max(ep.last_used_at, now)
        ep.consecutive_error_count = max(0, ep.consecutive_error_count - 1)
        ep.health.record(True, now, latency_ms)
        if not ep.is_healthy and ep.consecutive_error_count == 0:
            ep.is_healthy = True
            print(f"[RPC] 🟢 Endpoint recovered: {ep.name}")

    def record_failure(self, name: str, kind: Optional[ErrorKind] = None):
        ep = self._by_name.get(name)
        if ep is None:
            return
        now = self._clock()
        ep.consecutive_error_count += 1
        ep.health.record(False, now)
        if kind is ErrorKind.RATE_LIMITED:
            ep.last_rate_limited_at = now
        if ep.is_healthy and ep.consecutive_error_count >= self.unhealthy_threshold:
            ep.is_healthy = False
            print(f"[RPC] 🔴 Marking {ep.name} unhealthy "
                  f"({ep.consecutive_error_count} consecutive errors)")

    def disable(self, name: str, reason: str = ""):
        """Force an endpoint unhealthy (e.g. wrong chain at startup)."""
        ep = self._by_name.get(name)
        if ep is None:
            return
        ep.consecutive_error_count = max(ep.consecutive_error_count, self.unhealthy_threshold)
        ep.is_healthy = False
        print(f"[RPC] 🔴 Disabled {ep.name}{': ' + reason if reason else ''}")

    def decay_errors(self) -> List[str]:
        """Decrement every error counter by one; returns names that recovered."""
        recovered = []
        for ep in self._endpoints:
            ep.consecutive_error_count = max(0, ep.consecutive_error_count - 1)
            if ep.consecutive_error_count == 0 and not ep.is_healthy:
                ep.is_healthy = True
                recovered.append(ep.name)
                print(f"[RPC] 🟢 Endpoint recovered after error decay: {ep.name}")
        return recovered

    def reset_all(self):
        for ep in self._endpoints:
            ep.is_healthy = True
            ep.consecutive_error_count = 0

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> List[dict]:
        return [
            {
                "name": ep.name,
                "is_healthy": ep.is_healthy,
                "error_count": ep.consecutive_error_count,
                "priority": ep.priority,
                "last_used": ep.last_used_at,
                "rate_limited": self.is_rate_limited(ep.name),
            }
            for ep in self._endpoints
        ]
