"""
HealthMonitor — background prober for every configured endpoint.

Runs as an asyncio task for the lifetime of the agent:
  - Every `interval` seconds, probes each endpoint sequentially (never
    concurrently, free tiers reject bursts) with a cheap block-height read
  - Short per-probe timeout and a small fixed gap between probes
  - Success/failure feed the registry; failures are classified, so a
    throttled probe starts the rate-limit cooldown
  - A successful probe also revives the endpoint's pooled connections
  - Every `decay_interval`, decrements all error counters so endpoints that
    went quiet recover on their own
  - Every `metrics_log_interval`, logs success rate / latency / staleness
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from govnode.rpc.endpoints import Endpoint, EndpointRegistry
from govnode.rpc.errors import DEFAULT_DENYLIST, classify_error
from govnode.rpc.pool import ConnectionPool

HEALTH_CHECK_INTERVAL = 30.0     # seconds between probe rounds
PROBE_TIMEOUT = 5.0              # seconds per probe
PROBE_GAP = 0.1                  # seconds between consecutive probes
METRICS_LOG_INTERVAL = 300.0     # detailed metrics every 5 min
ERROR_DECAY_INTERVAL = 3600.0    # decrement error counters hourly
HEALTHY_FRACTION = 0.25          # network is healthy with >= 25% endpoints up


async def block_number_probe(w3) -> int:
    return await w3.eth.block_number


class HealthMonitor:
    """Sequential background prober. Never raises; failures become state."""

    def __init__(
        self,
        registry: EndpointRegistry,
        pool: ConnectionPool,
        interval: float = HEALTH_CHECK_INTERVAL,
        probe_timeout: float = PROBE_TIMEOUT,
        probe_gap: float = PROBE_GAP,
        metrics_log_interval: float = METRICS_LOG_INTERVAL,
        decay_interval: float = ERROR_DECAY_INTERVAL,
        probe: Callable[[Any], Awaitable] = block_number_probe,
        denylist: Iterable[str] = DEFAULT_DENYLIST,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.registry = registry
        self.pool = pool
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.probe_gap = probe_gap
        self.metrics_log_interval = metrics_log_interval
        self.decay_interval = decay_interval
        self._probe = probe
        self.denylist = tuple(denylist)
        self._clock = clock
        self._sleep = sleep

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_metrics_log = 0.0
        self._last_decay = clock()
        self._rounds = 0
        # Last probe outcome per endpoint: True/False, absent until probed
        self._connected: Dict[str, bool] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> asyncio.Task:
        """Spawn the probe loop on the running event loop."""
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.create_task(self.run(), name="rpc_health_monitor")
            print(f"[RPC-HEALTH] Monitor started — probing every {self.interval:.0f}s")
        return self._task

    def stop(self):
        """Cancel the probe loop. Safe to call more than once."""
        was_running = self._running
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if was_running:
            print("[RPC-HEALTH] Monitor stopped")

    async def run(self):
        self._running = True
        while self._running:
            try:
                await self.check_all()
                self.maybe_decay()
            except asyncio.CancelledError:
                self._running = False
                return
            except Exception as e:
                print(f"[RPC-HEALTH] Probe round error: {e}")
            await self._sleep(self.interval)

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def check_all(self):
        """One sequential probe round over every endpoint."""
        endpoints = self.registry.endpoints
        for i, ep in enumerate(endpoints):
            await self.check_endpoint(ep)
            if i < len(endpoints) - 1:
                await self._sleep(self.probe_gap)
        self._rounds += 1
        self._log_network_status()

    async def check_endpoint(self, ep: Endpoint) -> bool:
        # Skipped without penalty when live calls hold every connection
        conn = self.pool.acquire_for(ep.name)
        if conn is None:
            return False
        t0 = time.monotonic()
        try:
            await asyncio.wait_for(self._probe(conn.w3), timeout=self.probe_timeout)
        except Exception as e:
            kind = classify_error(e, ep.url, self.denylist)
            self.registry.record_failure(ep.name, kind)
            self._connected[ep.name] = False
            h = ep.health
            print(f"[RPC-HEALTH] ❌ {ep.name} probe failed [{kind.value}] "
                  f"({h.failed_checks}/{h.total_checks} failed): {str(e)[:80] or type(e).__name__}")
            return False
        finally:
            self.pool.release(conn)

        latency = (time.monotonic() - t0) * 1000
        self.registry.record_success(ep.name, latency)
        self.pool.revive_endpoint(ep.name)
        self._connected[ep.name] = True
        return True

    def maybe_decay(self):
        now = self._clock()
        if now - self._last_decay >= self.decay_interval:
            self._last_decay = now
            self.registry.decay_errors()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def healthy_providers(self):
        return [name for name, ok in self._connected.items() if ok]

    def is_network_healthy(self) -> bool:
        total = len(self.registry)
        if self._connected:
            healthy = len(self.healthy_providers())
        else:
            healthy = self.registry.healthy_count
        return healthy > 0 and healthy / total >= HEALTHY_FRACTION

    def best_endpoint(self) -> Optional[str]:
        """Healthy endpoint with the lowest average probe latency."""
        candidates = [
            ep for ep in self.registry.endpoints
            if ep.is_healthy and self._connected.get(ep.name)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda ep: ep.health.average_latency_ms).name

    def get_metrics(self) -> Dict[str, dict]:
        now = self._clock()
        report = {}
        for ep in self.registry.endpoints:
            h = ep.health
            report[ep.name] = {
                "success_rate": round(h.success_rate * 100, 2),
                "average_latency_ms": round(h.average_latency_ms),
                "total_checks": h.total_checks,
                "failed_checks": h.failed_checks,
                "seconds_since_success": (
                    round(now - h.last_successful_check_at)
                    if h.last_successful_check_at else -1
                ),
            }
        return report

    def _log_network_status(self):
        total = len(self._connected)
        up = len(self.healthy_providers())
        if total and up == 0:
            print(f"[RPC-HEALTH] 🔴 All {total} RPC providers are disconnected")
        elif up < total:
            print(f"[RPC-HEALTH] ⚠️  {up}/{total} providers reachable: "
                  f"{', '.join(self.healthy_providers())}")

        now = self._clock()
        if now - self._last_metrics_log >= self.metrics_log_interval:
            self._last_metrics_log = now
            self.log_detailed_metrics()

    def log_detailed_metrics(self):
        for name, m in self.get_metrics().items():
            print(f"[RPC-HEALTH] {name}: success={m['success_rate']:.1f}% "
                  f"lat={m['average_latency_ms']}ms checks={m['total_checks']} "
                  f"since_ok={m['seconds_since_success']}s")
