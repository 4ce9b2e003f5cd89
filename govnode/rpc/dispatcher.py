"""
RpcDispatcher — the single call surface every consumer uses for chain access.

    dispatcher = RpcDispatcher(endpoints, chain_id=11155111)
    dispatcher.start()
    block = await dispatcher.execute_with_retry(
        lambda w3: w3.eth.get_block("latest"), description="Latest block")

Per call:
  1. Random pre-delay to desynchronize concurrent consumers
  2. Lease a pooled connection (or fall back to direct registry selection)
  3. Pace requests to the endpoint's rate budget
  4. Run the operation under a fixed timeout
  5. On failure: classify once, record against the endpoint, rotate away
     from it, back off, retry — fatal errors stop immediately
"""

import asyncio
import random
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set, Tuple

from govnode.rpc.endpoints import (
    RATE_LIMIT_COOLDOWN,
    UNHEALTHY_THRESHOLD,
    Endpoint,
    EndpointRegistry,
)
from govnode.rpc.errors import (
    DEFAULT_DENYLIST,
    EndpointValidationError,
    ErrorKind,
    NoHealthyConnectionError,
    RpcError,
    RpcTimeoutError,
    classify_error,
    is_connection_error,
)
from govnode.rpc.monitor import (
    HEALTH_CHECK_INTERVAL,
    PROBE_GAP,
    PROBE_TIMEOUT,
    HealthMonitor,
)
from govnode.rpc.pool import (
    CALL_TIMEOUT,
    POOL_SIZE,
    RECOVERY_COOLDOWN,
    RECOVERY_ERROR_THRESHOLD,
    Connection,
    ConnectionPool,
    run_operation,
)
from govnode.rpc.retry import RetryState, linear_backoff, retry_async

PRE_DELAY = (0.5, 1.5)               # seconds, randomized before the first attempt
SEQUENTIAL_RETRIES = 2               # per-item retry budget in execute_sequentially
SEQUENTIAL_DELAY_STEP = 0.05         # seconds added per item index
SEQUENTIAL_DELAY_CAP = 1.0           # max inter-item delay
PROGRESS_LOG_EVERY = 10

# Operation names treated as best-effort scans when best_effort isn't given
BEST_EFFORT_MARKERS = ("Proposal", "AssetDAO", "Scan")


def is_best_effort_name(operation_name: str) -> bool:
    return any(marker in operation_name for marker in BEST_EFFORT_MARKERS)


@dataclass
class DispatcherMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limit_hits: int = 0
    total_retries: int = 0
    average_response_time: float = 0.0   # ms, exponential moving average
    active_provider: str = ""

    RESPONSE_TIME_WEIGHT = 0.1

    def record_response_time(self, latency_ms: float):
        if self.successful_requests <= 1:
            self.average_response_time = latency_ms
            return
        w = self.RESPONSE_TIME_WEIGHT
        self.average_response_time = self.average_response_time * (1 - w) + latency_ms * w


class RpcDispatcher:
    """Endpoint registry + connection pool + health monitor behind one façade.

    Construct one per agent process and pass it to every consumer.
    """

    def __init__(
        self,
        endpoints: List[Endpoint],
        chain_id: Optional[int] = None,
        pool_size: int = POOL_SIZE,
        call_timeout: float = CALL_TIMEOUT,
        probe_timeout: float = PROBE_TIMEOUT,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        rate_limit_cooldown: float = RATE_LIMIT_COOLDOWN,
        unhealthy_threshold: int = UNHEALTHY_THRESHOLD,
        recovery_threshold: int = RECOVERY_ERROR_THRESHOLD,
        recovery_cooldown: float = RECOVERY_COOLDOWN,
        pre_delay: Tuple[float, float] = PRE_DELAY,
        denylist: Iterable[str] = DEFAULT_DENYLIST,
        connection_factory: Optional[Callable[[Endpoint, int], Any]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        verbose: bool = False,
    ):
        self.chain_id = chain_id
        self.call_timeout = call_timeout
        self.probe_timeout = probe_timeout
        self.pre_delay = pre_delay
        self.denylist = tuple(denylist)
        self.verbose = verbose
        self._clock = clock
        self._sleep = sleep

        self.registry = EndpointRegistry(
            endpoints,
            unhealthy_threshold=unhealthy_threshold,
            rate_limit_cooldown=rate_limit_cooldown,
            clock=clock,
        )
        self.pool = ConnectionPool(
            self.registry,
            pool_size=pool_size,
            call_timeout=call_timeout,
            recovery_threshold=recovery_threshold,
            recovery_cooldown=recovery_cooldown,
            connection_factory=connection_factory,
            clock=clock,
            sleep=sleep,
        )
        self.monitor = HealthMonitor(
            self.registry,
            self.pool,
            interval=health_check_interval,
            probe_timeout=probe_timeout,
            denylist=self.denylist,
            clock=clock,
            sleep=sleep,
        )
        self.metrics = DispatcherMetrics(active_provider=self.registry.endpoints[0].name)
        self._classify = partial(classify_error, denylist=self.denylist)
        self._stopped = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start background health monitoring (needs a running event loop).

        A stopped dispatcher has released its pool and cannot be restarted.
        """
        if self._stopped:
            raise RuntimeError("RpcDispatcher was stopped; create a new one")
        self.monitor.start()

    def stop(self):
        """Cancel background monitoring and stop leasing connections. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self.monitor.stop()
        self.pool.stop()
        print("[RPC] Dispatcher stopped")

    async def close(self):
        """stop() plus release of every pooled provider session."""
        self.stop()
        await self.pool.close()

    async def validate_endpoints(self) -> dict:
        """Probe every endpoint once for chain id and block height.

        Endpoints that are unreachable or serve the wrong chain are disabled.
        Raises EndpointValidationError if none pass.
        """
        results = {}
        endpoints = self.registry.endpoints
        for i, ep in enumerate(endpoints):
            if i > 0:
                await self._sleep(PROBE_GAP)
            conn = self.pool.acquire_for(ep.name)
            if conn is None:
                results[ep.name] = {"ok": False, "error": "no connection"}
                continue
            try:
                chain_id = await asyncio.wait_for(conn.w3.eth.chain_id, timeout=self.probe_timeout)
                block = await asyncio.wait_for(conn.w3.eth.block_number, timeout=self.probe_timeout)
            except Exception as e:
                self.registry.disable(ep.name, f"validation failed: {str(e)[:80]}")
                results[ep.name] = {"ok": False, "error": str(e)[:100] or type(e).__name__}
                continue
            finally:
                self.pool.release(conn)

            if self.chain_id is not None and chain_id != self.chain_id:
                self.registry.disable(ep.name, f"wrong chain {chain_id}, expected {self.chain_id}")
                results[ep.name] = {"ok": False, "error": f"wrong chain {chain_id}",
                                    "chain_id": chain_id}
                continue

            self.registry.record_success(ep.name)
            results[ep.name] = {"ok": True, "chain_id": chain_id, "block": block}
            print(f"[RPC] ✅ {ep.name}: chain_id={chain_id} block={block}")

        working = sum(1 for r in results.values() if r["ok"])
        if working == 0:
            raise EndpointValidationError(
                f"All {len(endpoints)} RPC endpoints failed validation")
        print(f"[RPC] Startup validation: {working}/{len(endpoints)} endpoints working")
        return results

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_with_retry(
        self,
        operation: Callable[[Any], Awaitable],
        max_retries: int = 3,
        description: str = "RPC operation",
    ) -> Any:
        """Run operation(w3) reliably.

        Returns the operation's result. Raises FatalRpcError on a
        non-retryable error (first occurrence) or RetryExhaustedError once
        max_retries attempts have failed.
        """
        await self._sleep(random.uniform(*self.pre_delay))
        tried: Set[str] = set()

        async def attempt(state: RetryState):
            conn, ep = self._select(tried)
            state.endpoint_name = ep.name
            state.endpoint_url = ep.url
            self.metrics.active_provider = ep.name
            try:
                await self._pace(ep)
                self.metrics.total_requests += 1
                t0 = time.monotonic()
                result = await run_operation(operation, conn.w3, self.call_timeout)
            except Exception as e:
                err = e
                if isinstance(e, asyncio.TimeoutError):
                    err = RpcTimeoutError(f"Operation timeout after {self.call_timeout}s on {ep.name}")
                if is_connection_error(err):
                    self.pool.mark_connection_failed(conn)
                if err is e:
                    raise
                raise err from e
            finally:
                self.pool.release(conn)

            latency = (time.monotonic() - t0) * 1000
            self.registry.record_success(ep.name, latency)
            self.metrics.successful_requests += 1
            self.metrics.record_response_time(latency)
            if self.verbose:
                print(f"[RPC] {description} succeeded on {ep.name} "
                      f"(attempt {state.attempt_number}, {latency:.0f}ms)")
            return result

        def on_failure(state: RetryState):
            kind = state.classification
            name = state.endpoint_name
            self.metrics.failed_requests += 1
            if kind is ErrorKind.RATE_LIMITED:
                self.metrics.rate_limit_hits += 1
            print(f"[RPC] {description} attempt {state.attempt_number}/{state.max_attempts} "
                  f"failed on {name or '-'} [{kind.value}]: {str(state.last_error)[:100]}")
            if kind is ErrorKind.FATAL:
                return
            if state.attempt_number < state.max_attempts:
                self.metrics.total_retries += 1
            if name is not None:
                self.registry.record_failure(name, kind)
                tried.add(name)
                self._rotate(name, kind)

        return await retry_async(
            attempt,
            max_attempts=max_retries,
            description=description,
            backoff=linear_backoff,
            classify=self._classify,
            on_failure=on_failure,
            sleep=self._sleep,
        )

    async def execute_sequentially(
        self,
        operations: List[Callable[[Any], Awaitable]],
        operation_name: str = "Sequential Operations",
        delay_between_ops: float = 0.4,
        best_effort: Optional[bool] = None,
    ) -> List[Any]:
        """Run operations strictly one after another.

        best_effort=True skips items that fail and keeps going (scan-style
        work); False re-raises the first failure (strict pipelines). When
        omitted it is derived from operation_name via BEST_EFFORT_MARKERS.
        """
        if best_effort is None:
            best_effort = is_best_effort_name(operation_name)
        total = len(operations)
        results = []
        print(f"[RPC] Starting sequential execution of {total} {operation_name} operations")

        for i, op in enumerate(operations):
            if i > 0:
                await self._sleep(min(delay_between_ops + i * SEQUENTIAL_DELAY_STEP,
                                      SEQUENTIAL_DELAY_CAP))
            try:
                result = await self.execute_with_retry(
                    op, SEQUENTIAL_RETRIES, f"{operation_name} {i + 1}/{total}")
            except RpcError as e:
                print(f"[RPC] Sequential operation {i + 1}/{total} failed: {e}")
                if best_effort:
                    continue
                raise
            results.append(result)

            if total > PROGRESS_LOG_EVERY and (i + 1) % PROGRESS_LOG_EVERY == 0:
                print(f"[RPC] Sequential progress: {i + 1}/{total} completed")

        print(f"[RPC] Sequential execution completed: {len(results)}/{total} succeeded")
        return results

    # ------------------------------------------------------------------
    # Selection internals
    # ------------------------------------------------------------------

    def _select(self, tried: Set[str]) -> Tuple[Connection, Endpoint]:
        """Leased (connection, endpoint). Pool first, registry fallback second.

        The fallback still leases, so it only gets a connection that is idle.
        """
        conn = self.pool.acquire(avoid=tried)
        if conn is not None:
            return conn, self.registry.get(conn.endpoint_name)

        ep = self._direct_endpoint(tried)
        conn = self.pool.acquire_for(ep.name)
        if conn is None:
            raise NoHealthyConnectionError(f"No idle connection available for {ep.name}")
        print(f"[RPC] Pool exhausted — using direct connection to {ep.name}")
        return conn, ep

    def _direct_endpoint(self, tried: Set[str]) -> Endpoint:
        healthy = self.registry.list_healthy()
        not_limited = [ep for ep in healthy if not self.registry.is_rate_limited(ep.name)]
        untried = [ep for ep in not_limited if ep.name not in tried]
        if untried:
            return untried[0]
        if not_limited:
            return not_limited[0]
        # Everything is rate limited: the oldest limit is most likely to have lifted
        ep = min(healthy, key=lambda e: e.last_rate_limited_at or 0.0)
        print(f"[RPC] ⚠️  All providers rate limited, using least recently limited: {ep.name}")
        return ep

    async def _pace(self, ep: Endpoint):
        """Hold the call until the endpoint's minimum request interval has passed.

        The slot is reserved before sleeping, so concurrent callers queue up
        one interval apart instead of all waking at once.
        """
        now = self._clock()
        slot = max(now, ep.last_used_at + ep.min_interval)
        ep.last_used_at = slot
        if slot > now:
            await self._sleep(slot - now)

    def _rotate(self, failed: str, kind: ErrorKind):
        nxt = next(
            (ep.name for ep in self.registry.list_healthy()
             if ep.name != failed and not self.registry.is_rate_limited(ep.name)),
            failed,
        )
        if nxt != failed:
            print(f"[RPC] Rotating provider {failed} → {nxt} ({kind.value})")
        self.metrics.active_provider = nxt

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_metrics(self) -> dict:
        m = self.metrics
        return {
            "total_requests": m.total_requests,
            "successful_requests": m.successful_requests,
            "failed_requests": m.failed_requests,
            "rate_limit_hits": m.rate_limit_hits,
            "total_retries": m.total_retries,
            "average_response_time": round(m.average_response_time, 1),
            "active_provider": m.active_provider,
            "pool_status": self.pool.status(),
            "network_healthy": self.monitor.is_network_healthy(),
            "healthy_providers": self.registry.healthy_count,
            "connection_pool_active": not self.pool.closed,
            "network_monitor_active": self.monitor.running,
        }

    def get_endpoint_status(self) -> List[dict]:
        return self.registry.status()

    def get_comprehensive_status(self) -> dict:
        return {
            "rpc": self.get_metrics(),
            "endpoints": self.get_endpoint_status(),
            "network": self.monitor.get_metrics(),
            "pool": self.pool.status(),
            "summary": {
                "total_endpoints": len(self.registry),
                "healthy_endpoints": self.registry.healthy_count,
                "network_healthy": self.monitor.is_network_healthy(),
                "best_provider": self.monitor.best_endpoint(),
            },
        }

    def summary(self) -> str:
        pool_status = self.pool.status()
        parts = []
        for ep in self.registry.endpoints:
            status = "🟢" if ep.is_healthy else "🔴"
            limited = "⏳" if self.registry.is_rate_limited(ep.name) else ""
            conns = pool_status.get(ep.name, {"healthy": 0, "total": 0})
            parts.append(
                f"{status}{limited} p{ep.priority} {ep.name} "
                f"errors={ep.consecutive_error_count} "
                f"conns={conns['healthy']}/{conns['total']} "
                f"ok={ep.health.success_rate:.0%} lat={ep.health.average_latency_ms:.0f}ms"
            )
        m = self.metrics
        return (
            f"RpcDispatcher: {self.registry.healthy_count}/{len(self.registry)} healthy, "
            f"active={m.active_provider}, requests={m.total_requests} "
            f"ok={m.successful_requests} failed={m.failed_requests} "
            f"429s={m.rate_limit_hits} avg={m.average_response_time:.0f}ms\n  "
            + "\n  ".join(parts)
        )

    def print_status(self):
        print(f"[RPC] {self.summary()}")
