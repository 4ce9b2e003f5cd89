"""
ConnectionPool — a fixed set of live AsyncWeb3 connections per endpoint.

Features:
  - `pool_size` connections per endpoint, created once, never grown
  - Least-error, least-recently-used selection across every available endpoint
  - Each acquire leases one connection to one call; leases are released after
    the call, so a connection is never shared mid-flight
  - Connection-level failure marking (timeouts, resets, DNS) separate from
    endpoint-level health in the registry
  - Recovery pass that un-sticks heavily failed connections after a cooldown
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from web3 import AsyncWeb3, AsyncHTTPProvider

from govnode.rpc.endpoints import Endpoint, EndpointRegistry
from govnode.rpc.errors import (
    ErrorKind,
    NoHealthyConnectionError,
    RpcTimeoutError,
    is_connection_error,
)
from govnode.rpc.retry import RetryState, exponential_backoff, retry_async

POOL_SIZE = 3                    # connections per endpoint
CALL_TIMEOUT = 10.0              # seconds per pooled operation
RECOVERY_ERROR_THRESHOLD = 5     # connections above this are reset by recovery
RECOVERY_COOLDOWN = 5.0          # seconds to wait after a recovery pass


def web3_connection(endpoint: Endpoint, index: int) -> AsyncWeb3:
    """Default connection factory: one AsyncHTTPProvider per pooled connection."""
    return AsyncWeb3(AsyncHTTPProvider(endpoint.url))


async def run_operation(operation: Callable[[Any], Any], w3: Any, timeout: float) -> Any:
    """Call operation(w3); an awaitable result is awaited under the timeout."""
    result = operation(w3)
    if inspect.isawaitable(result):
        result = await asyncio.wait_for(result, timeout=timeout)
    return result


@dataclass
class Connection:
    """A live handle bound to exactly one endpoint."""
    endpoint_name: str
    connection_id: str
    w3: Any = field(repr=False, default=None)
    is_healthy: bool = True
    error_count: int = 0
    last_used_at: float = 0.0
    in_use: bool = False


class ConnectionPool:
    """Owns every Connection; the only component that creates or closes them."""

    def __init__(
        self,
        registry: EndpointRegistry,
        pool_size: int = POOL_SIZE,
        call_timeout: float = CALL_TIMEOUT,
        recovery_threshold: int = RECOVERY_ERROR_THRESHOLD,
        recovery_cooldown: float = RECOVERY_COOLDOWN,
        connection_factory: Optional[Callable[[Endpoint, int], Any]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        self.registry = registry
        self.pool_size = pool_size
        self.call_timeout = call_timeout
        self.recovery_threshold = recovery_threshold
        self.recovery_cooldown = recovery_cooldown
        self._factory = connection_factory or web3_connection
        self._clock = clock
        self._sleep = sleep
        self._closed = False

        self._connections: Dict[str, List[Connection]] = {}
        for ep in registry.endpoints:
            conns = []
            for i in range(pool_size):
                try:
                    w3 = self._factory(ep, i)
                except Exception as e:
                    print(f"[RPC-POOL] ⚠️  Failed to create connection {ep.name}_{i}: {e}")
                    continue
                conns.append(Connection(endpoint_name=ep.name,
                                        connection_id=f"{ep.name}_{i}", w3=w3))
            if conns:
                self._connections[ep.name] = conns
                print(f"[RPC-POOL] {ep.name}: {len(conns)} connections")

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def connections(self, endpoint_name: Optional[str] = None) -> List[Connection]:
        if endpoint_name is not None:
            return list(self._connections.get(endpoint_name, []))
        return [c for conns in self._connections.values() for c in conns]

    def acquire(self, avoid: Iterable[str] = ()) -> Optional[Connection]:
        """Lease the best healthy connection, or None if nothing is usable.

        Ordering is (error_count, last_used_at). Connections on endpoints in
        `avoid` are only handed out when nothing else is available.
        """
        if self._closed:
            return None
        candidates = [
            c for c in self.connections()
            if c.is_healthy and not c.in_use and self.registry.is_available(c.endpoint_name)
        ]
        avoid = set(avoid)
        if avoid:
            preferred = [c for c in candidates if c.endpoint_name not in avoid]
            if preferred:
                candidates = preferred
        if not candidates:
            return None

        candidates.sort(key=lambda c: (c.error_count, c.last_used_at))
        conn = candidates[0]
        conn.last_used_at = self._clock()
        conn.in_use = True
        return conn

    def release(self, conn: Connection):
        conn.in_use = False

    def acquire_for(self, endpoint_name: str) -> Optional[Connection]:
        """Lease an idle connection on one endpoint, ignoring health.

        Used for direct fallback selection, startup validation and health
        probes. Returns None when every connection there is leased.
        """
        if self._closed:
            return None
        idle = [c for c in self._connections.get(endpoint_name, []) if not c.in_use]
        if not idle:
            return None
        conn = min(idle, key=lambda c: (c.error_count, c.last_used_at))
        conn.last_used_at = self._clock()
        conn.in_use = True
        return conn

    # ------------------------------------------------------------------
    # Health bookkeeping
    # ------------------------------------------------------------------

    def mark_connection_failed(self, conn: Connection):
        conn.is_healthy = False
        conn.error_count += 1
        print(f"[RPC-POOL] Marked {conn.connection_id} unhealthy (errors={conn.error_count})")

    def revive_endpoint(self, endpoint_name: str) -> int:
        """Probe succeeded: bring that endpoint's connections back. Returns count revived."""
        revived = 0
        for conn in self._connections.get(endpoint_name, []):
            if not conn.is_healthy:
                conn.is_healthy = True
                conn.error_count = max(0, conn.error_count - 1)
                revived += 1
        if revived:
            print(f"[RPC-POOL] 🟢 {endpoint_name}: {revived} connection(s) recovered")
        return revived

    def reset_failed_connections(self) -> int:
        """Reset every connection above the recovery threshold. Never suspends."""
        reset = 0
        for conn in self.connections():
            if conn.error_count > self.recovery_threshold:
                conn.error_count = 0
                conn.is_healthy = True
                reset += 1
        return reset

    async def attempt_connection_recovery(self) -> int:
        """Recovery pass, then wait out the cooldown before the next attempt."""
        reset = self.reset_failed_connections()
        print(f"[RPC-POOL] Recovery pass: reset {reset} connection(s), "
              f"cooling down {self.recovery_cooldown:.0f}s")
        await self._sleep(self.recovery_cooldown)
        return reset

    # ------------------------------------------------------------------
    # Guarded execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation: Callable[[Any], Awaitable],
        max_retries: int = 3,
        description: str = "Pool operation",
    ) -> Any:
        """Run operation(w3) on a pooled connection with timeout and retry.

        Connection-level errors take that connection out of rotation; every
        retry acquires afresh. Backoff is 2^attempt seconds. Outcomes are
        recorded against the endpoint in the registry.
        """

        async def attempt(state: RetryState):
            conn = self.acquire()
            if conn is None:
                await self.attempt_connection_recovery()
                conn = self.acquire()
                if conn is None:
                    raise NoHealthyConnectionError("No healthy connections available in pool")
            state.endpoint_name = conn.endpoint_name
            state.endpoint_url = self.registry.get(conn.endpoint_name).url
            t0 = time.monotonic()
            try:
                result = await run_operation(operation, conn.w3, self.call_timeout)
            except Exception as e:
                err = e
                if isinstance(e, asyncio.TimeoutError):
                    err = RpcTimeoutError(
                        f"Operation timeout after {self.call_timeout}s on {conn.connection_id}")
                if is_connection_error(err):
                    self.mark_connection_failed(conn)
                if err is e:
                    raise
                raise err from e
            finally:
                self.release(conn)
            self.registry.record_success(conn.endpoint_name, (time.monotonic() - t0) * 1000)
            return result

        def on_failure(state: RetryState):
            print(f"[RPC-POOL] {description} attempt {state.attempt_number}/{state.max_attempts} "
                  f"failed: {str(state.last_error)[:100]}")
            if state.endpoint_name is not None and state.classification is not ErrorKind.FATAL:
                self.registry.record_failure(state.endpoint_name, state.classification)

        return await retry_async(
            attempt,
            max_attempts=max_retries,
            description=description,
            backoff=exponential_backoff,
            on_failure=on_failure,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Status / shutdown
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, dict]:
        return {
            name: {"healthy": sum(1 for c in conns if c.is_healthy), "total": len(conns)}
            for name, conns in self._connections.items()
        }

    def stop(self):
        """Stop leasing connections. Idempotent; close() releases the sessions."""
        self._closed = True

    async def close(self):
        """Disconnect every pooled provider session."""
        self.stop()
        conns = self.connections()
        self._connections.clear()
        for conn in conns:
            provider = getattr(conn.w3, "provider", None)
            disconnect = getattr(provider, "disconnect", None)
            if disconnect is None:
                continue
            try:
                await disconnect()
            except Exception as e:
                print(f"[RPC-POOL] ⚠️  Failed to close {conn.connection_id}: {e}")
