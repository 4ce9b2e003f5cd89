"""Shared fixtures: a controllable clock, fake web3 connections, endpoint builders."""

from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from govnode.rpc.dispatcher import RpcDispatcher
from govnode.rpc.endpoints import Endpoint, EndpointRegistry
from govnode.rpc.pool import ConnectionPool

SEPOLIA = 11155111


class FakeClock:
    """Wall clock + sleep pair. Sleeping advances time instead of blocking."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)


class FakeEth:
    def __init__(self, w3: "FakeW3"):
        self._w3 = w3

    @property
    def block_number(self):
        return self._w3.call("block_number")

    @property
    def chain_id(self):
        return self._w3.call("chain_id")


class FakeProvider:
    def __init__(self):
        self.disconnected = False

    async def disconnect(self):
        self.disconnected = True


class FakeW3:
    """Stands in for AsyncWeb3: eth.block_number / eth.chain_id are awaitable."""

    def __init__(self, endpoint_name: str, chain_id: int = SEPOLIA, block: int = 5_000_000):
        self.endpoint_name = endpoint_name
        self.chain_id = chain_id
        self.block = block
        self.fail_with: Optional[BaseException] = None
        self.calls = 0
        self.eth = FakeEth(self)
        self.provider = FakeProvider()

    async def call(self, what: str):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return self.chain_id if what == "chain_id" else self.block


class FakeNetwork:
    """Connection factory recording every FakeW3 it creates, per endpoint."""

    def __init__(self):
        self.connections: Dict[str, List[FakeW3]] = {}

    def __call__(self, endpoint: Endpoint, index: int) -> FakeW3:
        w3 = FakeW3(endpoint.name)
        self.connections.setdefault(endpoint.name, []).append(w3)
        return w3

    def fail(self, name: str, exc: BaseException) -> None:
        for w3 in self.connections[name]:
            w3.fail_with = exc

    def set_chain(self, name: str, chain_id: int) -> None:
        for w3 in self.connections[name]:
            w3.chain_id = chain_id

    def calls(self, name: str) -> int:
        return sum(w3.calls for w3 in self.connections.get(name, []))


def make_endpoints(n: int = 4, rps: float = 100.0) -> List[Endpoint]:
    return [
        Endpoint(name=f"rpc{i}", url=f"https://rpc{i}.example.org", priority=i,
                 max_requests_per_second=rps)
        for i in range(1, n + 1)
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def registry(clock: FakeClock) -> EndpointRegistry:
    return EndpointRegistry(make_endpoints(4), clock=clock)


@pytest.fixture
def pool(registry: EndpointRegistry, network: FakeNetwork, clock: FakeClock) -> ConnectionPool:
    return ConnectionPool(registry, connection_factory=network, clock=clock, sleep=clock.sleep)


@pytest.fixture
def make_dispatcher(clock: FakeClock, network: FakeNetwork):
    def _make(n: int = 4, endpoints: Optional[List[Endpoint]] = None, **kwargs) -> RpcDispatcher:
        kwargs.setdefault("pre_delay", (0.0, 0.0))
        kwargs.setdefault("chain_id", SEPOLIA)
        return RpcDispatcher(
            endpoints if endpoints is not None else make_endpoints(n),
            connection_factory=network,
            clock=clock,
            sleep=clock.sleep,
            **kwargs,
        )
    return _make
