"""Unit tests for the background health monitor."""

import asyncio

import pytest

from govnode.rpc.monitor import HealthMonitor


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def monitor(registry, pool, clock):
    return HealthMonitor(registry, pool, clock=clock, sleep=clock.sleep)


class TestProbing:

    def test_round_probes_every_endpoint_with_gaps(self, monitor, network, clock):
        _run(monitor.check_all())
        assert [network.calls(f"rpc{i}") for i in range(1, 5)] == [1, 1, 1, 1]
        assert clock.sleeps == [0.1, 0.1, 0.1]

    def test_failed_probe_counts_against_endpoint(self, monitor, network, registry):
        network.fail("rpc2", RuntimeError("ECONNREFUSED"))
        _run(monitor.check_all())
        ep = registry.get("rpc2")
        assert ep.consecutive_error_count == 1
        assert ep.health.failed_checks == 1
        assert ep.is_healthy

    def test_unhealthy_after_three_failed_rounds(self, monitor, network, registry):
        network.fail("rpc2", asyncio.TimeoutError())
        for _ in range(3):
            _run(monitor.check_all())
        assert not registry.get("rpc2").is_healthy
        assert registry.get("rpc1").is_healthy
        assert monitor.healthy_providers() == ["rpc1", "rpc3", "rpc4"]

    def test_recovers_after_probes_succeed_again(self, monitor, network, registry):
        network.fail("rpc2", RuntimeError("down"))
        for _ in range(3):
            _run(monitor.check_all())
        network.fail("rpc2", None)
        for _ in range(3):
            _run(monitor.check_all())
        assert registry.get("rpc2").is_healthy

    def test_success_revives_pooled_connections(self, monitor, pool):
        for conn in pool.connections("rpc3"):
            pool.mark_connection_failed(conn)
        assert pool.status()["rpc3"]["healthy"] == 0
        _run(monitor.check_all())
        assert pool.status()["rpc3"]["healthy"] == 3

    def test_closed_pool_probe_is_a_failure_without_penalty(self, monitor, pool, registry):
        _run(pool.close())
        assert _run(monitor.check_endpoint(registry.get("rpc1"))) is False
        assert registry.get("rpc1").consecutive_error_count == 0

    def test_throttled_probe_starts_rate_limit_cooldown(self, monitor, network, registry):
        network.fail("rpc2", RuntimeError("429 Too Many Requests"))
        _run(monitor.check_all())
        assert registry.is_rate_limited("rpc2")
        assert not registry.is_rate_limited("rpc1")

    def test_denylisted_probe_failure_counts_as_rate_limit(self, registry, pool, network, clock):
        monitor = HealthMonitor(registry, pool, denylist=("rpc3.example.org",),
                                clock=clock, sleep=clock.sleep)
        network.fail("rpc3", RuntimeError("down"))
        network.fail("rpc4", RuntimeError("down"))
        _run(monitor.check_all())
        assert registry.is_rate_limited("rpc3")
        assert not registry.is_rate_limited("rpc4")

    def test_probe_skipped_while_live_calls_hold_every_connection(self, monitor, pool, network, registry):
        leased = [pool.acquire_for("rpc1") for _ in range(3)]
        assert _run(monitor.check_endpoint(registry.get("rpc1"))) is False
        assert network.calls("rpc1") == 0
        assert registry.get("rpc1").health.total_checks == 0
        assert all(c.in_use for c in leased)

    def test_probe_releases_its_connection(self, monitor, pool, network, registry):
        network.fail("rpc1", RuntimeError("down"))
        _run(monitor.check_all())
        assert all(not c.in_use for c in pool.connections())


class TestDecay:

    def test_decay_waits_for_interval(self, monitor, registry, clock):
        for _ in range(3):
            registry.record_failure("rpc1")
        monitor.maybe_decay()
        assert registry.get("rpc1").consecutive_error_count == 3
        clock.advance(3600)
        monitor.maybe_decay()
        assert registry.get("rpc1").consecutive_error_count == 2
        monitor.maybe_decay()
        assert registry.get("rpc1").consecutive_error_count == 2


class TestReporting:

    def test_metrics(self, monitor, network, clock):
        network.fail("rpc2", RuntimeError("down"))
        _run(monitor.check_all())
        clock.advance(30)
        metrics = monitor.get_metrics()
        assert metrics["rpc1"]["success_rate"] == 100.0
        assert metrics["rpc1"]["total_checks"] == 1
        assert metrics["rpc1"]["failed_checks"] == 0
        assert metrics["rpc1"]["seconds_since_success"] == 30
        assert metrics["rpc2"]["success_rate"] == 0.0
        assert metrics["rpc2"]["failed_checks"] == 1
        assert metrics["rpc2"]["seconds_since_success"] == -1

    def test_network_healthy_with_quarter_of_providers(self, monitor, network):
        assert monitor.is_network_healthy()
        for name in ("rpc1", "rpc2", "rpc3"):
            network.fail(name, RuntimeError("down"))
        _run(monitor.check_all())
        assert monitor.is_network_healthy()
        network.fail("rpc4", RuntimeError("down"))
        _run(monitor.check_all())
        assert not monitor.is_network_healthy()

    def test_all_down_is_logged(self, monitor, network, capsys):
        for name in ("rpc1", "rpc2", "rpc3", "rpc4"):
            network.fail(name, RuntimeError("down"))
        _run(monitor.check_all())
        assert "All 4 RPC providers are disconnected" in capsys.readouterr().out

    def test_best_endpoint_is_lowest_latency(self, monitor, registry):
        assert monitor.best_endpoint() is None
        _run(monitor.check_all())
        for ep, latency in zip(registry.endpoints, (40.0, 25.0, 5.0, 60.0)):
            ep.health.average_latency_ms = latency
        assert monitor.best_endpoint() == "rpc3"

    def test_detailed_metrics_logged_on_first_round(self, monitor, capsys):
        _run(monitor.check_all())
        out = capsys.readouterr().out
        assert "rpc1: success=100.0%" in out


class TestLifecycle:

    def test_start_and_stop(self, registry, pool, network, clock):
        monitor = HealthMonitor(registry, pool, interval=0.01, probe_gap=0.0, clock=clock)

        async def scenario():
            task = monitor.start()
            assert monitor.start() is task
            await asyncio.sleep(0.05)
            assert monitor.running
            monitor.stop()
            monitor.stop()
            await asyncio.gather(task, return_exceptions=True)

        _run(scenario())
        assert not monitor.running
        assert network.calls("rpc1") >= 1

    def test_stop_before_start_is_noop(self, monitor, capsys):
        monitor.stop()
        assert not monitor.running
        assert "Monitor stopped" not in capsys.readouterr().out
