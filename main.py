"""
Governance node agent — Entry point.
Wires the RPC dispatcher and runs health monitoring plus a block-height
heartbeat as concurrent asyncio tasks.

Usage:
    python3 main.py              # Run the agent (monitor + heartbeat)
    python3 main.py --smoke      # Smoke test only (validate endpoints + exit)
"""

import argparse
import asyncio
import sys

from govnode.config import (
    CHAIN_ID,
    NETWORK_NAME,
    build_endpoints,
    dispatcher_kwargs,
    print_config_summary,
)
from govnode.rpc.dispatcher import RpcDispatcher
from govnode.rpc.errors import EndpointValidationError, RpcError

HEARTBEAT_INTERVAL = 60.0      # seconds between block-height reads
STATUS_LOG_INTERVAL = 300.0    # seconds between status dumps


async def smoke_test():
    """Smoke test: validate every endpoint, read one block through the dispatcher, exit."""
    print("=" * 50)
    print("  Governance Node — Smoke Test")
    print("=" * 50)
    print()
    print_config_summary()
    print()

    dispatcher = RpcDispatcher(build_endpoints(), **dispatcher_kwargs())
    try:
        print(f"[RPC] Validating endpoints against {NETWORK_NAME} ({CHAIN_ID})...")
        try:
            await dispatcher.validate_endpoints()
        except EndpointValidationError as e:
            print(f"[RPC] ❌ {e}", file=sys.stderr)
            sys.exit(1)

        try:
            block = await dispatcher.execute_with_retry(
                lambda w3: w3.eth.block_number, description="Block height")
        except RpcError as e:
            print(f"[RPC] ❌ Failed to read block height: {e}", file=sys.stderr)
            sys.exit(1)

        print()
        dispatcher.print_status()
    finally:
        await dispatcher.close()

    print()
    print("=" * 50)
    print("  ✅ SMOKE TEST PASSED")
    print(f"  Chain: {NETWORK_NAME} ({CHAIN_ID}) | Block: {block}")
    print("=" * 50)


async def heartbeat(dispatcher: RpcDispatcher):
    """Read block height on a fixed cadence and dump status periodically."""
    last_status = 0.0
    loop = asyncio.get_running_loop()
    while True:
        try:
            block = await dispatcher.execute_with_retry(
                lambda w3: w3.eth.block_number, description="Heartbeat block height")
            print(f"[NODE] Block {block} via {dispatcher.metrics.active_provider}")
        except RpcError as e:
            print(f"[NODE] ⚠️  Heartbeat failed: {e}")

        now = loop.time()
        if now - last_status >= STATUS_LOG_INTERVAL:
            last_status = now
            dispatcher.print_status()

        await asyncio.sleep(HEARTBEAT_INTERVAL)


async def run_agent():
    """Full agent: RPC dispatcher + background health monitor + heartbeat."""
    print("=" * 50)
    print("  Governance Node — Starting")
    print("=" * 50)
    print()
    print_config_summary()
    print()

    endpoints = build_endpoints()
    print(f"[INIT] Creating RPC dispatcher ({len(endpoints)} endpoints)...")
    dispatcher = RpcDispatcher(endpoints, **dispatcher_kwargs())

    try:
        await dispatcher.validate_endpoints()
    except EndpointValidationError as e:
        print(f"[INIT] FATAL: {e}", file=sys.stderr)
        await dispatcher.close()
        sys.exit(1)

    dispatcher.start()
    dispatcher.print_status()

    print()
    print("=" * 50)
    print("  Governance Node — Running")
    print("=" * 50)
    print("  Ctrl+C to stop")
    print()

    task = asyncio.create_task(heartbeat(dispatcher), name="heartbeat")
    try:
        await task
    except asyncio.CancelledError:
        pass
    finally:
        print("\n[NODE] Shutting down...")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await dispatcher.close()
        print("[NODE] Stopped.")


def main():
    parser = argparse.ArgumentParser(description="Governance node agent")
    parser.add_argument("--smoke", action="store_true", help="Smoke test only (validate + exit)")
    args = parser.parse_args()

    try:
        if args.smoke:
            asyncio.run(smoke_test())
        else:
            asyncio.run(run_agent())
    except KeyboardInterrupt:
        print("\nStopped.")


if __name__ == "__main__":
    main()
