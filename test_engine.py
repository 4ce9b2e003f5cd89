"""
Live dispatcher integration test (network-bound, not collected by pytest).
Runs the RpcDispatcher against public Sepolia endpoints for ~2 minutes.
Includes a denylisted endpoint to prove rotation, fires a sequential scan,
and lets the health monitor run a few probe rounds.
No env vars or .env needed.

    python3 test_engine.py
"""

import asyncio
import time

from govnode.rpc.dispatcher import RpcDispatcher
from govnode.rpc.endpoints import endpoints_from_urls

SEPOLIA_CHAIN_ID = 11155111
URLS = [
    "https://sepolia.drpc.org",                       # denylisted: any error rotates away
    "https://ethereum-sepolia-rpc.publicnode.com",
    "https://sepolia.gateway.tenderly.co/public",
    "https://rpc.sepolia.org",
]


async def main():
    print("=" * 60)
    print("  DISPATCHER LIVE INTEGRATION TEST (2 minutes)")
    print("=" * 60)
    print()

    dispatcher = RpcDispatcher(
        endpoints_from_urls(URLS, max_rps=2.0),
        chain_id=SEPOLIA_CHAIN_ID,
        health_check_interval=20.0,
        verbose=True,
    )
    await dispatcher.validate_endpoints()
    dispatcher.start()
    dispatcher.print_status()

    reads = [0]
    failures = [0]

    async def read_loop():
        while True:
            try:
                block = await dispatcher.execute_with_retry(
                    lambda w3: w3.eth.block_number, description="Live block height")
                reads[0] += 1
                print(f"  [READ {reads[0]:>3}] block={block} via {dispatcher.metrics.active_provider}")
            except Exception as e:
                failures[0] += 1
                print(f"  [READ] failed: {e}")
            await asyncio.sleep(3)

    # Sequential best-effort scan over the last 5 blocks
    head = await dispatcher.execute_with_retry(lambda w3: w3.eth.block_number,
                                               description="Scan head")
    ops = [
        (lambda n: (lambda w3: w3.eth.get_block(n)))(head - i)
        for i in range(5)
    ]
    blocks = await dispatcher.execute_sequentially(ops, "BlockScan", delay_between_ops=0.2)
    print(f"[SCAN] fetched {len(blocks)}/5 blocks")

    t_start = time.time()
    task = asyncio.create_task(read_loop())
    try:
        await asyncio.sleep(120)
    except KeyboardInterrupt:
        pass
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    elapsed = time.time() - t_start
    m = dispatcher.get_metrics()
    print()
    dispatcher.print_status()
    dispatcher.monitor.log_detailed_metrics()
    await dispatcher.close()

    print()
    print("=" * 60)
    print(f"  LIVE TEST COMPLETE")
    print(f"  Duration:   {elapsed:.0f}s")
    print(f"  Reads:      {reads[0]} (failed {failures[0]})")
    print(f"  Requests:   {m['total_requests']} ok={m['successful_requests']}")
    print(f"  429 hits:   {m['rate_limit_hits']}")
    print("=" * 60)

    # Assertions
    assert reads[0] >= 20, f"Expected >=20 reads in 2min, got {reads[0]}"
    assert len(blocks) >= 4, f"Expected >=4 scanned blocks, got {len(blocks)}"
    assert m["network_healthy"], "Expected network to be healthy"
    print("\n✅ ALL ASSERTIONS PASSED")


if __name__ == "__main__":
    asyncio.run(main())
