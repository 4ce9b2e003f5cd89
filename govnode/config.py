"""
Governance node configuration — loads env vars, validates required, fails fast.

Hardened with:
  - URL validation for every RPC endpoint
  - Placeholder URLs ("undefined", "demo") dropped instead of dialed
  - Range validation for numeric tunables (clamped with a warning)
  - Network name → chain id mapping, so every endpoint can be checked
    against the expected chain at startup
"""

import os
import sys
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from govnode.rpc.endpoints import Endpoint, endpoints_from_urls

# Load .env from project root
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

_WARNINGS: list = []  # collected during load, printed at summary

NETWORKS = {
    "sepolia": 11155111,
    "mainnet": 1,
}

# Public Sepolia fallbacks, in priority order after ETHEREUM_RPC_URL
DEFAULT_FALLBACK_URLS = (
    "https://sepolia.gateway.tenderly.co/public",
    "https://ethereum-sepolia-rpc.publicnode.com",
    "https://rpc.sepolia.org",
)


def _require(name: str) -> str:
    """Get a required env var or exit with a clear error."""
    val = os.getenv(name)
    if not val:
        print(f"FATAL: missing required env var: {name}", file=sys.stderr)
        print(f"  Copy .env.example to .env and fill in the values.", file=sys.stderr)
        sys.exit(1)
    return val.strip()


def _optional(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _validate_url(url: str, label: str) -> str:
    """Validate a URL starts with http:// or https://."""
    if not url.startswith(("http://", "https://")):
        print(f"FATAL: {label} must start with http:// or https://: {url}", file=sys.stderr)
        sys.exit(1)
    return url


def _int_range(name: str, raw: str, low: int, high: int) -> int:
    """Parse an int and clamp to [low, high] with a warning."""
    try:
        val = int(raw)
    except ValueError:
        print(f"FATAL: {name} must be an integer, got: {raw}", file=sys.stderr)
        sys.exit(1)
    if val < low or val > high:
        clamped = max(low, min(val, high))
        _WARNINGS.append(f"{name}={val} out of range [{low},{high}], clamped to {clamped}")
        return clamped
    return val


def _is_placeholder(url: str) -> bool:
    return "undefined" in url or "demo" in url


def _split_urls(raw: str) -> List[str]:
    return [u.strip() for u in raw.split(",") if u.strip()]


# === Network ===
NETWORK_NAME: str = _optional("NETWORK_NAME", "sepolia").lower()
if NETWORK_NAME not in NETWORKS:
    print(f"FATAL: NETWORK_NAME must be one of {sorted(NETWORKS)}, got: {NETWORK_NAME}",
          file=sys.stderr)
    sys.exit(1)
CHAIN_ID: int = NETWORKS[NETWORK_NAME]

# === RPC endpoints (first = highest priority) ===
ETHEREUM_RPC_URL: str = _validate_url(_require("ETHEREUM_RPC_URL"), "ETHEREUM_RPC_URL")

_fallback_raw = _optional("RPC_FALLBACK_URLS", "")
_fallbacks = _split_urls(_fallback_raw) if _fallback_raw else list(DEFAULT_FALLBACK_URLS)

RPC_URLS: List[str] = []
for _u in [ETHEREUM_RPC_URL] + _fallbacks:
    _validate_url(_u, "RPC_FALLBACK_URLS entry")
    if _is_placeholder(_u):
        _WARNINGS.append(f"Dropped placeholder RPC URL: {_u[:40]}")
        continue
    if _u not in RPC_URLS:
        RPC_URLS.append(_u)

if not RPC_URLS:
    print("FATAL: no usable RPC endpoints configured", file=sys.stderr)
    sys.exit(1)
if len(RPC_URLS) < 2:
    _WARNINGS.append("Only 1 RPC endpoint — no fallback available")

RPC_DENYLIST: tuple = tuple(_split_urls(_optional("RPC_DENYLIST", "drpc.org")))

# === RPC tuning (with range validation) ===
API_RATE_LIMIT_PER_MINUTE: int = _int_range(
    "API_RATE_LIMIT_PER_MINUTE", _optional("API_RATE_LIMIT_PER_MINUTE", "60"), 1, 6000)
RPC_POOL_SIZE: int = _int_range("RPC_POOL_SIZE", _optional("RPC_POOL_SIZE", "3"), 1, 10)
RPC_CALL_TIMEOUT: int = _int_range("RPC_CALL_TIMEOUT", _optional("RPC_CALL_TIMEOUT", "10"), 1, 120)
RPC_PROBE_TIMEOUT: int = _int_range("RPC_PROBE_TIMEOUT", _optional("RPC_PROBE_TIMEOUT", "5"), 1, 60)
HEALTH_CHECK_INTERVAL: int = _int_range(
    "HEALTH_CHECK_INTERVAL", _optional("HEALTH_CHECK_INTERVAL", "30"), 5, 3600)
RATE_LIMIT_COOLDOWN: int = _int_range(
    "RATE_LIMIT_COOLDOWN", _optional("RATE_LIMIT_COOLDOWN", "60"), 1, 3600)
UNHEALTHY_THRESHOLD: int = _int_range(
    "UNHEALTHY_THRESHOLD", _optional("UNHEALTHY_THRESHOLD", "3"), 1, 20)

LOG_LEVEL: str = _optional("LOG_LEVEL", "INFO")
if LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR"):
    _WARNINGS.append(f"Unknown LOG_LEVEL '{LOG_LEVEL}', defaulting to INFO")
    LOG_LEVEL = "INFO"


def build_endpoints() -> List[Endpoint]:
    """Endpoint list in priority order with the configured rate budget."""
    return endpoints_from_urls(RPC_URLS, max_rps=API_RATE_LIMIT_PER_MINUTE / 60)


def dispatcher_kwargs() -> dict:
    """Constructor arguments for RpcDispatcher derived from the environment."""
    return {
        "chain_id": CHAIN_ID,
        "pool_size": RPC_POOL_SIZE,
        "call_timeout": float(RPC_CALL_TIMEOUT),
        "probe_timeout": float(RPC_PROBE_TIMEOUT),
        "health_check_interval": float(HEALTH_CHECK_INTERVAL),
        "rate_limit_cooldown": float(RATE_LIMIT_COOLDOWN),
        "unhealthy_threshold": UNHEALTHY_THRESHOLD,
        "denylist": RPC_DENYLIST,
        "verbose": LOG_LEVEL == "DEBUG",
    }


def print_config_summary() -> None:
    """Print a non-sensitive config summary for startup verification."""
    print("--- Governance Node Config ---")
    print(f"  Network:        {NETWORK_NAME} (chain {CHAIN_ID})")
    print(f"  Primary RPC:    {ETHEREUM_RPC_URL[:40]}...")
    print(f"  RPC endpoints:  {len(RPC_URLS)}")
    print(f"  Rate budget:    {API_RATE_LIMIT_PER_MINUTE}/min per endpoint")
    print(f"  Pool size:      {RPC_POOL_SIZE} per endpoint")
    print(f"  Call timeout:   {RPC_CALL_TIMEOUT}s (probe {RPC_PROBE_TIMEOUT}s)")
    print(f"  Health checks:  every {HEALTH_CHECK_INTERVAL}s")
    print(f"  429 cooldown:   {RATE_LIMIT_COOLDOWN}s")
    print(f"  Unhealthy at:   {UNHEALTHY_THRESHOLD} consecutive errors")
    print(f"  Denylist:       {', '.join(RPC_DENYLIST) or '-'}")
    print(f"  Log level:      {LOG_LEVEL}")
    if _WARNINGS:
        print(f"  ⚠️  {len(_WARNINGS)} config warning(s):")
        for w in _WARNINGS:
            print(f"    - {w}")
    print("-" * 30)
