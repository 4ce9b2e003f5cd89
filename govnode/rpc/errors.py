"""
RPC error taxonomy and classification.

Every raw exception coming out of web3 / aiohttp / asyncio is mapped to an
ErrorKind exactly once, here. The pool, the dispatcher and the health monitor
branch on the enum and never look at message strings themselves.

Classification order:
  1. Fatal (insufficient funds, stale nonce, duplicate / underpriced tx)
  2. Denylisted provider host → rate limited
  3. Rate limit (429, -32005, "too many requests", free-tier batch limits)
  4. Timeout
  5. Everything else → transient
"""

import asyncio
from enum import Enum
from typing import Iterable, Optional

import aiohttp


class ErrorKind(Enum):
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.FATAL


# Providers that throttle so aggressively every error from them is a rate limit
DEFAULT_DENYLIST = ("drpc.org",)

_FATAL_MESSAGES = (
    "insufficient funds",
    "nonce too low",
    "already known",
    "replacement transaction underpriced",
)
_FATAL_CODES = ("INSUFFICIENT_FUNDS", "NONCE_EXPIRED")

_RATE_LIMIT_MESSAGES = (
    "too many requests",
    "rate limit",
    "batch of more than 3",
    "missing response for request",
    "free tier",
    "-32005",
    "429",
)
_RATE_LIMIT_CODES = ("BAD_DATA", "-32005", "429")

_TIMEOUT_MESSAGES = ("timeout", "timed out")
_TIMEOUT_CODES = ("TIMEOUT",)

# Errors that mean the underlying transport is broken, not the request
_CONNECTION_MESSAGES = (
    "network",
    "connection",
    "enotfound",
    "econnreset",
    "econnrefused",
    "reset by peer",
    "refused",
    "name or service not known",
    "cannot start up",
    "failed to detect network",
)
_CONNECTION_CODES = ("NETWORK_ERROR", "TIMEOUT", "SERVER_ERROR")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RpcError(Exception):
    """Base class for everything the RPC layer raises to its callers."""


class RpcTimeoutError(RpcError):
    """An operation did not finish within its per-call timeout."""


class NoHealthyConnectionError(RpcError):
    """Neither the pool nor the endpoint registry could hand out a connection."""


class EndpointValidationError(RpcError):
    """Startup validation found no endpoint serving the expected chain."""


class RpcCallError(RpcError):
    """A dispatched call failed for good. Consumers must treat it as "did not happen"."""

    def __init__(self, description: str, attempts: int,
                 last_error: Optional[BaseException], kind: Optional[ErrorKind]):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        self.kind = kind
        super().__init__(self._format())

    def _format(self) -> str:
        return (f"{self.description} failed after {self.attempts} attempts: "
                f"{_message(self.last_error) or 'Unknown error'}")


class FatalRpcError(RpcCallError):
    """Non-retryable failure (funds, nonce, duplicate tx). Raised on first sight."""

    def _format(self) -> str:
        return (f"{self.description} failed with non-retryable error after "
                f"{self.attempts} attempt(s): {_message(self.last_error)}")


class RetryExhaustedError(RpcCallError):
    """Every attempt was consumed without a success."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def _message(e: Optional[BaseException]) -> str:
    if e is None:
        return ""
    text = str(e)
    return text if text else type(e).__name__


def _error_code(e: BaseException) -> str:
    """Vendor error code as an upper-case string ("" when absent).

    Looks at `.code` and at a JSON-RPC error dict passed as the first arg,
    which is how web3 surfaces provider errors.
    """
    code = getattr(e, "code", None)
    if code is None and e.args and isinstance(e.args[0], dict):
        code = e.args[0].get("code")
    if code is None:
        return ""
    return str(code).upper()


def _is_denylisted(endpoint_url: Optional[str], denylist: Iterable[str]) -> bool:
    if not endpoint_url:
        return False
    url = endpoint_url.lower()
    return any(host in url for host in denylist)


def classify_error(
    e: BaseException,
    endpoint_url: Optional[str] = None,
    denylist: Iterable[str] = DEFAULT_DENYLIST,
) -> ErrorKind:
    """Map a raw exception to an ErrorKind."""
    msg = _message(e).lower()
    code = _error_code(e)

    if any(s in msg for s in _FATAL_MESSAGES) or code in _FATAL_CODES:
        return ErrorKind.FATAL

    if _is_denylisted(endpoint_url, denylist):
        return ErrorKind.RATE_LIMITED

    if isinstance(e, aiohttp.ClientResponseError) and e.status == 429:
        return ErrorKind.RATE_LIMITED
    if any(s in msg for s in _RATE_LIMIT_MESSAGES) or code in _RATE_LIMIT_CODES:
        return ErrorKind.RATE_LIMITED

    if isinstance(e, (asyncio.TimeoutError, TimeoutError, RpcTimeoutError)):
        return ErrorKind.TIMEOUT
    if any(s in msg for s in _TIMEOUT_MESSAGES) or code in _TIMEOUT_CODES:
        return ErrorKind.TIMEOUT

    return ErrorKind.TRANSIENT


def is_connection_error(e: BaseException) -> bool:
    """True when the failure points at the transport (the pooled connection)."""
    if isinstance(e, (asyncio.TimeoutError, TimeoutError, RpcTimeoutError,
                      aiohttp.ClientConnectionError)):
        return True
    msg = _message(e).lower()
    if any(s in msg for s in _TIMEOUT_MESSAGES):
        return True
    return any(s in msg for s in _CONNECTION_MESSAGES) or _error_code(e) in _CONNECTION_CODES
