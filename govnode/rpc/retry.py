"""
Bounded retry combinator shared by the dispatcher and the connection pool.

One loop, parameterized by:
  - classify:   exception → ErrorKind (see errors.classify_error)
  - backoff:    (kind, attempt) → seconds to sleep before the next attempt
  - on_failure: hook for health bookkeeping, rotation and logging

Fatal errors stop the loop on first sight. Anything else is retried until the
attempt budget is spent, then surfaced as a single RetryExhaustedError.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from govnode.rpc.errors import (
    ErrorKind,
    FatalRpcError,
    RetryExhaustedError,
    classify_error,
)

T = TypeVar("T")


@dataclass
class RetryState:
    """Per-call attempt bookkeeping. Lives for one retry_async call only."""
    attempt_number: int = 0
    max_attempts: int = 0
    last_error: Optional[BaseException] = None
    classification: Optional[ErrorKind] = None
    # Filled in by the attempt function once it has picked an endpoint
    endpoint_name: Optional[str] = None
    endpoint_url: Optional[str] = None


def linear_backoff(kind: ErrorKind, attempt: int) -> float:
    """Dispatcher backoff: 2s + 1s·attempt after a rate limit, 1s·attempt otherwise."""
    if kind is ErrorKind.RATE_LIMITED:
        return 2.0 + 1.0 * attempt
    return 1.0 * attempt


def exponential_backoff(kind: ErrorKind, attempt: int) -> float:
    """Pool backoff: 2^attempt seconds regardless of kind."""
    return float(2 ** attempt)


async def retry_async(
    attempt_fn: Callable[[RetryState], Awaitable[T]],
    *,
    max_attempts: int,
    description: str,
    backoff: Callable[[ErrorKind, int], float] = linear_backoff,
    classify: Callable[..., ErrorKind] = classify_error,
    on_failure: Optional[Callable[[RetryState], None]] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
) -> T:
    """Run attempt_fn until it succeeds, fails fatally, or runs out of attempts.

    attempt_fn receives the live RetryState so it can record which endpoint
    the attempt ran against (used for denylist classification).
    """
    max_attempts = max(1, max_attempts)
    state = RetryState(max_attempts=max_attempts)

    for attempt in range(1, max_attempts + 1):
        state.attempt_number = attempt
        state.endpoint_name = None
        state.endpoint_url = None
        try:
            return await attempt_fn(state)
        except Exception as e:
            kind = classify(e, state.endpoint_url)
            state.last_error = e
            state.classification = kind
            if on_failure is not None:
                on_failure(state)
            if kind is ErrorKind.FATAL:
                raise FatalRpcError(description, attempt, e, kind) from e
            if attempt < max_attempts:
                await sleep(backoff(kind, attempt))

    raise RetryExhaustedError(
        description, state.attempt_number, state.last_error, state.classification
    ) from state.last_error
