"""
Per-operation retry budgets for sandbox backend calls.

File writes race with container start-up and the Docker daemon occasionally
answers 502/503 under load; those calls get a few more attempts with
exponential backoff. Ownership failures are never retried here, the
lifecycle recreates the sandbox instead.
"""

import asyncio
import random
import re
from typing import Awaitable, Callable, Dict, TypeVar

from healloop.core.exceptions import SandboxError, SandboxOwnershipError
from healloop.core.logging_config import logger


T = TypeVar("T")

OPERATION_RETRY_BUDGET: Dict[str, int] = {
    "make_dir": 5,
    "write_file": 5,
    "get_host": 1,
}

BASE_DELAY = 0.25
MAX_DELAY = 4.0

TRANSIENT_MARKERS = (
    "timed out",
    "timeout",
    "rate limit",
    "too many requests",
    "connection reset",
    "connection aborted",
    "connection refused",
    "temporarily unavailable",
    "network",
)

TRANSIENT_STATUS_PATTERN = re.compile(r"\b(408|429|502|503|504)\b")


def is_transient_backend_error(error: SandboxError) -> bool:
    if isinstance(error, SandboxOwnershipError):
        return False
    message = error.message.lower()
    return any(marker in message for marker in TRANSIENT_MARKERS) or bool(TRANSIENT_STATUS_PATTERN.search(message))


def retry_delay_seconds(attempt: int) -> float:
    """Exponential backoff with 0-25% jitter"""
    delay = min(BASE_DELAY * (2 ** attempt), MAX_DELAY)
    return delay + delay * random.uniform(0, 0.25)


async def call_with_retry_budget(
    operation: str,
    call: Callable[[], Awaitable[T]],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run call, retrying transient SandboxErrors up to the operation's budget"""
    budget = OPERATION_RETRY_BUDGET.get(operation, 0)
    attempt = 0
    while True:
        try:
            return await call()
        except SandboxError as e:
            if attempt >= budget or not is_transient_backend_error(e):
                raise
            delay = retry_delay_seconds(attempt)
            attempt += 1
            logger.warning(f"[Sandbox] {operation} failed ({e.message}), retry {attempt}/{budget} in {delay:.2f}s")
            await sleep(delay)
