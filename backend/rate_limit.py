"""
Rate-limit handling for outbound HubSpot calls.

RequestCoordinator wraps an async callable so that:
- 429 / RATE_LIMIT errors are retried with exponential backoff (1s, 2s, 4s, ...)
- concurrent calls sharing a request key collapse onto one in-flight call

Any other error propagates on first occurrence. Once retries are exhausted the
last error is re-raised unchanged.
"""

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3


def _lookup(obj: Any, *names: str) -> Any:
    """Read the first present attribute (or mapping key) among names."""
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, Mapping):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


def is_rate_limit_error(error: BaseException) -> bool:
    """True when the error is HubSpot telling us to slow down (HTTP 429)."""
    if _lookup(error, "code") == 429:
        return True

    response = _lookup(error, "response")
    if response is not None:
        if _lookup(response, "statusCode", "status_code") == 429:
            return True
        body = _lookup(response, "body")
        if _lookup(body, "errorType") == "RATE_LIMIT":
            return True

    if _lookup(_lookup(error, "body"), "errorType") == "RATE_LIMIT":
        return True

    return False


class RequestCoordinator:
    """Owns the in-flight request registry used for deduplication.

    Registry reads and writes happen without an await in between, so on a
    single event loop no lock is needed to keep one physical call per key.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._sleep = sleep
        self._in_flight: Dict[str, "asyncio.Future[Any]"] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def with_retry(self, fn: Callable[..., Awaitable[T]], key: Optional[str] = None,
                   max_retries: int = DEFAULT_MAX_RETRIES) -> Callable[..., Awaitable[T]]:
        """Return fn wrapped with 429 backoff and per-key deduplication.

        Callers should pass an explicit key; the function name fallback breaks
        as soon as two different lambdas share it.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        request_key = key or getattr(fn, "__name__", None) or "default"

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            existing = self._in_flight.get(request_key)
            if existing is not None:
                # Waiters share the outcome, including a failure; they never retry on their own
                return await asyncio.shield(existing)

            task = asyncio.ensure_future(self._attempt(fn, args, kwargs, request_key, max_retries))
            self._in_flight[request_key] = task
            task.add_done_callback(functools.partial(self._release, request_key))
            return await asyncio.shield(task)

        return wrapper

    async def _attempt(self, fn, args, kwargs, request_key: str, max_retries: int):
        total = max_retries + 1

        def log_retry(retry_state: RetryCallState) -> None:
            delay_ms = int(retry_state.next_action.sleep * 1000) if retry_state.next_action else 0
            logger.warning(
                f"HubSpot rate limit error on '{request_key}' "
                f"(attempt {retry_state.attempt_number}/{total}), retrying in {delay_ms}ms..."
            )

        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(total),
            wait=wait_exponential(multiplier=1, exp_base=2),
            retry=retry_if_exception(is_rate_limit_error),
            before_sleep=log_retry,
            reraise=True,
        )
        return await retrying(fn, *args, **kwargs)

    def _release(self, request_key: str, task: "asyncio.Future[Any]") -> None:
        if self._in_flight.get(request_key) is task:
            del self._in_flight[request_key]
        if not task.cancelled():
            # Mark the exception retrieved; every waiter re-raises it from shield()
            task.exception()


# Process-wide coordinator shared by the HubSpot services
_default_coordinator = RequestCoordinator()


def get_default_coordinator() -> RequestCoordinator:
    return _default_coordinator


def with_retry(fn: Callable[..., Awaitable[T]], key: Optional[str] = None,
               max_retries: int = DEFAULT_MAX_RETRIES) -> Callable[..., Awaitable[T]]:
    """Wrap fn using the process-wide coordinator."""
    return _default_coordinator.with_retry(fn, key, max_retries)
