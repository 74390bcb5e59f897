"""
Backoff for relay and node calls.

A call is repeated only when the request never produced an answer: the
connection failed, timed out, or the server replied with a 5xx status.
A JSON-RPC error object is an answer and propagates on the first attempt.

    from enclave_engine.retry import RetryConfig, retry_async

    response = await retry_async(client.post, url, json=body, config=RetryConfig(max_retries=2))
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, Tuple, Type, TypeVar

import httpx

from .exceptions import EnclaveError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def is_transport_error(exc: BaseException) -> bool:
    """True when the request got no usable answer from the endpoint."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff schedule.

    ``max_retries`` counts repeats after the first attempt, so a call is made
    at most ``max_retries + 1`` times. The wait before repeat ``n`` is
    ``base_delay * exponential_base**n`` capped at ``max_delay``, spread by
    ``jitter``. A failure is repeated only if it is one of
    ``retryable_exceptions`` and ``is_retryable`` accepts it.
    """

    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: float = 0.2
    retryable_exceptions: Tuple[Type[BaseException], ...] = (httpx.HTTPError,)
    is_retryable: Callable[[BaseException], bool] = is_transport_error

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self, repeat: int) -> float:
        wait = min(self.base_delay * self.exponential_base**repeat, self.max_delay)
        if self.jitter:
            wait += wait * self.jitter * random.uniform(-1.0, 1.0)
        return max(wait, 0.0)

    def retries(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retryable_exceptions) and self.is_retryable(exc)


class RetryExhausted(EnclaveError):
    """Every attempt ended in a transport failure.

    ``original_exception`` is the failure from the final attempt.
    """

    error_code = "RETRY_EXHAUSTED"

    def __init__(self, message: str, attempts: int, original_exception: BaseException) -> None:
        super().__init__(message, details={"attempts": attempts})
        self.attempts = attempts
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[R]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> R:
    """Await ``func(*args, **kwargs)``, repeating it on transport failures.

    Raises:
        RetryExhausted: when the last allowed attempt also failed in transport
    """
    schedule = config or RetryConfig()
    label = getattr(func, "__qualname__", None) or repr(func)

    failure: BaseException | None = None
    for repeat in range(schedule.attempts):
        if failure is not None:
            wait = schedule.backoff(repeat - 1)
            logger.warning(
                "%s failed (%s: %s); attempt %d/%d in %.2fs",
                label, type(failure).__name__, failure, repeat + 1, schedule.attempts, wait,
            )
            await asyncio.sleep(wait)
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            if not schedule.retries(exc):
                raise
            failure = exc

    assert failure is not None
    raise RetryExhausted(
        f"{label} failed after {schedule.attempts} attempts: {failure}",
        attempts=schedule.attempts,
        original_exception=failure,
    ) from failure


__all__ = [
    "RetryConfig",
    "RetryExhausted",
    "is_transport_error",
    "retry_async",
]
