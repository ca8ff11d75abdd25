from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, ParamSpec, TypeVar


T = TypeVar("T")
P = ParamSpec("P")


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    attempts: int = 3,
    backoff_s: float = 1.0,
    is_retryable: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
    **kwargs: P.kwargs,
) -> T:
    """Retry an async function with linear backoff.

    Args:
        func: async callable to invoke
        attempts: max attempts (>=1). Total tries equals attempts.
        backoff_s: delay unit; the wait after failed attempt N is N * backoff_s
        is_retryable: predicate to decide whether to retry on exception
        on_retry: callback invoked before each sleep with (attempt_index starting at 1, delay_s, exception)

    Returns:
        Result of func on success

    Raises:
        Propagates last exception when attempts exhausted or not retryable
    """

    if attempts < 1:
        attempts = 1

    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            retry = True
            if is_retryable is not None:
                try:
                    retry = is_retryable(exc)
                except Exception:
                    retry = False
            if attempt >= attempts or not retry:
                raise

            delay_s = max(0.0, backoff_s * attempt)

            if on_retry is not None:
                try:
                    on_retry(attempt, delay_s, exc)
                except Exception:
                    pass

            await asyncio.sleep(delay_s)

    raise RuntimeError("retry_async exhausted without result")  # pragma: no cover
