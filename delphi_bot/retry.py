from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_before_sleep(name: str):
    def _log(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s attempt %s failed, retrying in %.0fs: %s",
            name,
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            exc,
        )

    return _log


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay_seconds: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    name: str = "operation",
) -> T:
    """Run ``operation`` up to ``attempts`` times with a fixed delay between tries.

    The last exception is re-raised unchanged once attempts are exhausted.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, int(attempts))),
        wait=wait_fixed(max(0.0, float(delay_seconds))),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_before_sleep(name),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await operation()
    return result
