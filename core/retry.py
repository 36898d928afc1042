from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional


@dataclass(frozen=True)
class RetryOutcome:
    """Result of a bounded retry loop.

    ``succeeded`` is True when ``predicate`` accepted a value, in which case
    ``attempts`` is the attempt number that produced it. Otherwise the loop was
    exhausted after ``attempts`` tries and ``value``/``error`` hold whatever the
    final attempt produced.
    """

    succeeded: bool
    attempts: int
    value: Any = None
    error: Optional[BaseException] = None


async def retry_until(
    operation: Callable[[int], Awaitable[Any]],
    *,
    max_attempts: int,
    delay: float,
    predicate: Callable[[Any], bool],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome:
    # delay is in seconds; no wait after the final attempt
    attempt = 0
    value: Any = None
    error: Optional[BaseException] = None
    for attempt in range(1, int(max_attempts) + 1):
        value = None
        error = None
        try:
            value = await operation(attempt)
        except Exception as e:
            error = e
            logging.debug(f'Attempt {attempt}/{max_attempts} raised: {e}')
        else:
            if predicate(value):
                return RetryOutcome(True, attempt, value, None)
        if attempt < max_attempts and delay > 0:
            await sleep(delay)
    return RetryOutcome(False, attempt, value, error)
