import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def async_retry(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_delay: float,
    exceptions: Iterable[Type[BaseException]],
    label: str = "operation",
) -> T:
    """
    Async retry helper with exponential backoff.

    param func: async callable returning a value
    param retries: number of retries after the first attempt; 0 means a single try
    param base_delay: initial backoff delay in seconds, doubled after each failure
    param exceptions: exception types considered transient; anything else propagates at once
    param label: name used in the retry log line
    """
    delay = base_delay
    exc_types = tuple(exceptions)

    for attempt in range(retries + 1):
        try:
            return await func()
        except exc_types as exc:
            if attempt >= retries:
                raise
            logger.info("%s failed (%s); retry %d/%d in %.2fs", label, exc, attempt + 1, retries, delay)
            await asyncio.sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")
