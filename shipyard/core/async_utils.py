"""
Async utilities

Bounded retries with exponential backoff and wall-clock deadlines
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional, TypeVar

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class Backoff:
    """Exponential backoff schedule"""
    delay: float = 1.0
    factor: float = 2.0
    max_delay: Optional[float] = None

    def wait_time(self, attempt: int) -> float:
        """Delay before retry number *attempt* (0-based)"""
        wait = self.delay * (self.factor ** attempt)
        if self.max_delay is not None:
            wait = min(wait, self.max_delay)
        return wait


async def retry_async(
    func: Callable[..., Coroutine[Any, Any, T]],
    *args,
    max_retries: int = 3,
    backoff: Optional[Backoff] = None,
    exceptions: tuple = (),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    **kwargs,
) -> T:
    """Run *func* retrying on *exceptions* and on errors flagged `retryable`

    Args:
        func: coroutine function to call
        max_retries: retries after the first attempt
        backoff: wait schedule between attempts
        exceptions: extra exception types to retry; anything else propagates
        on_retry: callback(attempt, error) invoked before each wait
    """
    backoff = backoff or Backoff()
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not (isinstance(e, exceptions) or getattr(e, "retryable", False)):
                raise
            last_exception = e

            if attempt < max_retries:
                wait_time = backoff.wait_time(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                    f"Retrying in {wait_time:.1f}s..."
                )
                if on_retry:
                    on_retry(attempt + 1, e)
                await asyncio.sleep(wait_time)

    raise last_exception


class Deadline:
    """Monotonic deadline shared by a polling loop"""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._start = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._start

    @property
    def remaining(self) -> float:
        return max(0.0, self.timeout - self.elapsed)

    @property
    def expired(self) -> bool:
        return self.elapsed >= self.timeout

    async def sleep(self, interval: float) -> None:
        """Sleep for *interval*, never past the deadline"""
        await asyncio.sleep(min(interval, self.remaining))
