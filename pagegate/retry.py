import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff(attempt: int, base_s: float = 1.0, cap_s: float = 5.0) -> float:
    """
    Delay to wait after failed attempt number `attempt` (1-based).

    Doubles from `base_s` and never exceeds `cap_s`:
    1 -> 1s, 2 -> 2s, 3 -> 4s, 4+ -> 5s with the defaults.
    """
    if attempt < 1:
        raise ValueError("attempt numbers start at 1")
    return min(base_s * 2 ** (attempt - 1), cap_s)


class RetryPolicy:
    """
    Bounded retries with exponential backoff around one logical fetch.

    Every attempt must build fresh resources, so `run` takes a factory and
    calls it once per attempt. Failures of all but the last attempt are
    logged and followed by a backoff sleep; the last one propagates.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay_s: float = 1.0,
        max_delay_s: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return backoff(attempt, self.base_delay_s, self.max_delay_s)

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "") -> T:
        for attempt in range(1, self.max_retries + 1):
            logger.info("Attempt %d/%d for %s", attempt, self.max_retries, label)
            try:
                return await operation()
            except ValidationError:
                raise
            except Exception as e:
                if attempt == self.max_retries:
                    logger.error(
                        "Failed to fetch %s after %d attempts: %s", label, self.max_retries, e
                    )
                    raise
                wait = self.delay_for(attempt)
                logger.warning("Attempt %d for %s failed (%s), retrying in %.1fs", attempt, label, e, wait)
                await self._sleep(wait)
        raise AssertionError("unreachable")
