import asyncio
import itertools
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .errors import PermitError

logger = logging.getLogger(__name__)

_permit_ids = itertools.count(1)


class Permit:
    """Token entitling its holder to exactly one open browser page."""

    __slots__ = ("id",)

    def __init__(self):
        self.id = next(_permit_ids)

    def __reduce__(self):
        raise TypeError("Permit objects cannot be serialized")

    def __repr__(self) -> str:
        return f"<Permit #{self.id}>"


class ConcurrencyLimiter:
    """
    Counting permit gate with an explicit FIFO wait queue.

    - `acquire` takes a free permit or queues the caller
    - `release` hands the permit straight to the oldest waiter, so a caller
      arriving later can never take it first
    - Releasing a permit that is not outstanding is an invariant violation:
      raised as PermitError when `strict`, logged and ignored otherwise

    Callers should go through `permit()` so release happens on every exit path.
    """

    def __init__(self, capacity: int = 5, strict: bool = False):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.strict = strict
        self._available = capacity
        self._waiters: deque[asyncio.Future] = deque()
        self._outstanding: set[Permit] = set()

    @property
    def available(self) -> int:
        return self._available

    @property
    def in_use(self) -> int:
        return len(self._outstanding)

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> Permit:
        if self._available > 0 and not self.waiting:
            self._available -= 1
            return self._issue()

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            return await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Handed a permit just as we were cancelled: pass it on.
                self.release(fut.result())
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self, permit: Permit) -> None:
        if permit not in self._outstanding:
            msg = f"Release of {permit!r} which is not outstanding"
            if self.strict:
                raise PermitError(msg)
            logger.error(msg)
            return
        self._outstanding.discard(permit)

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(self._issue())
                return
        self._available += 1

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[Permit]:
        token = await self.acquire()
        try:
            yield token
        finally:
            self.release(token)

    def _issue(self) -> Permit:
        token = Permit()
        self._outstanding.add(token)
        return token
