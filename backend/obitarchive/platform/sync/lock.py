"""Reconciliation tokens.

SingleFlight keeps at most one run alive inside the process. RedisLock extends
the guarantee across API instances sharing one catalog.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Hashable, Optional, TypeVar

from obitarchive.core.exceptions import ConcurrencyBusyError
from obitarchive.core.redis_client import RedisClient

T = TypeVar("T")

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class SingleFlight:
    """Run at most one coroutine at a time; later callers join it or are rejected.

    Each run carries a kind. A caller may only join a run of the same kind, so
    it never receives the result of work narrower than what it asked for.
    """

    def __init__(self):
        """Initialize with no run in progress."""
        self._current: Optional["asyncio.Task"] = None
        self._kind: Optional[Hashable] = None

    @property
    def busy(self) -> bool:
        """True while a run holds the token."""
        return self._current is not None and not self._current.done()

    def _clear(self, task: "asyncio.Task") -> None:
        if self._current is task:
            self._current = None
            self._kind = None
        if not task.cancelled():
            # Mark the exception retrieved; callers already saw it or left
            task.exception()

    async def run(
        self,
        factory: Callable[[], Awaitable[T]],
        coalesce: bool = True,
        kind: Hashable = None,
    ) -> T:
        """Start ``factory()`` unless a run is already in progress.

        The run is shielded, so a caller that goes away does not cancel it
        for the callers that joined.

        Args:
            factory: Creates the coroutine to run
            coalesce: Join a run in progress instead of raising
            kind: Identifies what the run does; only equal kinds are joined

        Returns:
            The result of the run this call started or joined

        Raises:
            ConcurrencyBusyError: If a run is in progress and ``coalesce`` is False,
                or the run in progress is of a different kind
        """
        if self.busy:
            if not coalesce or self._kind != kind:
                raise ConcurrencyBusyError()
            return await asyncio.shield(self._current)

        task = asyncio.ensure_future(factory())
        self._current = task
        self._kind = kind
        task.add_done_callback(self._clear)
        return await asyncio.shield(task)


class RedisLock:
    """Expiring Redis lock (``SET NX PX``) released only by its holder."""

    def __init__(self, redis_client: RedisClient, name: str, ttl_seconds: int):
        """Initialize the lock.

        Args:
            redis_client: Shared Redis client
            name: Redis key of the lock
            ttl_seconds: Expiry, so a crashed holder cannot block forever
        """
        self.redis_client = redis_client
        self.name = name
        self.ttl_ms = int(ttl_seconds * 1000)

    async def acquire(self) -> Optional[str]:
        """Try once to take the lock; return the holder token or None."""
        token = uuid.uuid4().hex
        acquired = await self.redis_client.client.set(self.name, token, nx=True, px=self.ttl_ms)
        return token if acquired else None

    async def release(self, token: str) -> bool:
        """Release the lock if ``token`` still holds it."""
        released = await self.redis_client.client.eval(_RELEASE_SCRIPT, 1, self.name, token)
        return bool(released)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Hold the lock for the block.

        Raises:
            ConcurrencyBusyError: If another holder has the lock
        """
        token = await self.acquire()
        if token is None:
            raise ConcurrencyBusyError("A reconciliation is already running on another instance")
        try:
            yield
        finally:
            await self.release(token)
