import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable, Iterable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SingleFlight(Generic[K, V]):
    """
    Coalesces concurrent loads for the same key.

    The first caller for a key starts the load as a task; callers arriving
    while it is in flight await that same task. The entry is removed once
    the task finishes, so a failed load can be retried by the next caller.
    """

    def __init__(self) -> None:
        self._in_flight: dict[K, asyncio.Task[V]] = {}

    def in_flight(self, key: K) -> bool:
        return key in self._in_flight

    async def do(self, key: K, load: Callable[[], Awaitable[V]]) -> V:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(load())
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        # shield: one cancelled waiter must not cancel the load shared by the others
        return await asyncio.shield(task)

    def _forget(self, key: K, task: asyncio.Task[V]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]


class TechnologyCache:
    """
    Lazily loaded set of valid technology names.

    Concurrent callers share a single in-flight load. `clear()` bumps a
    generation counter, so a load that was started before the clear never
    overwrites the cache afterwards.
    """

    _KEY = "technologies"

    def __init__(self, loader: Callable[[], Awaitable[Iterable[str]]]) -> None:
        self._loader = loader
        self._names: frozenset[str] | None = None
        self._generation = 0
        self._flight: SingleFlight[tuple[str, int], frozenset[str]] = SingleFlight()

    @property
    def is_loaded(self) -> bool:
        return self._names is not None

    async def get(self) -> frozenset[str]:
        if self._names is not None:
            return self._names
        generation = self._generation
        return await self._flight.do((self._KEY, generation), lambda: self._load(generation))

    async def _load(self, generation: int) -> frozenset[str]:
        names = frozenset(await self._loader())
        if generation == self._generation:
            # Replace the whole set at once; readers never see a partial cache
            self._names = names
        else:
            logger.debug("Discarding technology load from a cleared cache generation")
        return names

    def clear(self) -> None:
        self._generation += 1
        self._names = None

    async def reload(self) -> frozenset[str]:
        self.clear()
        return await self.get()
