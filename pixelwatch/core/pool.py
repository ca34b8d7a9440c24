"""Bounded fan-out for batch jobs, and per-key locks for single-writer paths."""

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, Hashable, Iterable, TypeVar

T = TypeVar("T")


async def bounded_gather(
    items: Iterable[T],
    func: Callable[[T], Awaitable[Any]],
    concurrency: int,
) -> list[Any]:
    """
    Run func over items with at most `concurrency` in flight.

    Results come back in input order. Exceptions are returned in place of
    results, never raised, so one bad item can't take down the batch.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run(item: T):
        async with semaphore:
            return await func(item)

    return await asyncio.gather(*(run(item) for item in items), return_exceptions=True)


class KeyedLocks:
    """One asyncio.Lock per key; entries are dropped once nobody holds or waits on them."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = defaultdict(int)

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __call__(self, key: Hashable) -> "_KeyedLock":
        return _KeyedLock(self, key)


class _KeyedLock:
    def __init__(self, owner: KeyedLocks, key: Hashable):
        self._owner = owner
        self._key = key

    async def __aenter__(self):
        owner = self._owner
        lock = owner._locks.setdefault(self._key, asyncio.Lock())
        owner._users[self._key] += 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_user()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._owner._locks[self._key].release()
        self._release_user()

    def _release_user(self):
        owner = self._owner
        owner._users[self._key] -= 1
        if owner._users[self._key] <= 0:
            owner._users.pop(self._key, None)
            owner._locks.pop(self._key, None)
