"""
Shared Cache - versioned, watchable snapshot store.

One entry per publication target. Every instance reads and subscribes; only
the leader writes. Notifications are "version changed" hints with
at-least-once delivery: a subscriber that falls behind sees only the latest
version, so consumers always re-read instead of trusting the event.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import structlog

from oidc_bridge.models.snapshot import CacheSnapshot

logger = structlog.get_logger()


class Subscription:
    """Coalescing change feed for one cache key."""

    def __init__(self, cache: "SharedCache", key: str):
        self._cache = cache
        self.key = key
        self._latest: Optional[str] = None
        self._event = asyncio.Event()
        self._closed = False

    def notify(self, version: Optional[str]) -> None:
        self._latest = version
        self._event.set()

    async def next(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Wait for the next change and return the newest version seen.
        Returns None on timeout. Raises StopAsyncIteration once closed.
        """
        if self._closed:
            raise StopAsyncIteration
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if self._closed:
            raise StopAsyncIteration
        self._event.clear()
        return self._latest

    def __aiter__(self):
        return self

    async def __anext__(self) -> Optional[str]:
        return await self.next()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._event.set()
            self._cache._unsubscribe(self)


class SharedCache(ABC):
    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = {}

    @abstractmethod
    async def read(self, key: str) -> Tuple[Optional[CacheSnapshot], Optional[str]]:
        """Return (snapshot, version); (None, None) when the entry does not exist."""
        pass

    @abstractmethod
    async def write(self, key: str, snapshot: CacheSnapshot, expected_version: Optional[str]) -> str:
        """
        Replace the entry if its version still equals `expected_version`
        (None: the entry must not exist). Returns the new version.
        Raises CacheConflictError otherwise; callers re-read before retrying.
        """
        pass

    def subscribe(self, key: str) -> Subscription:
        subscription = Subscription(self, key)
        self._subscribers.setdefault(key, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.key, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    def _notify(self, key: str, version: Optional[str]) -> None:
        for subscription in list(self._subscribers.get(key, [])):
            subscription.notify(version)
        logger.debug("cache_change_notified", key=key, version=version,
                     subscribers=len(self._subscribers.get(key, [])))

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        for subscriptions in list(self._subscribers.values()):
            for subscription in list(subscriptions):
                subscription.close()
