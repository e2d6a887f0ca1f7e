import asyncio
from typing import Dict, Optional, Tuple

from oidc_bridge.models.snapshot import CacheSnapshot
from oidc_bridge.services.cache.base import SharedCache
from oidc_bridge.shared.core.exceptions import CacheConflictError


class InMemorySharedCache(SharedCache):
    """
    Single-process shared cache. Stores the serialized snapshot so readers
    never share an object with the writer.
    """

    def __init__(self):
        super().__init__()
        self._entries: Dict[str, Tuple[str, str]] = {}
        self._counter = 0
        self._lock = asyncio.Lock()

    async def read(self, key: str) -> Tuple[Optional[CacheSnapshot], Optional[str]]:
        entry = self._entries.get(key)
        if entry is None:
            return None, None
        raw, version = entry
        return CacheSnapshot.from_json(raw), version

    async def write(self, key: str, snapshot: CacheSnapshot, expected_version: Optional[str]) -> str:
        async with self._lock:
            current = self._entries.get(key)
            current_version = current[1] if current else None
            if current_version != expected_version:
                raise CacheConflictError(key, expected_version, current_version)
            self._counter += 1
            version = str(self._counter)
            self._entries[key] = (snapshot.to_json(), version)
        self._notify(key, version)
        return version
