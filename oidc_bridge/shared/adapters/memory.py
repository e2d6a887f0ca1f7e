import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import structlog

from oidc_bridge.shared.adapters.base import (
    ObjectInfo,
    StorageBackend,
    StorageObjectVersion,
    StoredObject,
    WriteResult,
)

logger = structlog.get_logger()


class InMemoryStorageBackend(StorageBackend):
    """
    Process-local object store with the same compare-and-set contract as the
    cloud providers. Versions are a monotonically increasing counter.
    Used for local development and tests.
    """

    name = "memory"

    def __init__(self):
        self._objects: Dict[str, Tuple[bytes, str, datetime, Optional[str]]] = {}
        self._counter = 0
        self._lock = asyncio.Lock()
        self.write_count = 0

    async def read(self, path: str) -> Optional[StoredObject]:
        item = self._objects.get(path)
        if item is None:
            return None
        data, version, _, _ = item
        return StoredObject(data=data, version=version)

    async def write_if_match(
        self,
        path: str,
        data: bytes,
        expected_version: StorageObjectVersion,
        content_type: str = "application/json",
        cache_control: Optional[str] = None,
    ) -> WriteResult:
        async with self._lock:
            current = self._objects.get(path)
            current_version = current[1] if current else None
            if current_version != expected_version:
                logger.debug("memory_storage_precondition_failed", path=path,
                             expected=expected_version, actual=current_version)
                return WriteResult.conflict()

            self._counter += 1
            version = str(self._counter)
            self._objects[path] = (data, version, datetime.now(timezone.utc), cache_control)
            self.write_count += 1
            return WriteResult.success(version)

    async def list(self, prefix: str) -> List[ObjectInfo]:
        return [
            ObjectInfo(path=path, version=version, last_modified=modified)
            for path, (_, version, modified, _) in sorted(self._objects.items())
            if path.startswith(prefix)
        ]

    def delete(self, path: str) -> None:
        self._objects.pop(path, None)
