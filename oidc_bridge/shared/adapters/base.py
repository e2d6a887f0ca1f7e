from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

# A StorageObjectVersion is the provider's opaque comparison token
# (ETag or generation rendered as a string). None stands for "absent".
StorageObjectVersion = Optional[str]


@dataclass(frozen=True)
class StoredObject:
    data: bytes
    version: str


@dataclass(frozen=True)
class ObjectInfo:
    path: str
    version: str
    last_modified: Optional[datetime] = None


class WriteOutcome(str, Enum):
    COMMITTED = "committed"
    PRECONDITION_FAILED = "precondition_failed"


@dataclass(frozen=True)
class WriteResult:
    outcome: WriteOutcome
    version: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.outcome == WriteOutcome.COMMITTED

    @property
    def precondition_failed(self) -> bool:
        return self.outcome == WriteOutcome.PRECONDITION_FAILED

    @classmethod
    def success(cls, version: str) -> "WriteResult":
        return cls(WriteOutcome.COMMITTED, version)

    @classmethod
    def conflict(cls) -> "WriteResult":
        return cls(WriteOutcome.PRECONDITION_FAILED)


class StorageBackend(ABC):
    """
    Abstract Base Class for object storage providers.

    Every provider maps StorageObjectVersion onto its native conditional
    write primitive. A write succeeds if and only if the object's current
    version equals `expected_version`, or the object is absent and
    `expected_version` is None. A mismatch is reported as
    WriteResult.conflict(), never raised.

    Errors:
    - TransientStorageError: timeouts, throttling, 5xx. Safe to retry.
    - PermissionDeniedError: rejected credentials or ACLs. Never retried.
    """

    name: str = "base"

    @abstractmethod
    async def read(self, path: str) -> Optional[StoredObject]:
        """Return the object and its version, or None when it does not exist."""
        pass

    @abstractmethod
    async def write_if_match(
        self,
        path: str,
        data: bytes,
        expected_version: StorageObjectVersion,
        content_type: str = "application/json",
        cache_control: Optional[str] = None,
    ) -> WriteResult:
        """Conditionally replace the object at `path`."""
        pass

    @abstractmethod
    async def list(self, prefix: str) -> List[ObjectInfo]:
        """List objects whose path starts with `prefix`."""
        pass

    async def close(self) -> None:
        return None
