"""
Signing key domain model.

KeyEntry is immutable once observed. KeySet preserves insertion order and is
unique by kid. RotationState is the per-target state the RotationEngine
advances on every poll and the Bridge persists in the shared cache.
"""

import base64
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple


class KeyAlgorithm(str, Enum):
    RS256 = "RS256"
    RS384 = "RS384"
    RS512 = "RS512"
    PS256 = "PS256"
    PS384 = "PS384"
    PS512 = "PS512"
    ES256 = "ES256"
    ES384 = "ES384"
    ES512 = "ES512"

    @property
    def key_type(self) -> str:
        return "EC" if self.value.startswith("ES") else "RSA"


@dataclass(frozen=True)
class KeyEntry:
    """A public signing key. public_key holds DER-encoded SubjectPublicKeyInfo."""
    kid: str
    public_key: bytes
    algorithm: KeyAlgorithm
    first_seen: datetime

    def to_dict(self) -> dict:
        return {
            "kid": self.kid,
            "public_key": base64.b64encode(self.public_key).decode("ascii"),
            "algorithm": self.algorithm.value,
            "first_seen": self.first_seen.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KeyEntry":
        return cls(
            kid=data["kid"],
            public_key=base64.b64decode(data["public_key"]),
            algorithm=KeyAlgorithm(data["algorithm"]),
            first_seen=datetime.fromisoformat(data["first_seen"]),
        )


class KeySet:
    """Insertion-ordered set of KeyEntry, unique by kid. Never mutated in place."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[KeyEntry] = ()):
        ordered: Dict[str, KeyEntry] = {}
        for entry in entries:
            # First occurrence wins so the set is stable under re-ordering of duplicates
            ordered.setdefault(entry.kid, entry)
        self._entries = ordered

    def __iter__(self) -> Iterator[KeyEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, kid: object) -> bool:
        return kid in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeySet):
            return NotImplemented
        return list(self._entries.values()) == list(other._entries.values())

    def __repr__(self) -> str:
        return f"KeySet({list(self._entries)!r})"

    def get(self, kid: str) -> Optional[KeyEntry]:
        return self._entries.get(kid)

    def kids(self) -> List[str]:
        return list(self._entries)

    def add(self, entry: KeyEntry) -> "KeySet":
        return KeySet([*self._entries.values(), entry])

    def union(self, other: Iterable[KeyEntry]) -> "KeySet":
        return KeySet([*self._entries.values(), *other])

    def without(self, kids: Iterable[str]) -> "KeySet":
        drop = set(kids)
        return KeySet(e for e in self._entries.values() if e.kid not in drop)

    def to_list(self) -> List[dict]:
        return [e.to_dict() for e in self._entries.values()]

    @classmethod
    def from_list(cls, items: Iterable[dict]) -> "KeySet":
        return cls(KeyEntry.from_dict(i) for i in items)


@dataclass(frozen=True)
class RetiringKey:
    """A key no longer served upstream but still published until retire_at."""
    entry: KeyEntry
    retire_at: datetime


@dataclass(frozen=True)
class RotationState:
    active: KeySet = field(default_factory=KeySet)
    retiring: Dict[str, RetiringKey] = field(default_factory=dict)
    overlap_duration: timedelta = timedelta(hours=24)

    def published(self, now: Optional[datetime] = None) -> KeySet:
        """
        Keys that must appear in the JWKS: active plus retiring.
        With `now`, retiring keys whose retire_at has passed are left out even
        if the engine has not dropped them yet.
        """
        retiring = (
            r.entry for r in self.retiring.values()
            if now is None or now < r.retire_at
        )
        return self.active.union(retiring)

    def is_empty(self) -> bool:
        return len(self.active) == 0 and not self.retiring

    def digest(self) -> str:
        """Content hash used to decide whether a poll changed anything."""
        canonical = {
            "active": [(e.kid, e.algorithm.value, hashlib.sha256(e.public_key).hexdigest()) for e in self.active],
            "retiring": sorted(
                (kid, r.entry.algorithm.value, hashlib.sha256(r.entry.public_key).hexdigest(), r.retire_at.isoformat())
                for kid, r in self.retiring.items()
            ),
            "overlap": self.overlap_duration.total_seconds(),
        }
        return hashlib.sha256(
            json.dumps(canonical, separators=(",", ":"), sort_keys=True).encode("utf-8")
        ).hexdigest()

    def to_dict(self) -> dict:
        return {
            "active": self.active.to_list(),
            "retiring": [
                {**r.entry.to_dict(), "retire_at": r.retire_at.isoformat()}
                for r in self.retiring.values()
            ],
            "overlap_seconds": self.overlap_duration.total_seconds(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RotationState":
        retiring: Dict[str, RetiringKey] = {}
        for item in data.get("retiring", []):
            entry = KeyEntry.from_dict(item)
            retiring[entry.kid] = RetiringKey(entry=entry, retire_at=datetime.fromisoformat(item["retire_at"]))
        return cls(
            active=KeySet.from_list(data.get("active", [])),
            retiring=retiring,
            overlap_duration=timedelta(seconds=data.get("overlap_seconds", 0)),
        )


def split_published(state: RotationState) -> Tuple[List[str], List[str]]:
    """(active kids, retiring kids) for logging."""
    return state.active.kids(), list(state.retiring)
