import json
from dataclasses import dataclass
from datetime import datetime

from oidc_bridge.models.keys import KeySet, RotationState

SNAPSHOT_FORMAT_VERSION = 1


@dataclass(frozen=True)
class CacheSnapshot:
    """
    Last-known-good state for one publication target.

    Written only by the leader's Bridge and replaced wholesale on every write.
    `generation` increases by one per committed write; the cache backend's
    own version token is what writers race on.
    """
    generation: int
    state: RotationState
    fetched_at: datetime
    issuer: str

    @property
    def key_set(self) -> KeySet:
        return self.state.published()

    def to_json(self) -> str:
        return json.dumps(
            {
                "format": SNAPSHOT_FORMAT_VERSION,
                "generation": self.generation,
                "fetched_at": self.fetched_at.isoformat(),
                "issuer": self.issuer,
                "state": self.state.to_dict(),
            },
            separators=(",", ":"),
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> "CacheSnapshot":
        data = json.loads(raw)
        if data.get("format") != SNAPSHOT_FORMAT_VERSION:
            raise ValueError(f"Unsupported snapshot format: {data.get('format')!r}")
        return cls(
            generation=int(data["generation"]),
            state=RotationState.from_dict(data["state"]),
            fetched_at=datetime.fromisoformat(data["fetched_at"]),
            issuer=data["issuer"],
        )
