from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List

from oidc_bridge.models.keys import KeySet


@dataclass(frozen=True)
class ClusterRecord:
    """Per-cluster key set, written only by that cluster's own controller."""
    cluster_id: str
    key_set: KeySet
    last_published: datetime

    def is_live(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.last_published < ttl


@dataclass(frozen=True)
class FleetAggregate:
    """Union of every live cluster's keys. Derived, never edited."""
    key_set: KeySet
    issuer: str
    clusters: List[str] = field(default_factory=list)
