"""
Rotation Engine - Overlap State Machine

Merges a freshly fetched key set into the previous RotationState:

- new kid                      -> active
- kid gone from the fetch      -> retiring, retire_at = now + overlap
- retiring kid fetched again   -> active again, timer cancelled
- retiring kid past retire_at  -> dropped

Resurrection is applied before expiry, so a key that reappears on the same
tick its timer fires stays published. With overlap = 0 a key disappears on
the tick it leaves the fetch.

observe() is deterministic and side-effect free; the Bridge is the only
caller that persists its result.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List

from oidc_bridge.models.keys import KeySet, RetiringKey, RotationState


@dataclass(frozen=True)
class RotationChanges:
    added: List[str] = field(default_factory=list)
    retired: List[str] = field(default_factory=list)
    resurrected: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)

    @property
    def transitioned(self) -> bool:
        return bool(self.added or self.retired or self.resurrected or self.dropped)

    def as_log_fields(self) -> dict:
        return {
            "added": self.added,
            "retired": self.retired,
            "resurrected": self.resurrected,
            "dropped": self.dropped,
        }


@dataclass(frozen=True)
class RotationResult:
    state: RotationState
    changes: RotationChanges


class RotationEngine:
    """Stateless; kept as a class so callers can substitute it in tests."""

    def observe(
        self,
        current: RotationState,
        fetched: KeySet,
        now: datetime,
        overlap_duration: timedelta,
    ) -> RotationResult:
        if overlap_duration < timedelta(0):
            raise ValueError("overlap_duration must not be negative")

        active: List = []
        retiring: Dict[str, RetiringKey] = {}
        added: List[str] = []
        retired: List[str] = []
        resurrected: List[str] = []
        dropped: List[str] = []

        # Keys still served upstream keep their original entry (and first_seen)
        for entry in current.active:
            if entry.kid in fetched:
                active.append(entry)

        # Resurrection: back in the fetch while retiring, the timer is cancelled
        for kid, pending in current.retiring.items():
            if kid in fetched:
                active.append(pending.entry)
                resurrected.append(kid)

        known = {e.kid for e in active}
        for entry in fetched:
            if entry.kid not in known:
                active.append(entry)
                known.add(entry.kid)
                added.append(entry.kid)

        for kid, pending in current.retiring.items():
            if kid not in fetched:
                retiring[kid] = pending

        for entry in current.active:
            if entry.kid not in fetched and entry.kid not in retiring:
                retiring[entry.kid] = RetiringKey(entry=entry, retire_at=now + overlap_duration)
                retired.append(entry.kid)

        # Expiry runs last so resurrection wins ties
        for kid in list(retiring):
            if retiring[kid].retire_at <= now:
                del retiring[kid]
                dropped.append(kid)

        state = RotationState(
            active=KeySet(active),
            retiring=retiring,
            overlap_duration=overlap_duration,
        )
        return RotationResult(
            state=state,
            changes=RotationChanges(added=added, retired=retired, resurrected=resurrected, dropped=dropped),
        )


def observe(current: RotationState, fetched: KeySet, now: datetime, overlap_duration: timedelta) -> RotationResult:
    return RotationEngine().observe(current, fetched, now, overlap_duration)
