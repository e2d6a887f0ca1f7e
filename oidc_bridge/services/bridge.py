"""
Bridge - leader-only poller that turns upstream keys into cache snapshots.

Holds no rotation state between polls: every tick starts from the snapshot
in the shared cache, so a newly elected leader resumes exactly where the
previous one stopped.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

import structlog

from oidc_bridge.models.keys import RotationState, split_published
from oidc_bridge.models.snapshot import CacheSnapshot
from oidc_bridge.services.cache.base import SharedCache
from oidc_bridge.services.leader import LeaderElector
from oidc_bridge.services.rotation import RotationChanges, RotationEngine
from oidc_bridge.services.upstream import UpstreamClient
from oidc_bridge.shared.core.exceptions import CacheConflictError, CacheError, LeaderLostError, UpstreamFetchError
from oidc_bridge.shared.core.metrics import BRIDGE_POLLS, ROTATIONS_DETECTED, SNAPSHOT_GENERATION

logger = structlog.get_logger()

RotationCallback = Callable[[CacheSnapshot, RotationChanges], None]

MIN_POLL_DELAY_SECONDS = 1.0


class PollOutcome(str, Enum):
    COMMITTED = "committed"
    UNCHANGED = "unchanged"
    FETCH_ERROR = "fetch_error"
    ISSUER_MISMATCH = "issuer_mismatch"
    CONFLICT = "conflict"
    CACHE_ERROR = "cache_error"


class Bridge:
    def __init__(
        self,
        cache: SharedCache,
        upstream: UpstreamClient,
        issuer: str,
        cache_key: str = "default",
        overlap_duration: timedelta = timedelta(hours=24),
        elector: Optional[LeaderElector] = None,
        engine: Optional[RotationEngine] = None,
        on_rotation: Optional[RotationCallback] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.cache = cache
        self.upstream = upstream
        self.issuer = issuer
        self.cache_key = cache_key
        self.overlap_duration = overlap_duration
        self.elector = elector
        self.engine = engine or RotationEngine()
        self.on_rotation = on_rotation
        self.clock = clock
        self.last_outcome: Optional[PollOutcome] = None
        # Earliest retire_at seen by the last successful observe; a scheduling hint only
        self.next_expiry: Optional[datetime] = None

    def next_poll_delay(self, interval: float) -> float:
        """Seconds until the next poll: the interval, or sooner when a retiring key expires first."""
        if self.next_expiry is None:
            return interval
        until_expiry = (self.next_expiry - self.clock()).total_seconds()
        return min(interval, max(until_expiry, MIN_POLL_DELAY_SECONDS))

    def _record(self, outcome: PollOutcome) -> PollOutcome:
        BRIDGE_POLLS.labels(outcome=outcome.value).inc()
        self.last_outcome = outcome
        return outcome

    async def poll(self) -> PollOutcome:
        """
        One leader tick: read snapshot, fetch upstream, observe, commit if changed.

        Raises LeaderLostError when leadership is gone before the commit.
        """
        log = logger.bind(target=self.cache_key)
        self.next_expiry = None

        try:
            snapshot, version = await self.cache.read(self.cache_key)
        except CacheError as e:
            log.error("bridge_cache_read_failed", error=e.message, **e.details)
            return self._record(PollOutcome.CACHE_ERROR)

        try:
            upstream = await self.upstream.fetch()
        except UpstreamFetchError as e:
            # Last known good state stays in the cache and keeps being published
            log.warning("bridge_upstream_fetch_failed", error=e.message, **e.details)
            return self._record(PollOutcome.FETCH_ERROR)

        if upstream.issuer != self.issuer:
            log.error("bridge_issuer_mismatch", configured_issuer=self.issuer, upstream_issuer=upstream.issuer)
            return self._record(PollOutcome.ISSUER_MISMATCH)

        now = self.clock()
        current = snapshot.state if snapshot else RotationState(overlap_duration=self.overlap_duration)
        result = self.engine.observe(current, upstream.key_set, now, self.overlap_duration)
        self.next_expiry = min((r.retire_at for r in result.state.retiring.values()), default=None)

        if snapshot is not None and snapshot.issuer == upstream.issuer \
                and result.state.digest() == snapshot.state.digest():
            SNAPSHOT_GENERATION.labels(target=self.cache_key).set(snapshot.generation)
            log.debug("bridge_snapshot_unchanged", generation=snapshot.generation)
            return self._record(PollOutcome.UNCHANGED)

        if self.elector is not None and not self.elector.is_leader:
            raise LeaderLostError("bridge")

        new_snapshot = CacheSnapshot(
            generation=(snapshot.generation if snapshot else 0) + 1,
            state=result.state,
            fetched_at=upstream.fetched_at,
            issuer=upstream.issuer,
        )
        try:
            new_version = await self.cache.write(self.cache_key, new_snapshot, version)
        except CacheConflictError as e:
            # Someone else wrote since our read; the next tick re-reads
            log.warning("bridge_snapshot_conflict", **e.details)
            return self._record(PollOutcome.CONFLICT)
        except CacheError as e:
            log.error("bridge_cache_write_failed", error=e.message, **e.details)
            return self._record(PollOutcome.CACHE_ERROR)

        active, retiring = split_published(result.state)
        SNAPSHOT_GENERATION.labels(target=self.cache_key).set(new_snapshot.generation)
        log.info(
            "bridge_snapshot_committed",
            generation=new_snapshot.generation,
            cache_version=new_version,
            active=active,
            retiring=retiring,
        )

        if result.changes.transitioned:
            self._notify_rotation(new_snapshot, result.changes)
        return self._record(PollOutcome.COMMITTED)

    def _notify_rotation(self, snapshot: CacheSnapshot, changes: RotationChanges) -> None:
        ROTATIONS_DETECTED.labels(target=self.cache_key).inc()
        logger.info("rotation_detected", target=self.cache_key, generation=snapshot.generation,
                    **changes.as_log_fields())
        if self.on_rotation is None:
            return
        try:
            self.on_rotation(snapshot, changes)
        except Exception as e:
            logger.error("rotation_callback_failed", target=self.cache_key, error=str(e), exc_info=True)
