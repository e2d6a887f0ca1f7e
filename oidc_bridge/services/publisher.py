"""
Publisher - writes the shared cache's current snapshot to object storage.

Runs on every instance, once at startup and then on every cache change
notification. There is no cross-instance lock: each object is written with
a conditional write against the version just read, so for one object state
at most one writer succeeds and the rest observe a precondition conflict.
Content is derived deterministically from the snapshot, so whoever won
published the same bytes.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from oidc_bridge.services.cache.base import SharedCache
from oidc_bridge.services.documents import (
    PublicationLayout,
    build_cluster_jwks,
    build_discovery_document,
    build_jwks,
    render,
)
from oidc_bridge.shared.adapters.base import StorageBackend
from oidc_bridge.shared.core.exceptions import PermissionDeniedError, StorageError, TransientStorageError
from oidc_bridge.shared.core.metrics import PUBLISH_RESULTS, PUBLISHED_KEYS, STORAGE_RETRIES

logger = structlog.get_logger()


class PublishOutcome(str, Enum):
    COMMITTED = "committed"
    UNCHANGED = "unchanged"
    PRECONDITION_FAILED = "precondition_failed"
    FAILED = "failed"
    PERMISSION_DENIED = "permission_denied"

    @property
    def ok(self) -> bool:
        return self in (PublishOutcome.COMMITTED, PublishOutcome.UNCHANGED, PublishOutcome.PRECONDITION_FAILED)


@dataclass
class PublishReport:
    generation: Optional[int] = None
    outcomes: Dict[str, PublishOutcome] = field(default_factory=dict)
    skipped_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.skipped_reason is None and all(o.ok for o in self.outcomes.values())

    @property
    def permission_denied(self) -> bool:
        return any(o == PublishOutcome.PERMISSION_DENIED for o in self.outcomes.values())


class ConditionalWriter:
    """
    Read-version-then-conditional-write with bounded retries.

    Only TransientStorageError is retried (exponential backoff, fixed attempt
    ceiling, each attempt bounded by a timeout). A precondition conflict means
    another writer won and ends the write as a success. PermissionDeniedError
    is returned immediately.
    """

    def __init__(
        self,
        backend: StorageBackend,
        max_attempts: int = 4,
        attempt_timeout: float = 15.0,
        backoff_min: float = 0.5,
        backoff_max: float = 8.0,
        cache_control: Optional[str] = None,
    ):
        self.backend = backend
        self.max_attempts = max_attempts
        self.attempt_timeout = attempt_timeout
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.cache_control = cache_control

    async def _attempt(self, path: str, data: bytes) -> PublishOutcome:
        try:
            return await asyncio.wait_for(self._read_then_write(path, data), timeout=self.attempt_timeout)
        except asyncio.TimeoutError as e:
            raise TransientStorageError(f"Storage call for {path} timed out after {self.attempt_timeout}s") from e

    async def _read_then_write(self, path: str, data: bytes) -> PublishOutcome:
        current = await self.backend.read(path)
        if current is not None and current.data == data:
            return PublishOutcome.UNCHANGED
        result = await self.backend.write_if_match(
            path,
            data,
            current.version if current else None,
            content_type="application/json",
            cache_control=self.cache_control,
        )
        if result.precondition_failed:
            return PublishOutcome.PRECONDITION_FAILED
        return PublishOutcome.COMMITTED

    def _before_sleep(self, document: str):
        def log_retry(retry_state: RetryCallState) -> None:
            STORAGE_RETRIES.labels(operation="publish").inc()
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "storage_write_retry",
                document=document,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(error),
            )
        return log_retry

    async def write(self, document: str, path: str, data: bytes) -> PublishOutcome:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientStorageError),
            wait=wait_exponential(multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max),
            stop=stop_after_attempt(self.max_attempts),
            before_sleep=self._before_sleep(document),
            reraise=True,
        )
        try:
            outcome = PublishOutcome.FAILED
            async for attempt in retrying:
                with attempt:
                    outcome = await self._attempt(path, data)
        except PermissionDeniedError as e:
            logger.error("storage_permission_denied", document=document, path=path, error=e.message, details=e.details)
            outcome = PublishOutcome.PERMISSION_DENIED
        except TransientStorageError as e:
            logger.error("storage_write_gave_up", document=document, path=path,
                         attempts=self.max_attempts, error=e.message)
            outcome = PublishOutcome.FAILED
        except StorageError as e:
            logger.error("storage_write_rejected", document=document, path=path, error=e.message, code=e.code)
            outcome = PublishOutcome.FAILED

        PUBLISH_RESULTS.labels(document=document, outcome=outcome.value).inc()
        if outcome == PublishOutcome.PRECONDITION_FAILED:
            # Another replica published this state first
            logger.debug("publish_precondition_failed", document=document, path=path)
        elif outcome == PublishOutcome.COMMITTED:
            logger.info("publish_committed", document=document, path=path, bytes=len(data))
        return outcome


def heartbeat_bucket(now: datetime, interval: timedelta) -> datetime:
    """Floor `now` to the heartbeat interval so replicas render identical records."""
    seconds = max(int(interval.total_seconds()), 1)
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - epoch % seconds, tz=timezone.utc)


class Publisher:
    def __init__(
        self,
        cache: SharedCache,
        writer: ConditionalWriter,
        layout: PublicationLayout,
        issuer: str,
        cache_key: str = "default",
        cluster_id: Optional[str] = None,
        heartbeat: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.cache = cache
        self.writer = writer
        self.layout = layout
        self.issuer = issuer
        self.cache_key = cache_key
        self.cluster_id = cluster_id
        self.heartbeat = heartbeat
        self.clock = clock
        self.last_report: Optional[PublishReport] = None

    @property
    def fleet_mode(self) -> bool:
        return self.cluster_id is not None

    async def publish_once(self) -> PublishReport:
        """Publish the snapshot currently in the cache. Never publishes from memory."""
        snapshot, version = await self.cache.read(self.cache_key)
        report = PublishReport(generation=snapshot.generation if snapshot else None)

        if snapshot is None:
            report.skipped_reason = "no_snapshot"
            logger.info("publish_skipped", reason=report.skipped_reason, target=self.cache_key)
            return self._finish(report)

        if snapshot.issuer != self.issuer:
            report.skipped_reason = "issuer_mismatch"
            logger.error("publish_skipped", reason=report.skipped_reason, target=self.cache_key,
                         snapshot_issuer=snapshot.issuer, configured_issuer=self.issuer)
            return self._finish(report)

        # Content comes from the snapshot alone; expiry is the bridge's job
        key_set = snapshot.state.published()
        if len(key_set) == 0:
            report.skipped_reason = "empty_key_set"
            logger.error("publish_skipped", reason=report.skipped_reason, target=self.cache_key,
                         generation=snapshot.generation)
            return self._finish(report)

        log = logger.bind(target=self.cache_key, generation=snapshot.generation, cache_version=version)

        if self.fleet_mode:
            record = build_cluster_jwks(self.cluster_id, key_set, heartbeat_bucket(self.clock(), self.heartbeat))
            report.outcomes["cluster_jwks"] = await self.writer.write(
                "cluster_jwks", self.layout.cluster_jwks_path(self.cluster_id), render(record)
            )
        else:
            # JWKS first so the discovery document never points at keys that are not there yet
            report.outcomes["jwks"] = await self.writer.write(
                "jwks", self.layout.jwks_path, render(build_jwks(key_set))
            )
            if report.outcomes["jwks"].ok:
                report.outcomes["discovery"] = await self.writer.write(
                    "discovery", self.layout.discovery_path, render(build_discovery_document(self.issuer, key_set))
                )

        if report.ok:
            PUBLISHED_KEYS.labels(document="cluster_jwks" if self.fleet_mode else "jwks").set(len(key_set))
            log.info("publish_cycle_completed", keys=key_set.kids(),
                     outcomes={k: v.value for k, v in report.outcomes.items()})
        else:
            log.error("publish_cycle_failed", outcomes={k: v.value for k, v in report.outcomes.items()})
        return self._finish(report)

    def _finish(self, report: PublishReport) -> PublishReport:
        self.last_report = report
        return report

    async def run(self) -> None:
        """Publish at startup, then on every change notification until cancelled."""
        subscription = self.cache.subscribe(self.cache_key)
        try:
            await self._publish_safely()
            # In fleet mode the wait doubles as the cluster record heartbeat
            timeout = self.heartbeat.total_seconds() if self.fleet_mode else None
            while True:
                try:
                    version = await subscription.next(timeout=timeout)
                except StopAsyncIteration:
                    return
                if version is None and not self.fleet_mode:
                    continue
                logger.debug("publish_triggered", target=self.cache_key,
                             reason="heartbeat" if version is None else "cache_changed", version=version)
                await self._publish_safely()
        finally:
            subscription.close()

    async def _publish_safely(self) -> None:
        try:
            await self.publish_once()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Cache read failures and the like: the next notification is another chance
            logger.error("publish_cycle_error", target=self.cache_key, error=str(e), exc_info=True)
