"""
Leader election glue.

LeaderElector supplies the "am I leader" signal. Leader-only loops
(Bridge, FleetAggregator) run through run_as_leader(), which re-checks the
signal every cycle, cancels an in-flight cycle the moment leadership is lost,
and keeps nothing in memory between terms.
"""

import asyncio
import socket
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Union

import structlog
from kubernetes import client
from kubernetes.client.rest import ApiException

from oidc_bridge.shared.core.exceptions import LeaderLostError
from oidc_bridge.shared.core.metrics import CYCLE_DURATION, IS_LEADER

logger = structlog.get_logger()


class LeaderElector:
    def __init__(self, identity: Optional[str] = None):
        self.identity = identity or socket.gethostname()
        self._leader = False
        self._elected = asyncio.Event()
        self._deposed = asyncio.Event()
        self._deposed.set()

    @property
    def is_leader(self) -> bool:
        return self._leader

    def _set_leader(self, value: bool) -> None:
        if value == self._leader:
            return
        self._leader = value
        IS_LEADER.set(1 if value else 0)
        if value:
            self._deposed.clear()
            self._elected.set()
            logger.info("leadership_acquired", identity=self.identity)
        else:
            self._elected.clear()
            self._deposed.set()
            logger.warning("leadership_lost", identity=self.identity)

    async def wait_until_leader(self) -> None:
        await self._elected.wait()

    async def wait_until_follower(self) -> None:
        await self._deposed.wait()

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        self._set_leader(False)


class StaticLeaderElector(LeaderElector):
    """Fixed leadership for single-replica deployments and tests."""

    def __init__(self, is_leader: bool = True, identity: Optional[str] = None):
        super().__init__(identity)
        self._initial = is_leader

    async def start(self) -> None:
        self._set_leader(self._initial)

    def set_leader(self, value: bool) -> None:
        self._set_leader(value)


class LeaseLeaderElector(LeaderElector):
    """
    Leader election on a coordination.k8s.io/v1 Lease.

    The holder renews every retry period; a candidate takes over once
    renewTime + leaseDuration has passed. Every update is a replace() carrying
    the Lease's resourceVersion, so two candidates cannot both win. A leader
    that fails to renew within the renew deadline steps down on its own.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        name: str,
        namespace: str,
        identity: Optional[str] = None,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        request_timeout: float = 5.0,
    ):
        super().__init__(identity)
        self.coordination = client.CoordinationV1Api(api_client)
        self.name = name
        self.namespace = namespace
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.request_timeout = request_timeout
        self._last_renew: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    def _try_acquire_or_renew(self) -> Optional[bool]:
        """True when we hold the lease, False when another holder does, None when our renew hit a conflict."""
        now = datetime.now(timezone.utc)
        try:
            lease = self.coordination.read_namespaced_lease(
                self.name, self.namespace, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if e.status != 404:
                raise
            body = client.V1Lease(
                metadata=client.V1ObjectMeta(name=self.name, namespace=self.namespace),
                spec=client.V1LeaseSpec(
                    holder_identity=self.identity,
                    lease_duration_seconds=self.lease_duration_seconds,
                    acquire_time=now,
                    renew_time=now,
                    lease_transitions=0,
                ),
            )
            try:
                self.coordination.create_namespaced_lease(
                    self.namespace, body, _request_timeout=self.request_timeout
                )
            except ApiException as create_error:
                if create_error.status == 409:
                    return False
                raise
            return True

        spec = lease.spec or client.V1LeaseSpec()
        holder = spec.holder_identity
        if holder and holder != self.identity and spec.renew_time:
            duration = timedelta(seconds=spec.lease_duration_seconds or self.lease_duration_seconds)
            if spec.renew_time + duration > now:
                return False

        if holder != self.identity:
            spec.acquire_time = now
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec

        try:
            self.coordination.replace_namespaced_lease(
                self.name, self.namespace, lease, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if e.status == 409:
                return None if holder == self.identity else False
            raise
        return True

    def _release(self) -> None:
        lease = self.coordination.read_namespaced_lease(
            self.name, self.namespace, _request_timeout=self.request_timeout
        )
        if lease.spec is None or lease.spec.holder_identity != self.identity:
            return
        lease.spec.holder_identity = None
        lease.spec.lease_duration_seconds = 1
        lease.spec.renew_time = datetime.now(timezone.utc)
        self.coordination.replace_namespaced_lease(
            self.name, self.namespace, lease, _request_timeout=self.request_timeout
        )

    async def _tick(self) -> None:
        try:
            acquired = await asyncio.to_thread(self._try_acquire_or_renew)
            if acquired:
                self._last_renew = time.monotonic()
                self._set_leader(True)
            elif acquired is None:
                # Our own renew lost a write race; re-read next period, the renew deadline still applies
                logger.info("lease_renew_conflict", lease=self.name, identity=self.identity)
            elif self.is_leader:
                self._set_leader(False)
        except ApiException as e:
            logger.warning("lease_update_failed", lease=self.name, status=e.status, reason=e.reason)
        except Exception as e:
            logger.warning("lease_update_failed", lease=self.name, error=str(e))

        if self.is_leader and self._last_renew is not None:
            if time.monotonic() - self._last_renew > self.renew_deadline_seconds:
                logger.error("lease_renew_deadline_exceeded", lease=self.name,
                             deadline_seconds=self.renew_deadline_seconds)
                self._set_leader(False)

    async def _run(self) -> None:
        while True:
            await self._tick()
            await asyncio.sleep(self.retry_period_seconds)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="lease-elector")
            logger.info("lease_election_started", lease=self.name, namespace=self.namespace, identity=self.identity)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        was_leader = self.is_leader
        self._set_leader(False)
        if was_leader:
            try:
                await asyncio.to_thread(self._release)
                logger.info("lease_released", lease=self.name, identity=self.identity)
            except Exception as e:
                # The lease simply expires if we cannot release it
                logger.warning("lease_release_failed", lease=self.name, error=str(e))


async def run_as_leader(
    elector: LeaderElector,
    job_name: str,
    interval: Union[float, Callable[[], float]],
    tick: Callable[[], Awaitable[object]],
) -> None:
    """
    Run `tick` every `interval` seconds while this instance leads.

    `interval` may be a callable, asked for the delay after every tick.
    Leadership loss cancels the in-flight tick; the loop then idles until
    re-elected and starts from scratch. Runs until cancelled.
    """
    while True:
        await elector.wait_until_leader()
        logger.info("leader_job_started", job=job_name)

        while elector.is_leader:
            cycle = asyncio.create_task(tick(), name=f"{job_name}-cycle")
            deposed = asyncio.create_task(elector.wait_until_follower())
            start_time = time.monotonic()
            try:
                await asyncio.wait({cycle, deposed}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                cycle.cancel()
                deposed.cancel()
                raise

            if not cycle.done():
                cycle.cancel()
                try:
                    await cycle
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug("leader_cycle_error_after_cancel", job=job_name, error=str(e))
                logger.warning("leader_cycle_aborted", job=job_name)
                break

            deposed.cancel()
            CYCLE_DURATION.labels(job_name=job_name).observe(time.monotonic() - start_time)
            exc = None if cycle.cancelled() else cycle.exception()
            if isinstance(exc, LeaderLostError):
                logger.warning("leader_cycle_aborted", job=job_name, code=exc.code)
            elif exc is not None:
                logger.error("leader_cycle_failed", job=job_name, error=str(exc), exc_info=exc)

            try:
                delay = interval() if callable(interval) else interval
                await asyncio.wait_for(elector.wait_until_follower(), timeout=delay)
            except asyncio.TimeoutError:
                continue

        logger.info("leader_job_idle", job=job_name)
