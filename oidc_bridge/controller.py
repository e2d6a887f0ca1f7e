"""
Controller - wires every component from Settings and owns the background tasks.

Per instance: lease renewal, the Bridge loop (leader only), the Publisher
loop (every instance) and, in fleet mode, the FleetAggregator loop (leader
only). Components are built once at startup; nothing is reselected later.
"""

import asyncio
from functools import partial
from typing import Dict, Optional

import structlog
from kubernetes import client

from oidc_bridge.services.bridge import Bridge
from oidc_bridge.services.cache.base import SharedCache
from oidc_bridge.services.documents import PublicationLayout
from oidc_bridge.services.fleet import FleetAggregator
from oidc_bridge.services.leader import LeaderElector, LeaseLeaderElector, StaticLeaderElector, run_as_leader
from oidc_bridge.services.publisher import ConditionalWriter, Publisher
from oidc_bridge.services.upstream import UpstreamClient
from oidc_bridge.shared.adapters.base import StorageBackend
from oidc_bridge.shared.adapters.factory import StorageBackendFactory
from oidc_bridge.shared.core.config import Settings
from oidc_bridge.shared.core.exceptions import ConfigurationError, IssuerMismatchError, UpstreamFetchError

logger = structlog.get_logger()


class Controller:
    def __init__(
        self,
        settings: Settings,
        backend: Optional[StorageBackend] = None,
        cache: Optional[SharedCache] = None,
        elector: Optional[LeaderElector] = None,
        upstream: Optional[UpstreamClient] = None,
    ):
        self.settings = settings
        self.issuer = settings.PUBLIC_BASE_URL
        self._api_client: Optional[client.ApiClient] = None

        self.backend = backend or StorageBackendFactory.get_backend(settings)
        self.cache = cache or self._build_cache()
        self.elector = elector or self._build_elector()
        self.upstream = upstream or UpstreamClient.from_settings(settings)

        self.writer = ConditionalWriter(
            self.backend,
            max_attempts=settings.STORAGE_MAX_ATTEMPTS,
            attempt_timeout=settings.STORAGE_TIMEOUT_SECONDS,
            backoff_min=settings.STORAGE_BACKOFF_MIN_SECONDS,
            backoff_max=settings.STORAGE_BACKOFF_MAX_SECONDS,
            cache_control=settings.CACHE_CONTROL,
        )
        self.layout = PublicationLayout(
            prefix=settings.STORAGE_PREFIX,
            fleet_name=settings.FLEET_NAME if settings.fleet_enabled else None,
        )

        self.bridge = Bridge(
            self.cache,
            self.upstream,
            issuer=self.issuer,
            cache_key=settings.TARGET_NAME,
            overlap_duration=settings.overlap_duration,
            elector=self.elector,
        )
        self.publisher = Publisher(
            self.cache,
            self.writer,
            self.layout,
            issuer=self.issuer,
            cache_key=settings.TARGET_NAME,
            cluster_id=settings.CLUSTER_ID if settings.fleet_enabled else None,
            heartbeat=settings.cluster_heartbeat,
        )
        self.fleet: Optional[FleetAggregator] = None
        if settings.fleet_enabled and settings.FLEET_AGGREGATOR_ENABLED:
            self.fleet = FleetAggregator(
                self.backend,
                self.writer,
                self.layout,
                issuer=self.issuer,
                cluster_ttl=settings.cluster_ttl,
                elector=self.elector,
            )

        self.tasks: Dict[str, asyncio.Task] = {}
        self.started = False

    def _kube(self) -> client.ApiClient:
        if self._api_client is None:
            from oidc_bridge.services.kube import load_kubernetes_config
            self._api_client = load_kubernetes_config()
        return self._api_client

    def _build_cache(self) -> SharedCache:
        backend = self.settings.CACHE_BACKEND.lower()
        if backend == "memory":
            from oidc_bridge.services.cache.memory import InMemorySharedCache
            return InMemorySharedCache()
        if backend == "configmap":
            from oidc_bridge.services.cache.configmap import ConfigMapSharedCache
            return ConfigMapSharedCache(
                self._kube(),
                namespace=self.settings.CACHE_NAMESPACE,
                name_prefix=self.settings.CACHE_CONFIGMAP_PREFIX,
                watch_timeout_seconds=self.settings.CACHE_WATCH_TIMEOUT_SECONDS,
            )
        raise ConfigurationError(f"Unsupported cache backend: {self.settings.CACHE_BACKEND}")

    def _build_elector(self) -> LeaderElector:
        identity = self.settings.POD_NAME
        if not self.settings.LEADER_ELECTION_ENABLED:
            return StaticLeaderElector(is_leader=True, identity=identity)
        return LeaseLeaderElector(
            self._kube(),
            name=self.settings.LEASE_NAME,
            namespace=self.settings.LEASE_NAMESPACE,
            identity=identity,
            lease_duration_seconds=self.settings.LEASE_DURATION_SECONDS,
            renew_deadline_seconds=self.settings.LEASE_RENEW_DEADLINE_SECONDS,
            retry_period_seconds=self.settings.LEASE_RETRY_PERIOD_SECONDS,
        )

    async def validate(self) -> None:
        """
        Fail fast when the configured public base URL is not the upstream issuer.

        An unreachable API server is not fatal here: the Bridge retries every
        poll and keeps publishing the last known good snapshot meanwhile.
        """
        try:
            discovery = await self.upstream.fetch_discovery()
        except UpstreamFetchError as e:
            logger.warning("startup_issuer_check_skipped", error=e.message, **e.details)
            return
        if discovery.issuer != self.issuer:
            raise IssuerMismatchError(self.issuer, discovery.issuer)
        logger.info("startup_issuer_verified", issuer=self.issuer)

    async def start(self) -> None:
        if self.started:
            return
        await self.elector.start()
        await self.cache.start()

        self.tasks["bridge"] = asyncio.create_task(
            run_as_leader(
                self.elector, "bridge",
                partial(self.bridge.next_poll_delay, self.settings.POLL_INTERVAL_SECONDS), self.bridge.poll,
            ),
            name="bridge",
        )
        self.tasks["publisher"] = asyncio.create_task(self.publisher.run(), name="publisher")
        if self.fleet is not None:
            self.tasks["fleet_aggregator"] = asyncio.create_task(
                run_as_leader(
                    self.elector, "fleet_aggregator",
                    self.settings.AGGREGATION_INTERVAL_SECONDS, self.fleet.aggregate,
                ),
                name="fleet_aggregator",
            )
        self.started = True
        logger.info(
            "controller_started",
            identity=self.elector.identity,
            storage_backend=self.backend.name,
            target=self.settings.TARGET_NAME,
            fleet=self.settings.FLEET_NAME or None,
            cluster_id=self.settings.CLUSTER_ID if self.settings.fleet_enabled else None,
            tasks=sorted(self.tasks),
        )

    async def stop(self) -> None:
        for task in self.tasks.values():
            task.cancel()
        results = await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        for name, result in zip(self.tasks, results):
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                logger.error("controller_task_failed", task=name, error=str(result))
        self.tasks.clear()

        await self.cache.stop()
        # Releasing the lease lets a standby replica take over immediately
        await self.elector.stop()
        await self.upstream.close()
        await self.backend.close()
        if self._api_client is not None:
            self._api_client.close()
        self.started = False
        logger.info("controller_stopped")

    def get_status(self) -> dict:
        return {
            "running": self.started,
            "is_leader": self.elector.is_leader,
            "identity": self.elector.identity,
            "last_poll": self.bridge.last_outcome.value if self.bridge.last_outcome else None,
            "last_published_generation": self.publisher.last_report.generation if self.publisher.last_report else None,
            "tasks": sorted(self.tasks),
        }
