"""
Fleet aggregation: merge every live cluster's published key set into the
fleet-wide JWKS. Cluster records are only ever written by their own
cluster; the aggregate is derived from them and never edited.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import structlog
from pydantic import ValidationError

from oidc_bridge.models.fleet import ClusterRecord, FleetAggregate
from oidc_bridge.models.keys import KeySet
from oidc_bridge.schemas.oidc import ClusterJWKS
from oidc_bridge.services.documents import PublicationLayout, build_discovery_document, build_jwks, render
from oidc_bridge.services.keys import key_entry_from_jwk
from oidc_bridge.services.leader import LeaderElector
from oidc_bridge.services.publisher import ConditionalWriter, PublishOutcome
from oidc_bridge.shared.adapters.base import ObjectInfo, StorageBackend
from oidc_bridge.shared.core.exceptions import LeaderLostError, StorageError
from oidc_bridge.shared.core.metrics import FLEET_CLUSTERS

logger = structlog.get_logger()


class FleetAggregator:
    def __init__(
        self,
        backend: StorageBackend,
        writer: ConditionalWriter,
        layout: PublicationLayout,
        issuer: str,
        cluster_ttl: timedelta = timedelta(hours=48),
        elector: Optional[LeaderElector] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.backend = backend
        self.writer = writer
        self.layout = layout
        self.issuer = issuer
        self.cluster_ttl = cluster_ttl
        self.elector = elector
        self.clock = clock
        self.last_aggregate: Optional[FleetAggregate] = None

    async def _load_record(self, info: ObjectInfo) -> Optional[ClusterRecord]:
        cluster_id = self.layout.cluster_id_from_path(info.path)
        if cluster_id is None:
            return None

        stored = await self.backend.read(info.path)
        if stored is None:
            # Deleted between list and read
            return None

        try:
            document = ClusterJWKS.model_validate_json(stored.data)
            last_published = document.last_published
            if last_published.tzinfo is None:
                last_published = last_published.replace(tzinfo=timezone.utc)
            key_set = KeySet(key_entry_from_jwk(jwk, last_published) for jwk in document.keys)
        except (ValidationError, ValueError) as e:
            logger.warning("fleet_cluster_record_malformed", cluster_id=cluster_id, path=info.path, error=str(e))
            return None

        if document.cluster_id != cluster_id:
            logger.warning("fleet_cluster_record_misplaced", cluster_id=cluster_id, record_cluster_id=document.cluster_id)
            return None
        return ClusterRecord(cluster_id=cluster_id, key_set=key_set, last_published=last_published)

    async def collect(self) -> List[ClusterRecord]:
        """All readable cluster records under the fleet, sorted by cluster ID."""
        records = []
        for info in await self.backend.list(self.layout.clusters_prefix):
            record = await self._load_record(info)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.cluster_id)

    async def aggregate(self) -> Optional[FleetAggregate]:
        """
        One leader tick. Returns the aggregate that was published, or None
        when nothing was written (no live clusters or a storage failure).
        """
        now = self.clock()
        try:
            records = await self.collect()
        except StorageError as e:
            logger.error("fleet_collect_failed", fleet=self.layout.fleet_name, error=e.message, code=e.code)
            return None

        live = [r for r in records if r.is_live(now, self.cluster_ttl)]
        stale = [r.cluster_id for r in records if not r.is_live(now, self.cluster_ttl)]
        FLEET_CLUSTERS.labels(state="live").set(len(live))
        FLEET_CLUSTERS.labels(state="stale").set(len(stale))
        if stale:
            logger.info("fleet_clusters_stale", fleet=self.layout.fleet_name, clusters=stale,
                        ttl_seconds=self.cluster_ttl.total_seconds())

        key_set = KeySet()
        for record in live:
            key_set = key_set.union(record.key_set)

        if len(key_set) == 0:
            # Publishing an empty JWKS would invalidate every token in the fleet
            logger.warning("fleet_aggregate_skipped", fleet=self.layout.fleet_name, reason="no_live_clusters")
            return None

        if self.elector is not None and not self.elector.is_leader:
            raise LeaderLostError("fleet_aggregator")

        aggregate = FleetAggregate(key_set=key_set, issuer=self.issuer, clusters=[r.cluster_id for r in live])
        jwks = await self.writer.write("fleet_jwks", self.layout.jwks_path, render(build_jwks(key_set)))
        discovery = PublishOutcome.FAILED
        if jwks.ok:
            discovery = await self.writer.write(
                "fleet_discovery",
                self.layout.discovery_path,
                render(build_discovery_document(self.issuer, key_set)),
            )

        log = logger.bind(fleet=self.layout.fleet_name, clusters=aggregate.clusters, keys=key_set.kids())
        if jwks.ok and discovery.ok:
            log.info("fleet_aggregate_published", jwks=jwks.value, discovery=discovery.value)
            self.last_aggregate = aggregate
            return aggregate
        log.error("fleet_aggregate_failed", jwks=jwks.value, discovery=discovery.value)
        return None
