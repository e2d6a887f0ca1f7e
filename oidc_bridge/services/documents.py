"""
Published document builders and object layout.

Documents are rendered deterministically (sorted keys, fixed indentation)
so every replica derives byte-identical content from the same snapshot.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from oidc_bridge.models.keys import KeyAlgorithm, KeySet
from oidc_bridge.schemas.oidc import DiscoveryDocument
from oidc_bridge.services.keys import jwk_from_entry

DISCOVERY_PATH = ".well-known/openid-configuration"
JWKS_PATH = "openid/v1/jwks"
CLUSTERS_DIR = "clusters"


def join_path(*parts: Optional[str]) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


class PublicationLayout:
    """
    Object paths for one publication target.

    Standalone:  <prefix>/.well-known/openid-configuration, <prefix>/openid/v1/jwks
    Fleet:       <prefix>/<fleet>/... for the aggregate and
                 <prefix>/<fleet>/clusters/<clusterID>/openid/v1/jwks per cluster
    """

    def __init__(self, prefix: str = "", fleet_name: Optional[str] = None):
        self.root = join_path(prefix, fleet_name)
        self.fleet_name = fleet_name

    @property
    def discovery_path(self) -> str:
        return join_path(self.root, DISCOVERY_PATH)

    @property
    def jwks_path(self) -> str:
        return join_path(self.root, JWKS_PATH)

    @property
    def clusters_prefix(self) -> str:
        return join_path(self.root, CLUSTERS_DIR) + "/"

    def cluster_jwks_path(self, cluster_id: str) -> str:
        return join_path(self.root, CLUSTERS_DIR, cluster_id, JWKS_PATH)

    def cluster_id_from_path(self, path: str) -> Optional[str]:
        """Extract the cluster ID from a per-cluster JWKS path, or None for anything else."""
        if not path.startswith(self.clusters_prefix):
            return None
        rest = path[len(self.clusters_prefix):]
        cluster_id, _, tail = rest.partition("/")
        if not cluster_id or tail != JWKS_PATH:
            return None
        return cluster_id


def jwks_uri_for(issuer: str) -> str:
    return issuer.rstrip("/") + "/" + JWKS_PATH


def build_discovery_document(issuer: str, key_set: KeySet) -> DiscoveryDocument:
    """The issuer is used verbatim; trailing slashes are never added or removed."""
    algorithms = sorted({entry.algorithm.value for entry in key_set}) or [KeyAlgorithm.RS256.value]
    return DiscoveryDocument(
        issuer=issuer,
        jwks_uri=jwks_uri_for(issuer),
        response_types_supported=["id_token"],
        subject_types_supported=["public"],
        id_token_signing_alg_values_supported=algorithms,
    )


def build_jwks(key_set: KeySet) -> Dict[str, Any]:
    return {"keys": [jwk_from_entry(entry) for entry in key_set]}


def build_cluster_jwks(cluster_id: str, key_set: KeySet, published_at: datetime) -> Dict[str, Any]:
    return {
        **build_jwks(key_set),
        "cluster_id": cluster_id,
        "last_published": published_at.isoformat(),
    }


def render(document: Any) -> bytes:
    if isinstance(document, DiscoveryDocument):
        document = document.model_dump()
    return json.dumps(document, indent=2, sort_keys=True).encode("utf-8") + b"\n"
