"""
Upstream client for the Kubernetes API server's OIDC endpoints.

The discovery document is read from /.well-known/openid-configuration. The
JWKS is always read from the API server's /openid/v1/jwks: the advertised
jwks_uri points at the public mirror this service maintains.
"""

import os
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import httpx
import structlog
from pydantic import ValidationError

from oidc_bridge.models.keys import KeySet
from oidc_bridge.schemas.oidc import DiscoveryDocument, JSONWebKeySet
from oidc_bridge.services.keys import derive_kid, key_entry_from_jwk
from oidc_bridge.shared.core.config import Settings
from oidc_bridge.shared.core.exceptions import UpstreamFetchError

logger = structlog.get_logger()

DISCOVERY_PATH = "/.well-known/openid-configuration"
JWKS_PATH = "/openid/v1/jwks"


@dataclass(frozen=True)
class UpstreamDocuments:
    discovery: DiscoveryDocument
    key_set: KeySet
    fetched_at: datetime

    @property
    def issuer(self) -> str:
        return self.discovery.issuer


class UpstreamClient:
    def __init__(
        self,
        base_url: str,
        token_path: Optional[str] = None,
        ca_path: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.base_url = base_url.rstrip("/")
        self.token_path = token_path
        self.clock = clock
        verify = ssl.create_default_context(cafile=ca_path) if ca_path and os.path.exists(ca_path) else True
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "UpstreamClient":
        return cls(
            base_url=settings.UPSTREAM_URL,
            token_path=settings.UPSTREAM_TOKEN_PATH,
            ca_path=settings.UPSTREAM_CA_PATH,
            timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        )

    def _auth_headers(self) -> Dict[str, str]:
        # Projected service account tokens rotate on disk, so read per request
        if self.token_path and os.path.exists(self.token_path):
            with open(self.token_path) as f:
                token = f.read().strip()
            if token:
                return {"Authorization": f"Bearer {token}"}
        return {}

    async def _get_json(self, path: str) -> dict:
        try:
            response = await self._client.get(path, headers=self._auth_headers())
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamFetchError(
                f"Upstream {path} returned {e.response.status_code}",
                details={"path": path, "status": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"Upstream {path} unreachable: {e}", details={"path": path}) from e
        except ValueError as e:
            raise UpstreamFetchError(f"Upstream {path} returned invalid JSON", details={"path": path}) from e

    async def fetch_discovery(self) -> DiscoveryDocument:
        payload = await self._get_json(DISCOVERY_PATH)
        try:
            return DiscoveryDocument.model_validate(payload)
        except ValidationError as e:
            raise UpstreamFetchError("Malformed upstream discovery document",
                                     details={"errors": e.errors(include_url=False, include_input=False)}) from e

    async def fetch_key_set(self) -> KeySet:
        payload = await self._get_json(JWKS_PATH)
        try:
            jwks = JSONWebKeySet.model_validate(payload)
        except ValidationError as e:
            raise UpstreamFetchError("Malformed upstream JWKS",
                                     details={"errors": e.errors(include_url=False, include_input=False)}) from e

        if not jwks.keys:
            raise UpstreamFetchError("Upstream JWKS contains no keys")

        seen_at = self.clock()
        entries = []
        for jwk in jwks.keys:
            try:
                entry = key_entry_from_jwk(jwk, seen_at)
            except ValueError as e:
                # One unusable key invalidates the fetch; never publish a partial set
                raise UpstreamFetchError(f"Unusable upstream key {jwk.kid}: {e}", details={"kid": jwk.kid}) from e
            derived = derive_kid(entry.public_key)
            if derived != entry.kid:
                logger.warning("upstream_kid_not_content_derived", kid=entry.kid, derived_kid=derived)
            entries.append(entry)
        return KeySet(entries)

    async def fetch(self) -> UpstreamDocuments:
        discovery = await self.fetch_discovery()
        key_set = await self.fetch_key_set()
        return UpstreamDocuments(discovery=discovery, key_set=key_set, fetched_at=self.clock())

    async def close(self) -> None:
        await self._client.aclose()
