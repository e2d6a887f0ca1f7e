import os
# Configure the environment BEFORE any oidc_bridge imports
os.environ["TESTING"] = "True"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["LEADER_ELECTION_ENABLED"] = "False"
os.environ["PUBLIC_BASE_URL"] = "https://oidc.example.com/cluster-a"

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from oidc_bridge.models.keys import KeyAlgorithm, KeyEntry, KeySet
from oidc_bridge.schemas.oidc import DiscoveryDocument
from oidc_bridge.services.keys import derive_kid
from oidc_bridge.services.upstream import UpstreamDocuments
from oidc_bridge.shared.core.exceptions import UpstreamFetchError

ISSUER = "https://oidc.example.com/cluster-a"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

_RSA_KEYS: List[rsa.RSAPrivateKey] = []


def _der(private_key) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def make_rsa_entry(index: int, seen_at: datetime = T0) -> KeyEntry:
    """Deterministic per index within a test session; generating RSA keys is slow."""
    while len(_RSA_KEYS) <= index:
        _RSA_KEYS.append(rsa.generate_private_key(public_exponent=65537, key_size=2048))
    der = _der(_RSA_KEYS[index])
    return KeyEntry(kid=derive_kid(der), public_key=der, algorithm=KeyAlgorithm.RS256, first_seen=seen_at)


def make_ec_entry(seen_at: datetime = T0) -> KeyEntry:
    der = _der(ec.generate_private_key(ec.SECP256R1()))
    return KeyEntry(kid=derive_kid(der), public_key=der, algorithm=KeyAlgorithm.ES256, first_seen=seen_at)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeUpstream:
    """Stands in for UpstreamClient: serves whatever key set the test sets."""

    def __init__(self, issuer: str = ISSUER, key_set: Optional[KeySet] = None, clock: Optional[FakeClock] = None):
        self.issuer = issuer
        self.key_set = key_set or KeySet()
        self.clock = clock or FakeClock()
        self.error: Optional[Exception] = None
        self.fetches = 0
        self.closed = False

    async def fetch_discovery(self) -> DiscoveryDocument:
        if self.error:
            raise self.error
        return DiscoveryDocument(issuer=self.issuer, jwks_uri=f"{self.issuer}/openid/v1/jwks")

    async def fetch(self) -> UpstreamDocuments:
        self.fetches += 1
        if self.error:
            raise self.error
        if len(self.key_set) == 0:
            raise UpstreamFetchError("Upstream JWKS contains no keys")
        return UpstreamDocuments(discovery=await self.fetch_discovery(), key_set=self.key_set,
                                 fetched_at=self.clock())

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="session")
def key_a() -> KeyEntry:
    return make_rsa_entry(0)


@pytest.fixture(scope="session")
def key_b() -> KeyEntry:
    return make_rsa_entry(1)


@pytest.fixture(scope="session")
def key_c() -> KeyEntry:
    return make_rsa_entry(2)


@pytest.fixture(scope="session")
def ec_key() -> KeyEntry:
    return make_ec_entry()


@pytest.fixture
def upstream(clock) -> FakeUpstream:
    return FakeUpstream(clock=clock)
