from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

# RFC 7518 section 6: members that only appear in private or symmetric keys
PRIVATE_MEMBERS = ("d", "p", "q", "dp", "dq", "qi", "oth", "k")


class DiscoveryDocument(BaseModel):
    """OpenID Provider Metadata, as served by the API server and as published."""
    issuer: str = Field(..., min_length=1)
    jwks_uri: str = Field(..., min_length=1)
    response_types_supported: List[str] = Field(default_factory=lambda: ["id_token"])
    subject_types_supported: List[str] = Field(default_factory=lambda: ["public"])
    id_token_signing_alg_values_supported: List[str] = Field(default_factory=lambda: ["RS256"])

    model_config = ConfigDict(extra="ignore")


class JSONWebKey(BaseModel):
    """Public JWK. A key carrying private members (d, p, q, ...) is rejected."""
    kty: str = Field(..., pattern=r"^(RSA|EC)$")
    kid: str = Field(..., min_length=1)
    alg: Optional[str] = None
    use: Optional[str] = "sig"
    # RSA
    n: Optional[str] = None
    e: Optional[str] = None
    # EC
    crv: Optional[str] = None
    x: Optional[str] = None
    y: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def reject_private_members(cls, data):
        if isinstance(data, dict):
            present = sorted(m for m in PRIVATE_MEMBERS if m in data)
            if present:
                raise ValueError(f"JWK {data.get('kid')!r} carries private key members: {', '.join(present)}")
        return data


class JSONWebKeySet(BaseModel):
    keys: List[JSONWebKey]


class ClusterJWKS(JSONWebKeySet):
    """
    Per-cluster JWKS in fleet mode. The extra members are ignored by JWKS
    consumers (RFC 7517 section 5) and carry the record's freshness.
    """
    cluster_id: str
    last_published: datetime
