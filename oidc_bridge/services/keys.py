"""
Conversion between JSON Web Keys and KeyEntry.

Key IDs follow the Kubernetes derivation: base64url(sha256(DER SubjectPublicKeyInfo))
without padding, so the same key always yields the same kid on every cluster.
"""

import base64
import hashlib
from datetime import datetime
from typing import Dict, Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from oidc_bridge.models.keys import KeyAlgorithm, KeyEntry
from oidc_bridge.schemas.oidc import JSONWebKey

CURVES = {
    "P-256": (ec.SECP256R1, KeyAlgorithm.ES256, 32),
    "P-384": (ec.SECP384R1, KeyAlgorithm.ES384, 48),
    "P-521": (ec.SECP521R1, KeyAlgorithm.ES512, 66),
}
CURVE_NAMES = {"secp256r1": "P-256", "secp384r1": "P-384", "secp521r1": "P-521"}


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def int_to_b64url(value: int, length: int = 0) -> str:
    size = max(length, (value.bit_length() + 7) // 8)
    return b64url_encode(value.to_bytes(size, "big"))


def b64url_to_int(value: str) -> int:
    return int.from_bytes(b64url_decode(value), "big")


def derive_kid(public_key_der: bytes) -> str:
    """Calculate the key ID exactly as the Kubernetes API server does."""
    return b64url_encode(hashlib.sha256(public_key_der).digest())


def _to_der(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def key_entry_from_jwk(jwk: JSONWebKey, seen_at: datetime) -> KeyEntry:
    """
    Build a KeyEntry from a public JWK.
    Raises ValueError when key material is missing or inconsistent with alg.
    """
    if jwk.kty == "RSA":
        if not jwk.n or not jwk.e:
            raise ValueError(f"RSA key {jwk.kid} is missing n or e")
        public_key = rsa.RSAPublicNumbers(b64url_to_int(jwk.e), b64url_to_int(jwk.n)).public_key()
        algorithm = KeyAlgorithm(jwk.alg) if jwk.alg else KeyAlgorithm.RS256
    else:
        if jwk.crv not in CURVES or not jwk.x or not jwk.y:
            raise ValueError(f"EC key {jwk.kid} has unsupported curve {jwk.crv!r} or missing coordinates")
        curve_cls, default_alg, _ = CURVES[jwk.crv]
        public_key = ec.EllipticCurvePublicNumbers(
            b64url_to_int(jwk.x), b64url_to_int(jwk.y), curve_cls()
        ).public_key()
        algorithm = KeyAlgorithm(jwk.alg) if jwk.alg else default_alg

    if algorithm.key_type != jwk.kty:
        raise ValueError(f"Key {jwk.kid} of type {jwk.kty} cannot use algorithm {algorithm.value}")

    return KeyEntry(kid=jwk.kid, public_key=_to_der(public_key), algorithm=algorithm, first_seen=seen_at)


def jwk_from_entry(entry: KeyEntry) -> Dict[str, Any]:
    """Render a KeyEntry as a public JWK in its native representation."""
    public_key = serialization.load_der_public_key(entry.public_key)
    jwk: Dict[str, Any] = {
        "use": "sig",
        "kty": entry.algorithm.key_type,
        "kid": entry.kid,
        "alg": entry.algorithm.value,
    }
    if isinstance(public_key, rsa.RSAPublicKey):
        numbers = public_key.public_numbers()
        jwk["n"] = int_to_b64url(numbers.n)
        jwk["e"] = int_to_b64url(numbers.e)
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        numbers = public_key.public_numbers()
        crv = CURVE_NAMES[public_key.curve.name]
        size = CURVES[crv][2]
        jwk["crv"] = crv
        jwk["x"] = int_to_b64url(numbers.x, size)
        jwk["y"] = int_to_b64url(numbers.y, size)
    else:
        raise ValueError(f"Unsupported public key type for {entry.kid}: {type(public_key).__name__}")
    return jwk
