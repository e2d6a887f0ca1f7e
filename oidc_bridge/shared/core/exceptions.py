import re
from typing import Optional, Dict, Any


class BridgeException(Exception):
    """Base exception for all oidc-bridge errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ConfigurationError(BridgeException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class IssuerMismatchError(ConfigurationError):
    """
    Raised when the configured public base URL differs from the issuer the
    API server advertises. Tokens would fail verification against the mirror,
    so this is fatal before anything is published.
    """
    def __init__(self, configured: str, upstream: str):
        super().__init__(
            f"Configured public base URL {configured!r} does not match upstream issuer {upstream!r}",
            code="issuer_mismatch",
            details={"configured": configured, "upstream": upstream},
        )


class UpstreamFetchError(BridgeException):
    """Raised when the discovery document or JWKS cannot be fetched or parsed."""
    def __init__(self, message: str, code: str = "upstream_fetch_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class CacheConflictError(BridgeException):
    """Raised when a SharedCache write loses the expected-version race."""
    def __init__(self, key: str, expected_version: Optional[str], actual_version: Optional[str] = None):
        super().__init__(
            f"Shared cache entry {key!r} changed concurrently",
            code="cache_conflict",
            details={"key": key, "expected_version": expected_version, "actual_version": actual_version},
        )
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version


class CacheError(BridgeException):
    """Raised when the shared cache backend itself fails."""
    def __init__(self, message: str, code: str = "cache_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class StorageError(BridgeException):
    """
    Base for object storage failures.
    Messages are sanitized so provider request IDs and credentials never reach logs.
    """
    def __init__(self, message: str, code: str = "storage_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(self._sanitize(message), code=code, details=details)

    @staticmethod
    def _sanitize(msg: str) -> str:
        msg = re.sub(r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '[REDACTED_ID]', msg, flags=re.IGNORECASE)
        msg = re.sub(r'(?i)\b(access_key|secret_key|token|password|signature|sig)=[^&\s]+', r'\1=[REDACTED]', msg)
        return msg


class TransientStorageError(StorageError):
    """Timeouts, throttling and 5xx responses. Retried with backoff within a cycle."""
    def __init__(self, message: str, code: str = "storage_transient", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class PermissionDeniedError(StorageError):
    """Credentials or ACLs rejected by the backend. Never retried."""
    def __init__(self, message: str, code: str = "storage_permission_denied", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class LeaderLostError(BridgeException):
    """Raised inside a leader-only cycle that observed a leadership change."""
    def __init__(self, job_name: str):
        super().__init__(f"Leadership lost during {job_name}", code="leader_lost", details={"job": job_name})
