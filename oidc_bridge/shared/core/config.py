import re
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Lower bound on the upstream poll interval to bound API server load
MIN_POLL_INTERVAL_SECONDS = 5

CLUSTER_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")

STORAGE_BACKENDS = ("s3", "gcs", "azure", "memory")
CACHE_BACKENDS = ("configmap", "memory")


class Settings(BaseSettings):
    """
    Main configuration for oidc-bridge.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "oidc-bridge"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    TESTING: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # Publication target
    PUBLIC_BASE_URL: str = ""  # Must equal the cluster's --service-account-issuer byte-for-byte
    TARGET_NAME: str = "default"
    CACHE_CONTROL: str = "public, max-age=300"

    # Rotation
    POLL_INTERVAL_SECONDS: int = 60
    OVERLAP_DURATION_SECONDS: int = 86400

    # Fleet mode (empty FLEET_NAME disables it)
    FLEET_NAME: str = ""
    CLUSTER_ID: Optional[str] = None
    FLEET_AGGREGATOR_ENABLED: bool = True
    AGGREGATION_INTERVAL_SECONDS: int = 300
    CLUSTER_TTL_SECONDS: int = 172800
    CLUSTER_HEARTBEAT_SECONDS: int = 3600

    # Upstream (Kubernetes API server OIDC endpoints)
    UPSTREAM_URL: str = "https://kubernetes.default.svc"
    UPSTREAM_TOKEN_PATH: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    UPSTREAM_CA_PATH: Optional[str] = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
    UPSTREAM_TIMEOUT_SECONDS: float = 10.0

    # Object storage
    STORAGE_BACKEND: str = "s3"
    STORAGE_BUCKET: Optional[str] = None  # Bucket (S3/GCS) or container (Azure)
    STORAGE_PREFIX: str = ""
    STORAGE_TIMEOUT_SECONDS: float = 15.0
    STORAGE_MAX_ATTEMPTS: int = 4
    STORAGE_BACKOFF_MIN_SECONDS: float = 0.5
    STORAGE_BACKOFF_MAX_SECONDS: float = 8.0

    # AWS Credentials (fall back to the default credential chain / IRSA)
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_DEFAULT_REGION: str = "us-east-1"
    AWS_ENDPOINT_URL: Optional[str] = None  # MinIO/LocalStack

    # GCP Credentials (fall back to Application Default Credentials)
    GCP_PROJECT_ID: Optional[str] = None
    GCP_SERVICE_ACCOUNT_JSON: Optional[str] = None

    # Azure Credentials
    AZURE_STORAGE_ACCOUNT_URL: Optional[str] = None
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_TENANT_ID: Optional[str] = None
    AZURE_CLIENT_ID: Optional[str] = None
    AZURE_CLIENT_SECRET: Optional[str] = None

    # Shared cache
    CACHE_BACKEND: str = "configmap"
    CACHE_NAMESPACE: str = "oidc-bridge"
    CACHE_CONFIGMAP_PREFIX: str = "oidc-bridge-cache"
    CACHE_WATCH_TIMEOUT_SECONDS: int = 60

    # Leader election
    LEADER_ELECTION_ENABLED: bool = True
    LEASE_NAME: str = "oidc-bridge-leader"
    LEASE_NAMESPACE: str = "oidc-bridge"
    LEASE_DURATION_SECONDS: int = 15
    LEASE_RENEW_DEADLINE_SECONDS: int = 10
    LEASE_RETRY_PERIOD_SECONDS: int = 2
    POD_NAME: Optional[str] = None  # Lease holder identity, defaults to hostname

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True
    )

    @model_validator(mode='after')
    def validate_bridge_config(self) -> 'Settings':
        """Reject configurations that would publish an unverifiable issuer or churn the API server."""
        if self.POLL_INTERVAL_SECONDS < MIN_POLL_INTERVAL_SECONDS:
            raise ValueError(
                f"POLL_INTERVAL_SECONDS must be at least {MIN_POLL_INTERVAL_SECONDS} seconds. "
                f"Current: {self.POLL_INTERVAL_SECONDS}"
            )
        if self.OVERLAP_DURATION_SECONDS < 0:
            raise ValueError("OVERLAP_DURATION_SECONDS must not be negative.")
        if self.CLUSTER_TTL_SECONDS <= 0:
            raise ValueError("CLUSTER_TTL_SECONDS must be positive.")
        if self.STORAGE_MAX_ATTEMPTS < 1:
            raise ValueError("STORAGE_MAX_ATTEMPTS must be at least 1.")

        if self.STORAGE_BACKEND not in STORAGE_BACKENDS:
            raise ValueError(f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}. Current: {self.STORAGE_BACKEND}")
        if self.CACHE_BACKEND not in CACHE_BACKENDS:
            raise ValueError(f"CACHE_BACKEND must be one of {', '.join(CACHE_BACKENDS)}. Current: {self.CACHE_BACKEND}")
        if self.STORAGE_BACKEND != "memory" and not self.STORAGE_BUCKET:
            raise ValueError(f"STORAGE_BUCKET is required for the {self.STORAGE_BACKEND} storage backend.")

        if self.fleet_enabled:
            if not self.CLUSTER_ID:
                raise ValueError("CLUSTER_ID is required when FLEET_NAME is set.")
            if not CLUSTER_ID_PATTERN.match(self.CLUSTER_ID):
                raise ValueError(
                    f"Invalid CLUSTER_ID format: '{self.CLUSTER_ID}'. "
                    "Must be lowercase letters, digits or hyphens, starting and ending with a letter or digit."
                )
            if self.AGGREGATION_INTERVAL_SECONDS < self.POLL_INTERVAL_SECONDS:
                raise ValueError("AGGREGATION_INTERVAL_SECONDS must be greater than or equal to POLL_INTERVAL_SECONDS.")
            if self.CLUSTER_HEARTBEAT_SECONDS <= 0:
                raise ValueError("CLUSTER_HEARTBEAT_SECONDS must be positive.")
            # A record is stamped up to one heartbeat in the past and refreshed one heartbeat later
            if 2 * self.CLUSTER_HEARTBEAT_SECONDS >= self.CLUSTER_TTL_SECONDS:
                raise ValueError("CLUSTER_HEARTBEAT_SECONDS must be less than half of CLUSTER_TTL_SECONDS.")

        if self.TESTING:
            return self

        if not self.PUBLIC_BASE_URL:
            raise ValueError("PUBLIC_BASE_URL is required.")
        if self.is_production and not self.PUBLIC_BASE_URL.startswith("https://"):
            raise ValueError(f"PUBLIC_BASE_URL must be an https URL in production. Current: {self.PUBLIC_BASE_URL}")

        return self

    @property
    def is_production(self) -> bool:
        return not self.DEBUG

    @property
    def fleet_enabled(self) -> bool:
        return bool(self.FLEET_NAME)

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(seconds=self.POLL_INTERVAL_SECONDS)

    @property
    def overlap_duration(self) -> timedelta:
        return timedelta(seconds=self.OVERLAP_DURATION_SECONDS)

    @property
    def cluster_ttl(self) -> timedelta:
        return timedelta(seconds=self.CLUSTER_TTL_SECONDS)

    @property
    def cluster_heartbeat(self) -> timedelta:
        return timedelta(seconds=self.CLUSTER_HEARTBEAT_SECONDS)


@lru_cache
def get_settings():
    """Returns a singleton instance of the application settings."""
    return Settings()
