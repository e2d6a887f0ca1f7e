"""
Object Storage Backend Factory

Selects the provider implementation once at startup from configuration.
Provider SDKs are imported lazily so a deployment only needs the one it uses.
"""

from oidc_bridge.shared.adapters.base import StorageBackend
from oidc_bridge.shared.core.config import Settings


class StorageBackendFactory:
    @staticmethod
    def get_backend(settings: Settings) -> StorageBackend:
        """
        Returns the storage backend named by STORAGE_BACKEND.
        """
        provider = settings.STORAGE_BACKEND.lower()

        if provider == "s3":
            from oidc_bridge.shared.adapters.s3 import S3StorageBackend
            return S3StorageBackend(settings)

        elif provider == "gcs":
            from oidc_bridge.shared.adapters.gcs import GCSStorageBackend
            return GCSStorageBackend(settings)

        elif provider == "azure":
            from oidc_bridge.shared.adapters.azure import AzureBlobStorageBackend
            return AzureBlobStorageBackend(settings)

        elif provider == "memory":
            from oidc_bridge.shared.adapters.memory import InMemoryStorageBackend
            return InMemoryStorageBackend()

        raise ValueError(f"Unsupported storage backend: {settings.STORAGE_BACKEND}")
