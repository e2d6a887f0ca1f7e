from typing import List, Optional

import structlog
from azure.core import MatchConditions
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity.aio import ClientSecretCredential, DefaultAzureCredential
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient

from oidc_bridge.shared.adapters.base import (
    ObjectInfo,
    StorageBackend,
    StorageObjectVersion,
    StoredObject,
    WriteResult,
)
from oidc_bridge.shared.core.config import Settings
from oidc_bridge.shared.core.exceptions import (
    ConfigurationError,
    PermissionDeniedError,
    StorageError,
    TransientStorageError,
)

logger = structlog.get_logger()


class AzureBlobStorageBackend(StorageBackend):
    """
    Azure Blob Storage backend using the official async SDK.

    Versions are ETags. Replacing an existing blob uses
    MatchConditions.IfNotModified; creating one uses overwrite=False.
    """

    name = "azure"

    def __init__(self, settings: Settings, service_client: Optional[BlobServiceClient] = None):
        self.settings = settings
        self.container_name = settings.STORAGE_BUCKET
        self.timeout = settings.STORAGE_TIMEOUT_SECONDS
        self._credential = None
        self._service_client = service_client

    def _get_credential(self):
        if not self._credential:
            if self.settings.AZURE_CLIENT_SECRET:
                self._credential = ClientSecretCredential(
                    tenant_id=self.settings.AZURE_TENANT_ID,
                    client_id=self.settings.AZURE_CLIENT_ID,
                    client_secret=self.settings.AZURE_CLIENT_SECRET
                )
            else:
                # Workload identity / managed identity
                self._credential = DefaultAzureCredential()
        return self._credential

    def _get_service_client(self) -> BlobServiceClient:
        if not self._service_client:
            if self.settings.AZURE_STORAGE_CONNECTION_STRING:
                self._service_client = BlobServiceClient.from_connection_string(
                    self.settings.AZURE_STORAGE_CONNECTION_STRING
                )
            elif self.settings.AZURE_STORAGE_ACCOUNT_URL:
                self._service_client = BlobServiceClient(
                    account_url=self.settings.AZURE_STORAGE_ACCOUNT_URL,
                    credential=self._get_credential(),
                )
            else:
                raise ConfigurationError(
                    "Azure storage requires AZURE_STORAGE_CONNECTION_STRING or AZURE_STORAGE_ACCOUNT_URL"
                )
        return self._service_client

    def _blob(self, path: str):
        return self._get_service_client().get_blob_client(container=self.container_name, blob=path)

    def _wrap(self, e: Exception, operation: str, path: str):
        details = {"container": self.container_name, "path": path, "operation": operation}
        if isinstance(e, (ServiceRequestError, ServiceResponseError)):
            raise TransientStorageError(f"Azure {operation} unreachable: {e}", details=details) from e
        status = getattr(e, "status_code", None) or 0
        if isinstance(e, ClientAuthenticationError) or status in (401, 403):
            raise PermissionDeniedError(f"Azure {operation} denied for {self.container_name}/{path}", details=details) from e
        if status == 429 or status >= 500:
            raise TransientStorageError(f"Azure {operation} failed for {self.container_name}/{path}: {status}",
                                        details=details) from e
        raise StorageError(f"Azure {operation} rejected for {self.container_name}/{path}: {e}", details=details) from e

    async def read(self, path: str) -> Optional[StoredObject]:
        try:
            downloader = await self._blob(path).download_blob(timeout=self.timeout)
            data = await downloader.readall()
            return StoredObject(data=data, version=downloader.properties.etag)
        except ResourceNotFoundError:
            return None
        except (HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
            self._wrap(e, "download", path)

    async def write_if_match(
        self,
        path: str,
        data: bytes,
        expected_version: StorageObjectVersion,
        content_type: str = "application/json",
        cache_control: Optional[str] = None,
    ) -> WriteResult:
        content_settings = ContentSettings(content_type=content_type, cache_control=cache_control)
        try:
            if expected_version is None:
                result = await self._blob(path).upload_blob(
                    data, overwrite=False, content_settings=content_settings, timeout=self.timeout
                )
            else:
                result = await self._blob(path).upload_blob(
                    data,
                    overwrite=True,
                    etag=expected_version,
                    match_condition=MatchConditions.IfNotModified,
                    content_settings=content_settings,
                    timeout=self.timeout,
                )
            return WriteResult.success(result["etag"])
        except (ResourceModifiedError, ResourceExistsError):
            logger.debug("azure_precondition_failed", path=path)
            return WriteResult.conflict()
        except ResourceNotFoundError:
            # The blob we expected to replace was deleted underneath us
            return WriteResult.conflict()
        except (HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
            if getattr(e, "status_code", None) == 412:
                return WriteResult.conflict()
            self._wrap(e, "upload", path)

    async def list(self, prefix: str) -> List[ObjectInfo]:
        objects: List[ObjectInfo] = []
        try:
            container = self._get_service_client().get_container_client(self.container_name)
            async for blob in container.list_blobs(name_starts_with=prefix, timeout=self.timeout):
                objects.append(ObjectInfo(path=blob.name, version=blob.etag, last_modified=blob.last_modified))
        except (HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
            self._wrap(e, "list", prefix)
        return objects

    async def close(self) -> None:
        if self._service_client:
            await self._service_client.close()
        if self._credential:
            await self._credential.close()
