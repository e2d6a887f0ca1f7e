import asyncio
import json
from typing import List, Optional

import structlog
from google.api_core import exceptions as gcp_exceptions
from google.auth.exceptions import TransportError
from google.cloud import storage
from google.oauth2 import service_account
from requests.exceptions import ConnectionError as RequestsConnectionError, Timeout as RequestsTimeout

from oidc_bridge.shared.adapters.base import (
    ObjectInfo,
    StorageBackend,
    StorageObjectVersion,
    StoredObject,
    WriteResult,
)
from oidc_bridge.shared.core.config import Settings
from oidc_bridge.shared.core.exceptions import ConfigurationError, PermissionDeniedError, TransientStorageError

logger = structlog.get_logger()

TRANSIENT_ERRORS = (
    gcp_exceptions.TooManyRequests,
    gcp_exceptions.InternalServerError,
    gcp_exceptions.BadGateway,
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.GatewayTimeout,
    gcp_exceptions.DeadlineExceeded,
    TransportError,
    RequestsConnectionError,
    RequestsTimeout,
)
PERMISSION_ERRORS = (gcp_exceptions.Forbidden, gcp_exceptions.Unauthorized)


class GCSStorageBackend(StorageBackend):
    """
    Google Cloud Storage backend.

    Versions are object generations. Writes pass if_generation_match, with
    generation 0 meaning "only if the object does not exist".
    The client library is synchronous, so calls run in a worker thread.
    """

    name = "gcs"

    def __init__(self, settings: Settings, client: Optional[storage.Client] = None):
        self.settings = settings
        self.bucket_name = settings.STORAGE_BUCKET
        self.timeout = settings.STORAGE_TIMEOUT_SECONDS
        self._client = client

    def _get_credentials(self):
        """Initialize GCP credentials from service account JSON, or None for ADC."""
        if self.settings.GCP_SERVICE_ACCOUNT_JSON:
            try:
                info = json.loads(self.settings.GCP_SERVICE_ACCOUNT_JSON)
            except ValueError as e:
                raise ConfigurationError("GCP_SERVICE_ACCOUNT_JSON is not valid JSON") from e
            return service_account.Credentials.from_service_account_info(info)
        return None

    def _get_client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client(
                project=self.settings.GCP_PROJECT_ID,
                credentials=self._get_credentials(),
            )
        return self._client

    def _bucket(self):
        return self._get_client().bucket(self.bucket_name)

    def _wrap(self, e: Exception, operation: str, path: str):
        details = {"bucket": self.bucket_name, "path": path, "operation": operation}
        if isinstance(e, PERMISSION_ERRORS):
            raise PermissionDeniedError(f"GCS {operation} denied for gs://{self.bucket_name}/{path}", details=details) from e
        raise TransientStorageError(f"GCS {operation} failed for gs://{self.bucket_name}/{path}: {e}", details=details) from e

    def _read_sync(self, path: str) -> Optional[StoredObject]:
        blob = self._bucket().get_blob(path, timeout=self.timeout)
        if blob is None:
            return None
        # Pin the download to the generation we report as the version
        data = blob.download_as_bytes(if_generation_match=blob.generation, timeout=self.timeout)
        return StoredObject(data=data, version=str(blob.generation))

    async def read(self, path: str) -> Optional[StoredObject]:
        try:
            return await asyncio.to_thread(self._read_sync, path)
        except gcp_exceptions.NotFound:
            return None
        except gcp_exceptions.PreconditionFailed as e:
            # Replaced between metadata fetch and download; the next attempt sees the new generation
            raise TransientStorageError(f"GCS object gs://{self.bucket_name}/{path} changed during read") from e
        except PERMISSION_ERRORS + TRANSIENT_ERRORS as e:
            self._wrap(e, "get", path)

    def _write_sync(self, path: str, data: bytes, generation: int, content_type: str,
                    cache_control: Optional[str]) -> str:
        blob = self._bucket().blob(path)
        if cache_control:
            blob.cache_control = cache_control
        blob.upload_from_string(
            data,
            content_type=content_type,
            if_generation_match=generation,
            timeout=self.timeout,
        )
        return str(blob.generation)

    async def write_if_match(
        self,
        path: str,
        data: bytes,
        expected_version: StorageObjectVersion,
        content_type: str = "application/json",
        cache_control: Optional[str] = None,
    ) -> WriteResult:
        generation = int(expected_version) if expected_version is not None else 0
        try:
            version = await asyncio.to_thread(
                self._write_sync, path, data, generation, content_type, cache_control
            )
            return WriteResult.success(version)
        except gcp_exceptions.PreconditionFailed:
            logger.debug("gcs_precondition_failed", path=path, expected_generation=generation)
            return WriteResult.conflict()
        except PERMISSION_ERRORS + TRANSIENT_ERRORS as e:
            self._wrap(e, "upload", path)

    def _list_sync(self, prefix: str) -> List[ObjectInfo]:
        return [
            ObjectInfo(path=blob.name, version=str(blob.generation), last_modified=blob.updated)
            for blob in self._get_client().list_blobs(self.bucket_name, prefix=prefix, timeout=self.timeout)
        ]

    async def list(self, prefix: str) -> List[ObjectInfo]:
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except PERMISSION_ERRORS + TRANSIENT_ERRORS as e:
            self._wrap(e, "list", prefix)
