from typing import Any, Dict, List, Optional

import aioboto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
    ConnectionClosedError,
)

from oidc_bridge.shared.adapters.base import (
    ObjectInfo,
    StorageBackend,
    StorageObjectVersion,
    StoredObject,
    WriteResult,
)
from oidc_bridge.shared.core.config import Settings
from oidc_bridge.shared.core.exceptions import PermissionDeniedError, StorageError, TransientStorageError

logger = structlog.get_logger()

NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
# 409 ConditionalRequestConflict: a concurrent conditional write to the same key is in flight
PRECONDITION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict"}
PERMISSION_CODES = {"AccessDenied", "403", "InvalidAccessKeyId", "SignatureDoesNotMatch",
                    "ExpiredToken", "InvalidToken", "AllAccessDisabled"}
THROTTLING_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout",
                    "InternalError", "ServiceUnavailable", "503", "500"}
NETWORK_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", "Unknown"))


def _status(e: ClientError) -> int:
    return int(e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)


class S3StorageBackend(StorageBackend):
    """
    Amazon S3 (and S3-compatible) backend.

    Versions are ETags. Conditional writes use PutObject's If-Match header,
    or If-None-Match: * when the object must not exist yet.
    """

    name = "s3"

    def __init__(self, settings: Settings, session: Optional[aioboto3.Session] = None):
        self.bucket = settings.STORAGE_BUCKET
        self.settings = settings
        self.session = session or aioboto3.Session()
        # Standardized boto config with timeouts to prevent indefinite hangs.
        # Retries stay low; the publisher owns the backoff loop.
        self.boto_config = BotoConfig(
            read_timeout=settings.STORAGE_TIMEOUT_SECONDS,
            connect_timeout=min(10, settings.STORAGE_TIMEOUT_SECONDS),
            retries={"max_attempts": 2, "mode": "standard"},
        )

    def _client(self):
        kwargs: Dict[str, Any] = {
            "service_name": "s3",
            "region_name": self.settings.AWS_DEFAULT_REGION,
            "config": self.boto_config,
        }
        if self.settings.AWS_ENDPOINT_URL:
            kwargs["endpoint_url"] = self.settings.AWS_ENDPOINT_URL
        # We don't require keys: without them boto falls back to the default chain (IRSA, instance profile)
        if self.settings.AWS_ACCESS_KEY_ID and self.settings.AWS_SECRET_ACCESS_KEY:
            kwargs["aws_access_key_id"] = self.settings.AWS_ACCESS_KEY_ID
            kwargs["aws_secret_access_key"] = self.settings.AWS_SECRET_ACCESS_KEY
        return self.session.client(**kwargs)

    def _raise_for(self, e: ClientError, operation: str, path: str):
        code = _error_code(e)
        details = {"bucket": self.bucket, "path": path, "operation": operation, "code": code}
        if code in PERMISSION_CODES:
            raise PermissionDeniedError(f"S3 {operation} denied for s3://{self.bucket}/{path}", details=details) from e
        status = _status(e)
        if code in THROTTLING_CODES or status == 429 or status >= 500:
            raise TransientStorageError(f"S3 {operation} failed for s3://{self.bucket}/{path}: {code}",
                                        details=details) from e
        raise StorageError(f"S3 {operation} rejected for s3://{self.bucket}/{path}: {code}", details=details) from e

    async def read(self, path: str) -> Optional[StoredObject]:
        try:
            async with self._client() as client:
                response = await client.get_object(Bucket=self.bucket, Key=path)
                async with response["Body"] as stream:
                    data = await stream.read()
                return StoredObject(data=data, version=response["ETag"])
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            self._raise_for(e, "GetObject", path)
        except NETWORK_ERRORS as e:
            raise TransientStorageError(f"S3 GetObject unreachable: {e}", details={"path": path}) from e

    async def write_if_match(
        self,
        path: str,
        data: bytes,
        expected_version: StorageObjectVersion,
        content_type: str = "application/json",
        cache_control: Optional[str] = None,
    ) -> WriteResult:
        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": path,
            "Body": data,
            "ContentType": content_type,
        }
        if cache_control:
            params["CacheControl"] = cache_control
        if expected_version is None:
            params["IfNoneMatch"] = "*"
        else:
            params["IfMatch"] = expected_version

        try:
            async with self._client() as client:
                response = await client.put_object(**params)
                return WriteResult.success(response["ETag"])
        except ClientError as e:
            code = _error_code(e)
            # If-Match against a deleted object surfaces as 404: the expected version is gone
            if code in PRECONDITION_CODES or (expected_version is not None and code in NOT_FOUND_CODES):
                logger.debug("s3_precondition_failed", path=path, code=code)
                return WriteResult.conflict()
            self._raise_for(e, "PutObject", path)
        except NETWORK_ERRORS as e:
            raise TransientStorageError(f"S3 PutObject unreachable: {e}", details={"path": path}) from e

    async def list(self, prefix: str) -> List[ObjectInfo]:
        objects: List[ObjectInfo] = []
        try:
            async with self._client() as client:
                paginator = client.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                    for item in page.get("Contents", []):
                        objects.append(ObjectInfo(
                            path=item["Key"],
                            version=item.get("ETag", ""),
                            last_modified=item.get("LastModified"),
                        ))
        except ClientError as e:
            self._raise_for(e, "ListObjectsV2", prefix)
        except NETWORK_ERRORS as e:
            raise TransientStorageError(f"S3 ListObjectsV2 unreachable: {e}", details={"prefix": prefix}) from e
        return objects
