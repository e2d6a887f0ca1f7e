"""
ConfigMap-backed shared cache.

Each cache key lives in its own ConfigMap. The object's resourceVersion is
the optimistic-concurrency token: replace() carries the expected
resourceVersion and the API server answers 409 Conflict when it moved on.
A background watch thread turns ConfigMap events into change notifications
for every subscriber in this process.
"""

import asyncio
import re
import threading
from typing import Dict, Optional, Tuple

import structlog
from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from oidc_bridge.models.snapshot import CacheSnapshot
from oidc_bridge.services.cache.base import SharedCache
from oidc_bridge.shared.core.exceptions import CacheConflictError, CacheError

logger = structlog.get_logger()

DATA_KEY = "snapshot.json"
KEY_LABEL = "oidc-bridge.io/cache-key"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "oidc-bridge"


def configmap_name(prefix: str, key: str) -> str:
    name = f"{prefix}-{key}".lower()
    return re.sub(r"[^a-z0-9.-]", "-", name)[:253].strip("-.")


class ConfigMapSharedCache(SharedCache):
    def __init__(
        self,
        api_client: client.ApiClient,
        namespace: str,
        name_prefix: str = "oidc-bridge-cache",
        request_timeout: float = 10.0,
        watch_timeout_seconds: int = 60,
    ):
        super().__init__()
        self.core = client.CoreV1Api(api_client)
        self.namespace = namespace
        self.name_prefix = name_prefix
        self.request_timeout = request_timeout
        self.watch_timeout_seconds = watch_timeout_seconds
        self._names: Dict[str, str] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop = threading.Event()
        self._watch: Optional[watch.Watch] = None
        self._thread: Optional[threading.Thread] = None

    def _name(self, key: str) -> str:
        return self._names.setdefault(key, configmap_name(self.name_prefix, key))

    def _body(self, key: str, snapshot: CacheSnapshot, resource_version: Optional[str]) -> client.V1ConfigMap:
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=self._name(key),
                namespace=self.namespace,
                resource_version=resource_version,
                labels={KEY_LABEL: key, MANAGED_BY_LABEL: MANAGED_BY},
            ),
            data={DATA_KEY: snapshot.to_json()},
        )

    async def read(self, key: str) -> Tuple[Optional[CacheSnapshot], Optional[str]]:
        try:
            cm = await asyncio.to_thread(
                self.core.read_namespaced_config_map,
                self._name(key), self.namespace, _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            if e.status == 404:
                return None, None
            raise CacheError(f"Reading cache entry {key!r} failed: {e.reason}",
                             details={"status": e.status, "key": key}) from e

        raw = (cm.data or {}).get(DATA_KEY)
        if not raw:
            return None, cm.metadata.resource_version
        try:
            return CacheSnapshot.from_json(raw), cm.metadata.resource_version
        except (ValueError, KeyError) as e:
            # An unreadable entry is treated as empty; the leader overwrites it on its next poll
            logger.error("cache_entry_corrupt", key=key, error=str(e))
            return None, cm.metadata.resource_version

    async def write(self, key: str, snapshot: CacheSnapshot, expected_version: Optional[str]) -> str:
        try:
            if expected_version is None:
                cm = await asyncio.to_thread(
                    self.core.create_namespaced_config_map,
                    self.namespace, self._body(key, snapshot, None),
                    _request_timeout=self.request_timeout,
                )
            else:
                cm = await asyncio.to_thread(
                    self.core.replace_namespaced_config_map,
                    self._name(key), self.namespace, self._body(key, snapshot, expected_version),
                    _request_timeout=self.request_timeout,
                )
        except ApiException as e:
            if e.status in (404, 409):
                raise CacheConflictError(key, expected_version) from e
            raise CacheError(f"Writing cache entry {key!r} failed: {e.reason}",
                             details={"status": e.status, "key": key}) from e

        version = cm.metadata.resource_version
        self._notify(key, version)
        return version

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop.clear()
        self._thread = threading.Thread(target=self._watch_forever, name="cache-watch", daemon=True)
        self._thread.start()
        logger.info("cache_watch_started", namespace=self.namespace)

    async def stop(self) -> None:
        self._stop.set()
        if self._watch:
            self._watch.stop()
        if self._thread:
            await asyncio.to_thread(self._thread.join, self.watch_timeout_seconds + 5)
        await super().stop()

    def _dispatch(self, key: str, version: Optional[str]) -> None:
        if self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._notify, key, version)

    def _watch_forever(self) -> None:
        while not self._stop.is_set():
            self._watch = watch.Watch()
            try:
                for event in self._watch.stream(
                    self.core.list_namespaced_config_map,
                    self.namespace,
                    label_selector=f"{MANAGED_BY_LABEL}={MANAGED_BY}",
                    timeout_seconds=self.watch_timeout_seconds,
                ):
                    if self._stop.is_set():
                        break
                    obj = event["object"]
                    key = (obj.metadata.labels or {}).get(KEY_LABEL)
                    if key and event["type"] in ("ADDED", "MODIFIED", "DELETED"):
                        self._dispatch(key, obj.metadata.resource_version)
            except ApiException as e:
                logger.warning("cache_watch_failed", status=e.status, reason=e.reason)
                self._stop.wait(5)
            except Exception as e:
                # Connection resets end the stream; reconnect after a pause
                logger.warning("cache_watch_interrupted", error=str(e))
                self._stop.wait(5)
        logger.info("cache_watch_stopped", namespace=self.namespace)
