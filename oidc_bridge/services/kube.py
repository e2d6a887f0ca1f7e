import structlog
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

logger = structlog.get_logger()

_loaded = False


def load_kubernetes_config() -> client.ApiClient:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    global _loaded
    if not _loaded:
        try:
            config.load_incluster_config()
            logger.info("kubernetes_config_loaded", source="in_cluster")
        except ConfigException:
            config.load_kube_config()
            logger.info("kubernetes_config_loaded", source="kubeconfig")
        _loaded = True
    return client.ApiClient()
