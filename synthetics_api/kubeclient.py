"""Kubernetes client construction."""

import logging
from dataclasses import dataclass

from kubernetes import client, config

logger = logging.getLogger(__name__)


class KubeClientError(Exception):
    """Raised when no usable Kubernetes configuration can be loaded."""

    pass


@dataclass(frozen=True)
class KubeClients:
    """API clients sharing one configured connection."""

    core_api: client.CoreV1Api
    version_api: client.VersionApi
    in_cluster: bool


def create_clients(kubeconfig: str | None = None) -> KubeClients:
    """Create Kubernetes API clients.

    An explicit kubeconfig path wins. Otherwise in-cluster configuration is
    tried first, then the default kubeconfig locations.

    Raises:
        KubeClientError: If no configuration can be loaded.
    """
    configuration = client.Configuration()
    in_cluster = False

    try:
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig, client_configuration=configuration)
        else:
            try:
                config.load_incluster_config(client_configuration=configuration)
                in_cluster = True
            except config.ConfigException as e:
                logger.info("Could not create in-cluster config: %s. Trying to use kubeconfig.", e)
                config.load_kube_config(client_configuration=configuration)
    except (config.ConfigException, OSError) as e:
        raise KubeClientError(f"failed to create kubernetes client config: {e}") from e

    api_client = client.ApiClient(configuration)
    return KubeClients(
        core_api=client.CoreV1Api(api_client),
        version_api=client.VersionApi(api_client),
        in_cluster=in_cluster,
    )
