"""Job backends that run bake commands.

The backend is chosen by the `executor` setting of the configuration:
```python
from bakery.config import load_config
from bakery.jobs import create_executor

executor = create_executor(load_config(path))
await executor.start()
```
"""

import logging

from ..config import FARGATE, K8S, LOCAL, BakeryConfig
from ..exceptions import BakeryException
from .executor import JobExecutor
from .local import LocalJobExecutor

__all__ = [
    "JobExecutor",
    "LocalJobExecutor",
    "create_executor",
]

_LOGGER = logging.getLogger(__name__)


def _create_k8s(config: BakeryConfig) -> JobExecutor:
    from kubernetes import client, config as kube_config

    from .k8s import K8sJobExecutor

    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        _LOGGER.debug("Not running in a cluster, loading kubeconfig")
        kube_config.load_kube_config()
    api_client = client.ApiClient()
    return K8sJobExecutor(
        config.k8s,
        batch_api=client.BatchV1Api(api_client),
        core_api=client.CoreV1Api(api_client),
    )


def _create_fargate(config: BakeryConfig) -> JobExecutor:
    import boto3

    from .fargate import FargateJobExecutor
    from .secrets import VaultSecretBroker

    session = boto3.Session(region_name=config.fargate.region)
    return FargateJobExecutor(
        config.fargate,
        ecs=session.client("ecs"),
        logs=session.client("logs"),
        sts=session.client("sts"),
        broker=VaultSecretBroker(config.fargate.vault, session=session),
    )


def create_executor(config: BakeryConfig) -> JobExecutor:
    """Create the job backend selected by the configuration."""
    _LOGGER.info("Using %s job executor", config.executor)
    if config.executor == LOCAL:
        return LocalJobExecutor(config.local)
    if config.executor == K8S:
        return _create_k8s(config)
    if config.executor == FARGATE:
        return _create_fargate(config)
    raise BakeryException(f"Unsupported job executor '{config.executor}'")
