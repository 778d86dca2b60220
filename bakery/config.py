"""Configuration objects for the bakery.

Configuration is read once at startup from a YAML file and is read only
afterwards. Every section is optional:
```yaml
executor: k8s
helm:
  overrides_file_threshold: 4096
k8s:
  image: bakery/job:latest
  config_dir: /opt/bakery/config
```
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path

import yaml
from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode
from mashumaro.exceptions import MissingField, InvalidFieldValue

from .exceptions import BakeryException

__all__ = [
    "BakeryConfig",
    "FetchConfig",
    "HelmConfig",
    "HelmfileConfig",
    "KustomizeConfig",
    "JinjaConfig",
    "LocalJobConfig",
    "K8sJobConfig",
    "FargateJobConfig",
    "VaultConfig",
    "load_config",
]

_LOGGER = logging.getLogger(__name__)

LOCAL = "local"
K8S = "k8s"
FARGATE = "fargate"


@dataclass
class HelmConfig:
    """Configuration for rendering helm charts."""

    v2_executable_path: str = "helm2"
    """Binary used for the HELM2 renderer."""

    v3_executable_path: str = "helm"
    """Binary used for the HELM3 renderer."""

    overrides_file_threshold: int = 0
    """Overrides at least this many bytes long are written to a values file.

    Zero disables the values file and always passes overrides inline.
    """


@dataclass
class HelmfileConfig:
    """Configuration for rendering helmfiles."""

    executable_path: str = "helmfile"


@dataclass
class KustomizeConfig:
    """Configuration for building kustomizations."""

    executable_path: str = "kustomize"

    v4_executable_path: str = "kustomize4"
    """Binary used for the KUSTOMIZE4 renderer."""

    max_depth: int = 32
    """Maximum nesting of overlay descriptors before the bake is rejected."""


@dataclass
class JinjaConfig:
    """Configuration for rendering jinja templates."""

    executable_path: str = "jinja2"


@dataclass
class FetchConfig:
    """Configuration of the artifact fetch service."""

    base_url: str = "http://localhost:7002"

    max_attempts: int = 5

    backoff_seconds: float = 1.0

    timeout_seconds: float = 60.0


@dataclass
class LocalJobConfig:
    """Configuration for running jobs as local processes."""

    timeout_minutes: float | None = None
    """Jobs running longer than this are killed and fail."""


@dataclass
class K8sJobConfig:
    """Configuration for running jobs as kubernetes Jobs."""

    image: str = "bakery/job:latest"

    namespace: str = "bakery-jobs"

    timeout_minutes: int = 30

    config_dir: str = "/opt/bakery/config"
    """Local directory shared read only with every job as a config map."""


@dataclass
class VaultConfig:
    """Configuration of the secret broker used to hand context to tasks."""

    address: str = "http://localhost:8200"

    iam_auth_mount: str = "aws"

    timeout_seconds: float = 10.0

    token_ttl: str = "5m"
    """How long a task has to read its job context."""


@dataclass
class FargateJobConfig:
    """Configuration for running jobs as serverless container tasks."""

    region: str = "us-west-2"

    cluster: str | None = None

    subnets: list[str] = field(default_factory=list)

    job_image: str = "bakery/fargate-job:latest"

    execution_role_arn: str | None = None
    """Task execution role, defaults to the role the bakery runs as."""

    log_group: str = "bakery-jobs"

    log_prefix: str = "bakery"

    job_container_name: str = "bake-job"

    memory: str = "0.5 GB"

    cpu: str = ".25 vCPU"

    timeout_minutes: int = 30

    config_dir: str = "/opt/bakery/config"

    iam_role: str | None = None
    """Role assumed to obtain credentials for the target account."""

    iam_role_external_id: str | None = None

    vault: VaultConfig = field(default_factory=VaultConfig)


@dataclass
class BakeryConfig(DataClassDictMixin):
    """Top level configuration."""

    executor: str = LOCAL
    """One of `local`, `k8s` or `fargate`."""

    poll_interval: float = 1.0
    """Seconds between two polls of a running job."""

    fetch: FetchConfig = field(default_factory=FetchConfig)
    helm: HelmConfig = field(default_factory=HelmConfig)
    helmfile: HelmfileConfig = field(default_factory=HelmfileConfig)
    kustomize: KustomizeConfig = field(default_factory=KustomizeConfig)
    jinja: JinjaConfig = field(default_factory=JinjaConfig)
    local: LocalJobConfig = field(default_factory=LocalJobConfig)
    k8s: K8sJobConfig = field(default_factory=K8sJobConfig)
    fargate: FargateJobConfig = field(default_factory=FargateJobConfig)

    def __post_init__(self) -> None:
        if self.executor not in (LOCAL, K8S, FARGATE):
            raise BakeryException(f"Unsupported job executor '{self.executor}'")


def load_config(path: Path | None) -> BakeryConfig:
    """Load the configuration file, or the defaults when no path is given."""
    if path is None:
        return BakeryConfig()
    _LOGGER.debug("Loading configuration from %s", path)
    content = path.read_text()
    if not content.strip():
        return BakeryConfig()
    try:
        return yaml_decode(content, BakeryConfig)
    except (MissingField, InvalidFieldValue, yaml.YAMLError) as err:
        raise BakeryException(f"Invalid configuration file {path}: {err}") from err
