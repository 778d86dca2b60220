"""Representation of bake requests, recipes and job status.

The wire format of the requests and artifacts uses camelCase keys, so fields
carry an alias used for both decoding and encoding:
```python
from bakery.model import HelmBakeRequest

request = HelmBakeRequest.from_dict({
    "outputName": "my-release",
    "inputArtifacts": [{"type": "http/file", "reference": "https://.../chart.tgz"}],
    "overrides": {"image.tag": "1.2.3"},
})
```
"""

import base64
from dataclasses import dataclass, field
from enum import StrEnum
import re
from typing import Any

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

__all__ = [
    "Artifact",
    "BakeRequest",
    "HelmBakeRequest",
    "HelmfileBakeRequest",
    "KustomizeBakeRequest",
    "JinjaBakeRequest",
    "CloudFoundryBakeRequest",
    "TemplateRenderer",
    "BakeRecipe",
    "JobRequest",
    "BakeStatus",
    "State",
    "Result",
]

EMBEDDED_BASE64 = "embedded/base64"
GIT_REPO = "git/repo"

MASK = "****"

# Keys of `key=value` command tokens whose value must never be logged.
_SECRET_KEY_RE = re.compile(r"(secret|token|password|_key$)", re.IGNORECASE)


class TemplateRenderer(StrEnum):
    """Renderer families that can bake a manifest."""

    HELM2 = "HELM2"
    HELM3 = "HELM3"
    HELMFILE = "HELMFILE"
    KUSTOMIZE = "KUSTOMIZE"
    KUSTOMIZE4 = "KUSTOMIZE4"
    JINJA = "JINJA"
    CF = "CF"


class _Config(BaseConfig):
    omit_none = True
    serialize_by_alias = True


@dataclass(frozen=True)
class Artifact(DataClassDictMixin):
    """A reference to an input or output of a bake.

    Identity is structural: two artifacts with the same fields are equal.
    """

    type: str | None = None
    """Kind of artifact, e.g. `git/repo` or `embedded/base64`."""

    name: str | None = None
    """Name of the artifact, for overlay descriptors the path within the repo."""

    reference: str | None = None
    """Location of the artifact whose interpretation depends on `type`."""

    account: str | None = field(
        default=None, metadata=field_options(alias="artifactAccount")
    )
    """Credentials account used by the fetch service."""

    location: str | None = None
    """Sub location of the artifact, e.g. a directory inside a git repo."""

    version: str | None = None
    """Version of the artifact, e.g. a git branch."""

    metadata: dict[str, Any] = field(default_factory=dict, hash=False)
    """Arbitrary extra information carried along with the artifact."""

    Config = _Config

    def with_reference(self, reference: str, name: str | None = None) -> "Artifact":
        """Return a copy of this artifact pointing to another reference."""
        return Artifact(
            type=self.type,
            name=name if name is not None else self.name,
            reference=reference,
            account=self.account,
            location=self.location,
            version=self.version,
            metadata=dict(self.metadata),
        )

    @classmethod
    def embedded(cls, name: str | None, content: str) -> "Artifact":
        """Return an artifact carrying `content` base64 encoded in its reference."""
        return cls(
            type=EMBEDDED_BASE64,
            name=name,
            reference=base64.b64encode(content.encode("utf-8")).decode("ascii"),
        )

    def decoded_content(self) -> str:
        """Return the content of an embedded artifact."""
        if self.type != EMBEDDED_BASE64:
            raise ValueError(f"Artifact of type {self.type} has no embedded content")
        return base64.b64decode(self.reference or "").decode("utf-8")


@dataclass(frozen=True)
class BakeRequest(DataClassDictMixin):
    """Fields common to all bake requests."""

    template_renderer: TemplateRenderer | None = field(
        default=None, metadata=field_options(alias="templateRenderer")
    )
    """Renderer family requested by the caller."""

    output_name: str | None = field(
        default=None, metadata=field_options(alias="outputName")
    )
    """Name of the rendered result, e.g. the helm release name."""

    output_artifact_name_: str | None = field(
        default=None, metadata=field_options(alias="outputArtifactName")
    )
    """Name of the artifact returned to the caller."""

    input_artifacts: tuple[Artifact, ...] = field(
        default=(), metadata=field_options(alias="inputArtifacts")
    )
    """Ordered inputs: the first is the template, the rest are values files."""

    overrides: dict[str, Any] = field(default_factory=dict, hash=False)
    """Flat key to value overrides applied on top of the values files."""

    Config = _Config

    @property
    def output_artifact_name(self) -> str | None:
        """Name of the artifact to return, defaults to the output name."""
        return self.output_artifact_name_ or self.output_name


@dataclass(frozen=True)
class HelmBakeRequest(BakeRequest):
    """Request to render a helm chart with `helm template`."""

    namespace: str | None = None
    """Value of the helm --namespace flag."""

    raw_overrides: bool = field(
        default=False, metadata=field_options(alias="rawOverrides")
    )
    """Embed overrides untouched (--set) rather than as strings (--set-string)."""

    include_crds: bool = field(
        default=False, metadata=field_options(alias="includeCRDs")
    )
    """Render CRDs, only supported by helm 3."""

    api_versions: str | None = field(
        default=None, metadata=field_options(alias="apiVersions")
    )
    """Value of the helm --api-versions flag."""

    kube_version: str | None = field(
        default=None, metadata=field_options(alias="kubeVersion")
    )
    """Value of the helm --kube-version flag."""

    helm_chart_file_path: str | None = field(
        default=None, metadata=field_options(alias="helmChartFilePath")
    )
    """Path of the chart within a `git/repo` artifact."""


@dataclass(frozen=True)
class HelmfileBakeRequest(BakeRequest):
    """Request to render a helmfile with `helmfile template`."""

    helmfile_file_path: str | None = field(
        default=None, metadata=field_options(alias="helmfileFilePath")
    )
    """Path of the helmfile within a `git/repo` artifact."""

    environment: str | None = None
    """Value of the helmfile --environment flag."""

    namespace: str | None = None
    """Value of the helmfile --namespace flag."""

    include_crds: bool = field(
        default=False, metadata=field_options(alias="includeCRDs")
    )
    """Render CRDs."""

    raw_overrides: bool = field(
        default=True, metadata=field_options(alias="rawOverrides")
    )
    """Embed overrides untouched, helmfile only supports --set."""


@dataclass(frozen=True)
class KustomizeBakeRequest(BakeRequest):
    """Request to build a kustomization with `kustomize build`."""

    input_artifact: Artifact | None = field(
        default=None, metadata=field_options(alias="inputArtifact")
    )
    """The root kustomization file, its `name` is the path within the repo."""

    kustomize_file_path: str | None = field(
        default=None, metadata=field_options(alias="kustomizeFilePath")
    )
    """Path of the kustomization directory within a `git/repo` artifact."""

    @property
    def root_artifact(self) -> Artifact | None:
        """The artifact holding the root overlay descriptor."""
        if self.input_artifact is not None:
            return self.input_artifact
        return next(iter(self.input_artifacts), None)


@dataclass(frozen=True)
class JinjaBakeRequest(BakeRequest):
    """Request to render a jinja template with the `jinja2` cli."""

    input_format: str = field(default="yaml", metadata=field_options(alias="inputFormat"))
    """Format of the values files."""


@dataclass(frozen=True)
class CloudFoundryBakeRequest(BakeRequest):
    """Request to interpolate `((variables))` into a Cloud Foundry manifest."""

    manifest_template: Artifact | None = field(
        default=None, metadata=field_options(alias="manifestTemplate")
    )
    """The manifest containing `((variable))` placeholders."""

    vars_artifacts: tuple[Artifact, ...] = field(
        default=(), metadata=field_options(alias="varsArtifacts")
    )
    """YAML files providing the variables, later files win."""


@dataclass(frozen=True)
class BakeRecipe:
    """A concrete command line derived from a bake request."""

    name: str | None
    """Name of the bake output."""

    command: tuple[str, ...]
    """Command tokens, the first is the executable."""


@dataclass(frozen=True)
class JobRequest:
    """A unit of work submitted to a job executor."""

    job_id: str
    """Unique id of this bake attempt."""

    tokenized_command: tuple[str, ...]
    """Command tokens to execute."""

    execution_id: str | None = None
    """Optional correlation id of the caller."""

    @property
    def masked_command(self) -> tuple[str, ...]:
        """The command with credential shaped `key=value` tokens masked for logging."""
        masked = []
        for arg in self.tokenized_command:
            key, sep, _ = arg.partition("=")
            if sep and _SECRET_KEY_RE.search(key):
                masked.append(f"{key}={MASK}")
            else:
                masked.append(arg)
        return tuple(masked)


class State(StrEnum):
    """Lifecycle state of a bake job."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class Result(StrEnum):
    """Outcome of a bake job once it is no longer running."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class BakeStatus:
    """A snapshot of the state of a bake job."""

    id: str
    state: State
    result: Result | None = None
    logs_content: str = ""
    output_content: str = ""

    @property
    def is_terminal(self) -> bool:
        """Return True once no further transitions can happen."""
        return self.state != State.RUNNING

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.result:
            return f"{self.id} {self.state}/{self.result}"
        return f"{self.id} {self.state}"
