"""Shared behavior of the template builders.

A template builder turns a bake request into a `BakeRecipe`, staging every
input artifact it needs into the bake's `StagingEnvironment` first. The first
input artifact is the template itself, any remaining artifacts are values
files. A `git/repo` template is fetched as a tarball and extracted wholesale so
that templates can reference sibling files.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
import logging
from pathlib import Path
import re
from typing import Any, Generic, TypeVar
import uuid

import yaml

from .exceptions import FetchException, InvalidRequestException
from .fetch import ArtifactFetcher
from .model import GIT_REPO, Artifact, BakeRecipe, BakeRequest
from .staging import StagingEnvironment

__all__ = [
    "TemplateBuilder",
    "render_overrides",
    "remove_tests_directory_templates",
]

_LOGGER = logging.getLogger(__name__)

R = TypeVar("R", bound=BakeRequest)

MANIFEST_SEPARATOR = "---\n"
TESTS_MANIFEST_RE = re.compile(r"# Source: .*/templates/tests/.*")

OVERRIDES_FILE_PREFIX = "overrides_"
OVERRIDES_FILE_SUFFIX = ".yml"


def to_override_string(value: Any) -> str:
    """Return the string form of an override value as the renderer would print it."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_overrides(overrides: dict[str, Any]) -> str:
    """Serialize overrides as `key=value,key=value`."""
    return ",".join(
        f"{key}={to_override_string(value)}" for key, value in overrides.items()
    )


def overrides_document(overrides: dict[str, Any], raw: bool) -> dict[str, Any]:
    """Return the overrides as a nested values document.

    Dotted keys are expanded into nested maps the same way `--set` does. When
    `raw` is False every value is converted to its string form first.
    """
    doc: dict[str, Any] = {}
    for key, value in overrides.items():
        if not raw:
            value = to_override_string(value)
        parts = key.split(".")
        node = doc
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return doc


def remove_tests_directory_templates(output: str) -> str:
    """Drop rendered manifests whose source lives in a chart `templates/tests` directory."""
    return MANIFEST_SEPARATOR.join(
        manifest
        for manifest in output.split(MANIFEST_SEPARATOR)
        if not TESTS_MANIFEST_RE.search(manifest)
    )


class TemplateBuilder(ABC, Generic[R]):
    """Builds the command line to render a template for a bake request."""

    label: str = "template"
    """Name of the renderer used in error messages."""

    def __init__(self, fetcher: ArtifactFetcher) -> None:
        """Initialize TemplateBuilder."""
        self._fetcher = fetcher

    @property
    def fetcher(self) -> ArtifactFetcher:
        """Client used to download input artifacts."""
        return self._fetcher

    @abstractmethod
    async def build_bake_recipe(
        self, env: StagingEnvironment, request: R
    ) -> BakeRecipe:
        """Stage the inputs of the request and return the command to run."""

    def fetch_failure_message(self, description: str, err: Exception) -> str:
        """Describe a failure to fetch one of the inputs."""
        return f"Failed to fetch {self.label} {description}: {err}"

    @staticmethod
    def require_inputs(request: BakeRequest) -> tuple[Artifact, ...]:
        """Return the input artifacts or reject the request if there are none."""
        if not request.input_artifacts:
            raise InvalidRequestException(
                "At least one input artifact must be provided to bake"
            )
        return request.input_artifacts

    async def stage_artifact(
        self, env: StagingEnvironment, artifact: Artifact, description: str
    ) -> Path:
        """Download a single artifact to a uniquely named file."""
        try:
            return await self._fetcher.fetch_to_file(artifact, env, str(uuid.uuid4()))
        except FetchException as err:
            raise FetchException(self.fetch_failure_message(description, err)) from err

    async def stage_template(
        self, env: StagingEnvironment, artifact: Artifact, sub_path: str | None
    ) -> Path:
        """Stage the template artifact and return the path to render."""
        if artifact.type == GIT_REPO:
            try:
                await self._fetcher.fetch_and_extract_tarball(artifact, env)
            except FetchException as err:
                raise FetchException(self.fetch_failure_message("template", err)) from err
            # Without an explicit path the template is the root of the repo
            return env.resolve_path(sub_path or "")
        return await self.stage_artifact(env, artifact, "template")

    async def stage_values(
        self, env: StagingEnvironment, artifacts: Iterable[Artifact]
    ) -> list[Path]:
        """Stage each values file artifact, preserving their order."""
        return [
            await self.stage_artifact(env, artifact, "values file")
            for artifact in artifacts
        ]

    async def write_overrides_file(
        self, env: StagingEnvironment, overrides: dict[str, Any], raw: bool
    ) -> Path:
        """Write overrides to a generated values file in the staging environment."""
        name = f"{OVERRIDES_FILE_PREFIX}{uuid.uuid4()}{OVERRIDES_FILE_SUFFIX}"
        content = yaml.dump(overrides_document(overrides, raw), sort_keys=False)
        path = await env.write_text(name, content)
        _LOGGER.debug("Created overrides file at %s:\n%s", path, content)
        return path

    async def overrides_args(
        self,
        env: StagingEnvironment,
        overrides: dict[str, Any],
        inline_flag: str,
        threshold: int,
        raw: bool,
    ) -> list[str]:
        """Return the arguments passing the overrides to the renderer.

        The overrides are passed inline with `inline_flag` unless the payload
        is at least `threshold` bytes long, then they are written to a values
        file instead to stay clear of command line length limits. A zero
        threshold always passes them inline.
        """
        if not overrides:
            return []
        payload = render_overrides(overrides)
        if threshold == 0 or len(payload.encode("utf-8")) < threshold:
            return [inline_flag, payload]
        path = await self.write_overrides_file(env, overrides, raw)
        return ["--values", str(path)]
