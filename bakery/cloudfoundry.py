"""Interpolate `((variable))` placeholders into a Cloud Foundry manifest.

Unlike the other renderers this bake runs in process, no job is submitted.
Variables are read from YAML files and flattened so nested values are
referenced with dots and list items with an index:
```yaml
app:
  name: web
  routes: [web.example.com]
```
provides `((app.name))` and `((app.routes[0]))`.
"""

import logging
from typing import Any

import yaml

from .bake import BakeService
from .exceptions import FetchException, InvalidRequestException
from .fetch import ArtifactFetcher
from .model import Artifact, CloudFoundryBakeRequest
from .template import to_override_string

__all__ = [
    "CloudFoundryBakeService",
    "flatten_vars",
    "interpolate",
]

_LOGGER = logging.getLogger(__name__)


def flatten_vars(doc: dict[str, Any]) -> dict[str, Any]:
    """Flatten nested maps and lists into `a.b` and `a[0]` keys."""
    flat: dict[str, Any] = {}
    if not doc:
        return flat

    def visit(prefix: str, value: Any) -> None:
        if isinstance(value, dict) and value:
            for key, child in value.items():
                visit(f"{prefix}.{key}" if prefix else str(key), child)
        elif isinstance(value, list) and value:
            for index, child in enumerate(value):
                visit(f"{prefix}[{index}]", child)
        else:
            flat[prefix] = value

    visit("", doc)
    return flat


def interpolate(template: str, variables: dict[str, Any]) -> str:
    """Replace every `((key))` placeholder with its variable."""
    for key, value in variables.items():
        template = template.replace(f"(({key}))", to_override_string(value))
    return template


class CloudFoundryBakeService(BakeService[CloudFoundryBakeRequest]):
    """Bakes Cloud Foundry manifests."""

    request_type = CloudFoundryBakeRequest

    def __init__(self, fetcher: ArtifactFetcher) -> None:
        """Initialize CloudFoundryBakeService."""
        self._fetcher = fetcher

    async def _fetch_text(self, artifact: Artifact, description: str) -> str:
        try:
            content = await self._fetcher.fetch(artifact)
        except FetchException as err:
            raise FetchException(
                f"Failed to fetch cloud foundry {description}: {err}"
            ) from err
        return content.decode("utf-8")

    async def bake(self, request: CloudFoundryBakeRequest) -> Artifact:
        """Interpolate the variables files into the manifest template."""
        if request.manifest_template is None:
            raise InvalidRequestException("A manifest template must be provided to bake")
        template = await self._fetch_text(request.manifest_template, "manifest template")
        variables: dict[str, Any] = {}
        for artifact in request.vars_artifacts:
            content = await self._fetch_text(artifact, "vars file")
            try:
                doc = yaml.safe_load(content)
            except yaml.YAMLError as err:
                raise InvalidRequestException(
                    f"Invalid vars file {artifact.reference}: {err}"
                ) from err
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise InvalidRequestException(
                    f"Vars file {artifact.reference} must be a YAML map"
                )
            variables.update(doc)
        _LOGGER.debug("Interpolating %d variables", len(variables))
        manifest = interpolate(template, flatten_vars(variables))
        return Artifact.embedded(request.output_artifact_name, manifest)
