"""Library for building `helm template` commands from a bake request.

The first input artifact is the chart, either a packaged chart or a `git/repo`
artifact containing the chart in `helmChartFilePath`. Remaining artifacts are
values files passed in order with `--values`.

This is an example that builds the recipe for a chart:
```python
from bakery.config import HelmConfig
from bakery.helm import HelmTemplateBuilder
from bakery.staging import StagingEnvironment

builder = HelmTemplateBuilder(fetcher, HelmConfig())
async with StagingEnvironment.create() as env:
    recipe = await builder.build_bake_recipe(env, request)
    print(" ".join(recipe.command))
```
"""

from dataclasses import dataclass
import logging
from pathlib import Path

from .config import HelmConfig
from .fetch import ArtifactFetcher
from .model import BakeRecipe, HelmBakeRequest, TemplateRenderer
from .staging import StagingEnvironment
from .template import TemplateBuilder

__all__ = [
    "HelmTemplateBuilder",
    "Options",
]

_LOGGER = logging.getLogger(__name__)


@dataclass
class Options:
    """Options to use when rendering a Helm chart.

    Internally, these translate into command line flags that follow the
    positional arguments of `helm template`.
    """

    renderer: TemplateRenderer = TemplateRenderer.HELM3
    """Major version of helm to use."""

    namespace: str | None = None
    """Value of the helm --namespace flag."""

    include_crds: bool = False
    """Render CRDs, ignored for helm 2 which does not support it."""

    api_versions: str | None = None
    """Value of the helm --api-versions flag."""

    kube_version: str | None = None
    """Value of the helm --kube-version flag."""

    @classmethod
    def from_request(cls, request: HelmBakeRequest) -> "Options":
        """Build the options from a bake request."""
        return cls(
            renderer=(
                TemplateRenderer.HELM2
                if request.template_renderer == TemplateRenderer.HELM2
                else TemplateRenderer.HELM3
            ),
            namespace=request.namespace,
            include_crds=request.include_crds,
            api_versions=request.api_versions,
            kube_version=request.kube_version,
        )

    def target_args(self, release_name: str | None, chart: Path) -> list[str]:
        """Positional arguments of `helm template`, which differ by major version.

        helm 2: helm template <chart> --name <release name>
        helm 3: helm template <release name> <chart>
        """
        if self.renderer == TemplateRenderer.HELM2:
            args = [str(chart)]
            if release_name:
                args.extend(["--name", release_name])
            return args
        if release_name:
            return [release_name, str(chart)]
        return ["--generate-name", str(chart)]

    @property
    def template_args(self) -> list[str]:
        """Helm template CLI arguments built from the options."""
        args: list[str] = []
        if self.namespace:
            args.extend(["--namespace", self.namespace])
        if self.include_crds and self.renderer == TemplateRenderer.HELM3:
            args.append("--include-crds")
        if self.api_versions:
            args.extend(["--api-versions", self.api_versions])
        if self.kube_version:
            args.extend(["--kube-version", self.kube_version])
        return args


class HelmTemplateBuilder(TemplateBuilder[HelmBakeRequest]):
    """Builds `helm template` recipes."""

    label = "helm"

    def __init__(self, fetcher: ArtifactFetcher, config: HelmConfig) -> None:
        """Initialize HelmTemplateBuilder."""
        super().__init__(fetcher)
        self._config = config

    def executable(self, request: HelmBakeRequest) -> str:
        """Return the helm binary for the major version requested."""
        if request.template_renderer == TemplateRenderer.HELM2:
            return self._config.v2_executable_path
        return self._config.v3_executable_path

    async def build_bake_recipe(
        self, env: StagingEnvironment, request: HelmBakeRequest
    ) -> BakeRecipe:
        """Stage the chart and values and return the `helm template` command."""
        inputs = self.require_inputs(request)
        chart = await self.stage_template(env, inputs[0], request.helm_chart_file_path)
        _LOGGER.info("Path to chart: %s", chart)
        value_paths = await self.stage_values(env, inputs[1:])

        options = Options.from_request(request)
        args = [self.executable(request), "template"]
        args.extend(options.target_args(request.output_name, chart))
        args.extend(options.template_args)
        args.extend(
            await self.overrides_args(
                env,
                request.overrides,
                inline_flag="--set" if request.raw_overrides else "--set-string",
                threshold=self._config.overrides_file_threshold,
                raw=request.raw_overrides,
            )
        )
        if value_paths:
            args.extend(["--values", ",".join(str(path) for path in value_paths)])
        return BakeRecipe(name=request.output_name, command=tuple(args))
