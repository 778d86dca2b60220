"""Library for building `helmfile template` commands from a bake request.

helmfile always drives helm 3 and only supports raw `--set` overrides.
"""

import logging

from .config import HelmConfig, HelmfileConfig
from .fetch import ArtifactFetcher
from .model import BakeRecipe, HelmfileBakeRequest
from .staging import StagingEnvironment
from .template import TemplateBuilder

__all__ = [
    "HelmfileTemplateBuilder",
]

_LOGGER = logging.getLogger(__name__)


class HelmfileTemplateBuilder(TemplateBuilder[HelmfileBakeRequest]):
    """Builds `helmfile template` recipes."""

    label = "helmfile"

    def __init__(
        self,
        fetcher: ArtifactFetcher,
        config: HelmfileConfig,
        helm_config: HelmConfig,
    ) -> None:
        """Initialize HelmfileTemplateBuilder."""
        super().__init__(fetcher)
        self._config = config
        self._helm_config = helm_config

    async def build_bake_recipe(
        self, env: StagingEnvironment, request: HelmfileBakeRequest
    ) -> BakeRecipe:
        """Stage the helmfile and values and return the `helmfile template` command."""
        inputs = self.require_inputs(request)
        _LOGGER.info("helmfileFilePath: '%s'", request.helmfile_file_path)
        helmfile = await self.stage_template(env, inputs[0], request.helmfile_file_path)
        _LOGGER.info("Path to helmfile: %s", helmfile)
        value_paths = await self.stage_values(env, inputs[1:])

        args = [
            self._config.executable_path,
            "template",
            "--file",
            str(helmfile),
            "--helm-binary",
            self._helm_config.v3_executable_path,
        ]
        if request.environment:
            args.extend(["--environment", request.environment])
        if request.namespace:
            args.extend(["--namespace", request.namespace])
        if request.include_crds:
            args.append("--include-crds")
        args.extend(
            await self.overrides_args(
                env,
                request.overrides,
                inline_flag="--set",
                threshold=self._helm_config.overrides_file_threshold,
                raw=request.raw_overrides,
            )
        )
        if value_paths:
            args.extend(["--values", ",".join(str(path) for path in value_paths)])
        return BakeRecipe(name=request.output_name, command=tuple(args))
