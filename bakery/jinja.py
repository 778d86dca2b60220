"""Library for building `jinja2` cli commands from a bake request."""

import logging

from .config import JinjaConfig
from .fetch import ArtifactFetcher
from .model import BakeRecipe, JinjaBakeRequest
from .staging import StagingEnvironment
from .template import TemplateBuilder, to_override_string

__all__ = [
    "JinjaTemplateBuilder",
]

_LOGGER = logging.getLogger(__name__)


class JinjaTemplateBuilder(TemplateBuilder[JinjaBakeRequest]):
    """Builds `jinja2` recipes, each override is passed with its own `-D` flag."""

    label = "jinja"

    def __init__(self, fetcher: ArtifactFetcher, config: JinjaConfig) -> None:
        """Initialize JinjaTemplateBuilder."""
        super().__init__(fetcher)
        self._config = config

    async def build_bake_recipe(
        self, env: StagingEnvironment, request: JinjaBakeRequest
    ) -> BakeRecipe:
        """Stage the template and data files and return the `jinja2` command."""
        inputs = self.require_inputs(request)
        template = await self.stage_artifact(env, inputs[0], "template")
        value_paths = await self.stage_values(env, inputs[1:])

        args = [self._config.executable_path, str(template)]
        args.extend(str(path) for path in value_paths)
        for key, value in request.overrides.items():
            args.extend(["-D", f"{key}={to_override_string(value)}"])
        args.extend(["--format", request.input_format])
        _LOGGER.debug("Jinja recipe for %s: %s", request.output_name, args)
        return BakeRecipe(name=request.output_name, command=tuple(args))
