"""Routes bake requests to the service of their renderer.

Renderer names are matched case insensitively. `helm` is an alias of `helm3`
and `kustomize4` shares the kustomize service with its own binary.
"""

from dataclasses import dataclass
import logging
from typing import Any

from mashumaro.exceptions import (
    ExtraKeysError,
    InvalidFieldValue,
    MissingField,
)

from .bake import BakeOrchestrator, BakeService, TemplateBakeService, bake_with_execution_id
from .cloudfoundry import CloudFoundryBakeService
from .config import BakeryConfig
from .exceptions import InvalidRequestException
from .fetch import ArtifactFetcher
from .helm import HelmTemplateBuilder
from .helmfile import HelmfileTemplateBuilder
from .jinja import JinjaTemplateBuilder
from .jobs import JobExecutor
from .kustomize import KustomizeTemplateBuilder
from .model import (
    Artifact,
    BakeRequest,
    HelmBakeRequest,
    HelmfileBakeRequest,
    JinjaBakeRequest,
    KustomizeBakeRequest,
    TemplateRenderer,
)

__all__ = [
    "BakeManager",
    "create_manager",
]

_LOGGER = logging.getLogger(__name__)

# Renderer implied by the route for request bodies that omit it
_DEFAULT_RENDERER = {
    "helm2": TemplateRenderer.HELM2,
    "helm3": TemplateRenderer.HELM3,
    "helm": TemplateRenderer.HELM3,
    "helmfile": TemplateRenderer.HELMFILE,
    "kustomize": TemplateRenderer.KUSTOMIZE,
    "kustomize4": TemplateRenderer.KUSTOMIZE4,
    "jinja": TemplateRenderer.JINJA,
    "cf": TemplateRenderer.CF,
}


@dataclass
class BakeManager:
    """Bakes requests for any supported renderer."""

    services: dict[str, BakeService[Any]]
    """Service of each renderer keyed by lower case renderer name."""

    @property
    def renderers(self) -> list[str]:
        return sorted(self.services)

    def service(self, renderer: str) -> BakeService[Any]:
        """Return the service of a renderer."""
        if (service := self.services.get(renderer.lower())) is None:
            raise InvalidRequestException(
                f"Cannot bake manifest with template renderer type: {renderer}"
            )
        return service

    def parse_request(self, renderer: str, body: dict[str, Any]) -> BakeRequest:
        """Decode the JSON body of a request for a renderer."""
        service = self.service(renderer)
        if not isinstance(body, dict):
            raise InvalidRequestException("Bake request body must be a JSON object")
        body = dict(body)
        if not body.get("templateRenderer") and (
            default := _DEFAULT_RENDERER.get(renderer.lower())
        ):
            body["templateRenderer"] = default.value
        elif isinstance(body.get("templateRenderer"), str):
            body["templateRenderer"] = body["templateRenderer"].upper()
        try:
            return service.parse_request(body)
        except (
            ExtraKeysError,
            InvalidFieldValue,
            MissingField,
            ValueError,
        ) as err:
            raise InvalidRequestException(f"Invalid bake request: {err}") from err

    async def bake(
        self,
        renderer: str,
        body: dict[str, Any],
        execution_id: str | None = None,
    ) -> Artifact:
        """Decode and bake a request, returning the rendered artifact."""
        request = self.parse_request(renderer, body)
        _LOGGER.info(
            "Baking %s manifest %s (executionId: %s)",
            renderer,
            request.output_name,
            execution_id,
        )
        return await bake_with_execution_id(
            self.service(renderer), request, execution_id
        )


def create_manager(
    config: BakeryConfig, executor: JobExecutor, fetcher: ArtifactFetcher
) -> BakeManager:
    """Wire a service for every supported renderer."""
    orchestrator = BakeOrchestrator(executor, config.poll_interval)
    helm = TemplateBakeService.for_helm(
        HelmBakeRequest, HelmTemplateBuilder(fetcher, config.helm), orchestrator
    )
    helmfile = TemplateBakeService.for_helm(
        HelmfileBakeRequest,
        HelmfileTemplateBuilder(fetcher, config.helmfile, config.helm),
        orchestrator,
    )
    kustomize = TemplateBakeService(
        KustomizeBakeRequest,
        KustomizeTemplateBuilder(fetcher, config.kustomize),
        orchestrator,
    )
    jinja = TemplateBakeService(
        JinjaBakeRequest, JinjaTemplateBuilder(fetcher, config.jinja), orchestrator
    )
    return BakeManager(
        services={
            "helm2": helm,
            "helm3": helm,
            "helm": helm,
            "helmfile": helmfile,
            "kustomize": kustomize,
            "kustomize4": kustomize,
            "jinja": jinja,
            "cf": CloudFoundryBakeService(fetcher),
        }
    )
