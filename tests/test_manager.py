"""Tests for routing bake requests to their renderer."""

import pytest

from bakery.cloudfoundry import CloudFoundryBakeService
from bakery.config import BakeryConfig
from bakery.exceptions import InvalidRequestException
from bakery.jobs import LocalJobExecutor
from bakery.manager import BakeManager, create_manager
from bakery.model import (
    CloudFoundryBakeRequest,
    HelmBakeRequest,
    KustomizeBakeRequest,
    TemplateRenderer,
)

from .conftest import FakeFetcher


@pytest.fixture(name="manager")
def mock_manager() -> BakeManager:
    """Fixture for a manager wired with every renderer."""
    return create_manager(BakeryConfig(), LocalJobExecutor(), FakeFetcher())


def test_renderers(manager: BakeManager) -> None:
    """Test every supported renderer has a service."""
    assert manager.renderers == [
        "cf",
        "helm",
        "helm2",
        "helm3",
        "helmfile",
        "jinja",
        "kustomize",
        "kustomize4",
    ]
    assert manager.service("helm") is manager.service("helm3")
    assert manager.service("HELM3") is manager.service("helm3")


def test_unknown_renderer(manager: BakeManager) -> None:
    """Test an unsupported renderer is rejected."""
    with pytest.raises(InvalidRequestException, match="template renderer type: ksonnet"):
        manager.service("ksonnet")


@pytest.mark.parametrize(
    ("renderer", "body", "expected"),
    [
        ("helm2", {"outputName": "web"}, TemplateRenderer.HELM2),
        ("helm", {"outputName": "web"}, TemplateRenderer.HELM3),
        ("helm", {"templateRenderer": "helm2"}, TemplateRenderer.HELM2),
        ("Kustomize4", {}, TemplateRenderer.KUSTOMIZE4),
    ],
)
def test_parse_request_renderer(
    manager: BakeManager, renderer: str, body: dict, expected: TemplateRenderer
) -> None:
    """Test the route picks the renderer unless the body names one."""
    assert manager.parse_request(renderer, body).template_renderer == expected


def test_parse_request_type(manager: BakeManager) -> None:
    """Test each renderer decodes its own request type."""
    assert isinstance(manager.parse_request("helm3", {}), HelmBakeRequest)
    assert isinstance(manager.parse_request("kustomize", {}), KustomizeBakeRequest)
    assert isinstance(manager.parse_request("cf", {}), CloudFoundryBakeRequest)


@pytest.mark.parametrize(
    "body",
    [
        {"templateRenderer": "HELM4"},
        {"inputArtifacts": "chart"},
        ["not", "a", "map"],
    ],
)
def test_parse_invalid_request(manager: BakeManager, body: dict) -> None:
    """Test malformed bodies are rejected as invalid requests."""
    with pytest.raises(InvalidRequestException):
        manager.parse_request("helm3", body)


async def test_bake() -> None:
    """Test baking a request through its service."""
    fetcher = FakeFetcher({"manifest": "name: ((name))\n", "vars": "name: web\n"})
    manager = BakeManager(services={"cf": CloudFoundryBakeService(fetcher)})
    artifact = await manager.bake(
        "CF",
        {
            "outputName": "web",
            "manifestTemplate": {"reference": "manifest"},
            "varsArtifacts": [{"reference": "vars"}],
        },
        execution_id="exec-1",
    )
    assert artifact.name == "web"
    assert artifact.decoded_content() == "name: web\n"
