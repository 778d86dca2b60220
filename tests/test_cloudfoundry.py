"""Tests for the cloud foundry manifest bake."""

import pytest

from bakery.cloudfoundry import CloudFoundryBakeService, flatten_vars, interpolate
from bakery.exceptions import FetchException, InvalidRequestException
from bakery.model import Artifact, CloudFoundryBakeRequest

from .conftest import FakeFetcher

MANIFEST = """applications:
- name: ((app.name))
  instances: ((instances))
  routes:
  - route: ((app.routes[0]))
  env:
    DEBUG: ((debug))
"""


def test_flatten_vars() -> None:
    """Test nested maps and lists are flattened."""
    assert flatten_vars(
        {"app": {"name": "web", "routes": ["a.example.com", "b.example.com"]}, "n": 1}
    ) == {
        "app.name": "web",
        "app.routes[0]": "a.example.com",
        "app.routes[1]": "b.example.com",
        "n": 1,
    }
    assert flatten_vars({}) == {}


def test_interpolate_unknown_placeholder() -> None:
    """Test placeholders without a variable are left untouched."""
    assert interpolate("a: ((a))\nb: ((b))\n", {"a": 1}) == "a: 1\nb: ((b))\n"


async def test_bake() -> None:
    """Test variables files are interpolated with later files winning."""
    fetcher = FakeFetcher(
        {
            "manifest": MANIFEST,
            "vars1": "app:\n  name: web\n  routes: [web.example.com]\ninstances: 1\n",
            "vars2": "instances: 3\ndebug: false\n",
        }
    )
    service = CloudFoundryBakeService(fetcher)
    request = service.parse_request(
        {
            "templateRenderer": "CF",
            "outputName": "web",
            "outputArtifactName": "web-manifest",
            "manifestTemplate": {"type": "http/file", "reference": "manifest"},
            "varsArtifacts": [
                {"type": "http/file", "reference": "vars1"},
                {"type": "http/file", "reference": "vars2"},
            ],
        }
    )
    artifact = await service.bake(request)
    assert artifact.type == "embedded/base64"
    assert artifact.name == "web-manifest"
    assert artifact.decoded_content() == (
        "applications:\n"
        "- name: web\n"
        "  instances: 3\n"
        "  routes:\n"
        "  - route: web.example.com\n"
        "  env:\n"
        "    DEBUG: false\n"
    )


async def test_bake_without_template() -> None:
    """Test a request without a manifest template is rejected."""
    service = CloudFoundryBakeService(FakeFetcher())
    with pytest.raises(InvalidRequestException, match="manifest template"):
        await service.bake(CloudFoundryBakeRequest(output_name="web"))


async def test_bake_invalid_vars() -> None:
    """Test a vars file that is not a map is rejected."""
    fetcher = FakeFetcher({"manifest": MANIFEST, "vars": "- a\n- b\n"})
    service = CloudFoundryBakeService(fetcher)
    request = CloudFoundryBakeRequest(
        manifest_template=Artifact(reference="manifest"),
        vars_artifacts=(Artifact(reference="vars"),),
    )
    with pytest.raises(InvalidRequestException, match="must be a YAML map"):
        await service.bake(request)


async def test_bake_missing_vars() -> None:
    """Test a vars file that cannot be fetched fails the bake."""
    service = CloudFoundryBakeService(FakeFetcher({"manifest": MANIFEST}))
    request = CloudFoundryBakeRequest(
        manifest_template=Artifact(reference="manifest"),
        vars_artifacts=(Artifact(reference="vars"),),
    )
    with pytest.raises(FetchException, match="cloud foundry vars file"):
        await service.bake(request)
