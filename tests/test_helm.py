"""Tests for the helm template builder."""

from pathlib import Path
import shutil

import pytest
import yaml

from bakery.bake import BakeOrchestrator, TemplateBakeService
from bakery.config import HelmConfig
from bakery.exceptions import FetchException, InvalidRequestException
from bakery.helm import HelmTemplateBuilder, Options
from bakery.jobs import LocalJobExecutor
from bakery.model import Artifact, HelmBakeRequest, TemplateRenderer
from bakery.staging import StagingEnvironment

from .conftest import FakeFetcher, make_tarball

CHART = Artifact(type="http/file", reference="https://charts.example.com/web-1.0.0.tgz")
VALUES1 = Artifact(type="http/file", reference="https://example.com/values1.yaml")
VALUES2 = Artifact(type="http/file", reference="https://example.com/values2.yaml")


@pytest.fixture(name="fetcher")
def mock_fetcher() -> FakeFetcher:
    """Fixture serving a chart and two values files."""
    return FakeFetcher(
        {
            CHART.reference: b"chart-archive",
            VALUES1.reference: "replicas: 1\n",
            VALUES2.reference: "replicas: 2\n",
        }
    )


def test_target_args() -> None:
    """Test the positional arguments of each major version."""
    chart = Path("/tmp/chart")
    assert Options(renderer=TemplateRenderer.HELM2).target_args("web", chart) == [
        "/tmp/chart",
        "--name",
        "web",
    ]
    assert Options(renderer=TemplateRenderer.HELM3).target_args("web", chart) == [
        "web",
        "/tmp/chart",
    ]
    assert Options(renderer=TemplateRenderer.HELM3).target_args(None, chart) == [
        "--generate-name",
        "/tmp/chart",
    ]


def test_template_args() -> None:
    """Test the flags built from the options."""
    options = Options(
        namespace="apps",
        include_crds=True,
        api_versions="batch/v1",
        kube_version="1.29.0",
    )
    assert options.template_args == [
        "--namespace",
        "apps",
        "--include-crds",
        "--api-versions",
        "batch/v1",
        "--kube-version",
        "1.29.0",
    ]


def test_helm2_ignores_include_crds() -> None:
    """Test helm 2 never receives the --include-crds flag."""
    options = Options(renderer=TemplateRenderer.HELM2, include_crds=True)
    assert options.template_args == []


async def test_helm3_recipe(fetcher: FakeFetcher, env: StagingEnvironment) -> None:
    """Test the command of a helm 3 bake with values and overrides."""
    builder = HelmTemplateBuilder(fetcher, HelmConfig())
    request = HelmBakeRequest(
        template_renderer=TemplateRenderer.HELM3,
        output_name="web",
        namespace="apps",
        input_artifacts=(CHART, VALUES1, VALUES2),
        overrides={"image.tag": "1.2.3", "replicas": 3},
    )
    recipe = await builder.build_bake_recipe(env, request)

    assert recipe.name == "web"
    command = list(recipe.command)
    assert command[0:3] == ["helm", "template", "web"]
    chart = Path(command[3])
    assert chart.parent == env.root
    assert chart.read_bytes() == b"chart-archive"
    assert command[4:] == [
        "--namespace",
        "apps",
        "--set-string",
        "image.tag=1.2.3,replicas=3",
        "--values",
        command[-1],
    ]
    values = [Path(path) for path in command[-1].split(",")]
    assert [path.read_text() for path in values] == ["replicas: 1\n", "replicas: 2\n"]


async def test_helm2_recipe(fetcher: FakeFetcher, env: StagingEnvironment) -> None:
    """Test helm 2 uses its own binary and raw overrides use --set."""
    builder = HelmTemplateBuilder(fetcher, HelmConfig(v2_executable_path="/usr/bin/helm2"))
    request = HelmBakeRequest(
        template_renderer=TemplateRenderer.HELM2,
        output_name="web",
        input_artifacts=(CHART,),
        overrides={"enabled": True},
        raw_overrides=True,
        include_crds=True,
    )
    recipe = await builder.build_bake_recipe(env, request)
    command = list(recipe.command)
    assert command[0:2] == ["/usr/bin/helm2", "template"]
    assert command[3:] == ["--name", "web", "--set", "enabled=true"]


async def test_overrides_file(fetcher: FakeFetcher, env: StagingEnvironment) -> None:
    """Test large overrides are written to a values file."""
    builder = HelmTemplateBuilder(fetcher, HelmConfig(overrides_file_threshold=8))
    request = HelmBakeRequest(
        output_name="web",
        input_artifacts=(CHART, VALUES1),
        overrides={"image.tag": "1.2.3"},
    )
    recipe = await builder.build_bake_recipe(env, request)
    command = list(recipe.command)
    assert "--set-string" not in command
    assert command.count("--values") == 2
    overrides_file = Path(command[command.index("--values") + 1])
    assert overrides_file.name.startswith("overrides_")
    assert yaml.safe_load(overrides_file.read_text()) == {"image": {"tag": "1.2.3"}}


async def test_git_repo_chart(env: StagingEnvironment) -> None:
    """Test a chart inside a git repo is extracted and rendered from its path."""
    fetcher = FakeFetcher(
        {"https://github.com/org/charts": make_tarball({"charts/web/Chart.yaml": "name: web\n"})}
    )
    builder = HelmTemplateBuilder(fetcher, HelmConfig())
    request = HelmBakeRequest(
        output_name="web",
        input_artifacts=(
            Artifact(type="git/repo", reference="https://github.com/org/charts"),
        ),
        helm_chart_file_path="charts/web",
    )
    recipe = await builder.build_bake_recipe(env, request)
    assert recipe.command == ("helm", "template", "web", str(env.root / "charts" / "web"))


async def test_no_inputs(fetcher: FakeFetcher, env: StagingEnvironment) -> None:
    """Test a request without a chart is rejected."""
    builder = HelmTemplateBuilder(fetcher, HelmConfig())
    with pytest.raises(InvalidRequestException):
        await builder.build_bake_recipe(env, HelmBakeRequest(output_name="web"))


async def test_missing_chart(env: StagingEnvironment) -> None:
    """Test a chart that cannot be fetched fails the bake."""
    builder = HelmTemplateBuilder(FakeFetcher(), HelmConfig())
    request = HelmBakeRequest(output_name="web", input_artifacts=(CHART,))
    with pytest.raises(FetchException, match="Failed to fetch helm template"):
        await builder.build_bake_recipe(env, request)


CHART_FILES = {
    "web/Chart.yaml": "apiVersion: v2\nname: web\nversion: 1.0.0\n",
    "web/values.yaml": "replicas: 1\n",
    "web/templates/configmap.yaml": (
        "apiVersion: v1\nkind: ConfigMap\nmetadata:\n"
        "  name: {{ .Release.Name }}\n"
        "data:\n  replicas: {{ .Values.replicas | quote }}\n"
    ),
    "web/templates/tests/test-connection.yaml": (
        "apiVersion: v1\nkind: Pod\nmetadata:\n  name: test-connection\n"
    ),
}


@pytest.mark.skipif(shutil.which("helm") is None, reason="helm binary is not installed")
async def test_bake_with_helm(tmp_path: Path) -> None:
    """Test rendering a chart end to end with a local helm binary."""
    fetcher = FakeFetcher({"repo": make_tarball(CHART_FILES)})
    executor = LocalJobExecutor()
    service = TemplateBakeService.for_helm(
        HelmBakeRequest,
        HelmTemplateBuilder(fetcher, HelmConfig()),
        BakeOrchestrator(executor, poll_interval=0.05),
        staging_parent=tmp_path,
    )
    artifact = await service.bake(
        HelmBakeRequest(
            template_renderer=TemplateRenderer.HELM3,
            output_name="my-release",
            input_artifacts=(Artifact(type="git/repo", reference="repo"),),
            helm_chart_file_path="web",
            overrides={"replicas": 3},
        )
    )
    await executor.close()

    assert artifact.type == "embedded/base64"
    assert artifact.name == "my-release"
    manifest = artifact.decoded_content()
    assert "name: my-release" in manifest
    assert 'replicas: "3"' in manifest
    assert "test-connection" not in manifest
    assert list(tmp_path.iterdir()) == []
