"""Tests for the bake request and status representations."""

import pytest

from bakery.model import (
    Artifact,
    BakeStatus,
    HelmBakeRequest,
    JobRequest,
    KustomizeBakeRequest,
    Result,
    State,
    TemplateRenderer,
)


def test_decode_helm_request() -> None:
    """Test decoding a request with camelCase keys."""
    request = HelmBakeRequest.from_dict(
        {
            "templateRenderer": "HELM3",
            "outputName": "web",
            "namespace": "apps",
            "rawOverrides": True,
            "includeCRDs": True,
            "inputArtifacts": [
                {
                    "type": "helm/chart",
                    "name": "podinfo",
                    "version": "6.5.0",
                    "artifactAccount": "charts",
                }
            ],
            "overrides": {"replicas": 2},
        }
    )
    assert request.template_renderer == TemplateRenderer.HELM3
    assert request.output_name == "web"
    assert request.output_artifact_name == "web"
    assert request.raw_overrides
    assert request.include_crds
    assert request.input_artifacts == (
        Artifact(type="helm/chart", name="podinfo", version="6.5.0", account="charts"),
    )
    assert request.overrides == {"replicas": 2}


def test_output_artifact_name() -> None:
    """Test an explicit output artifact name wins over the output name."""
    request = HelmBakeRequest.from_dict(
        {"outputName": "web", "outputArtifactName": "web-manifest"}
    )
    assert request.output_artifact_name == "web-manifest"


def test_kustomize_root_artifact() -> None:
    """Test the root kustomization falls back to the first input artifact."""
    first = Artifact(reference="a")
    assert KustomizeBakeRequest(input_artifacts=(first,)).root_artifact == first
    root = Artifact(reference="b")
    assert (
        KustomizeBakeRequest(input_artifact=root, input_artifacts=(first,)).root_artifact
        == root
    )
    assert KustomizeBakeRequest().root_artifact is None


def test_artifact_structural_equality() -> None:
    """Test artifacts with the same fields are equal and hash the same."""
    first = Artifact(type="http/file", reference="https://example.com/a")
    second = Artifact(type="http/file", reference="https://example.com/a")
    assert first == second
    assert len({first, second}) == 1


def test_artifact_encode() -> None:
    """Test artifacts are encoded with their wire names."""
    artifact = Artifact(type="github/file", reference="ref", account="github")
    assert artifact.to_dict() == {
        "type": "github/file",
        "reference": "ref",
        "artifactAccount": "github",
        "metadata": {},
    }


def test_with_reference() -> None:
    """Test copying an artifact to another reference keeps its account."""
    artifact = Artifact(type="github/file", name="a", reference="ref/a", account="gh")
    other = artifact.with_reference("ref/b", name="b")
    assert other == Artifact(type="github/file", name="b", reference="ref/b", account="gh")
    assert artifact.reference == "ref/a"


def test_embedded_artifact() -> None:
    """Test embedded artifacts carry base64 content."""
    artifact = Artifact.embedded("web", "kind: ConfigMap\n")
    assert artifact.type == "embedded/base64"
    assert artifact.name == "web"
    assert artifact.reference == "a2luZDogQ29uZmlnTWFwCg=="
    assert artifact.decoded_content() == "kind: ConfigMap\n"


def test_decoded_content_not_embedded() -> None:
    """Test only embedded artifacts have content."""
    with pytest.raises(ValueError):
        Artifact(type="http/file", reference="ref").decoded_content()


def test_masked_command() -> None:
    """Test credential tokens are masked for logging."""
    request = JobRequest(
        job_id="1",
        tokenized_command=(
            "bake",
            "aws_access_key=AKIA",
            "aws_secret_key=shh",
            "aws_session_token=tok",
            "db_password=hunter2",
            "region=us-west-2",
            "--set",
        ),
    )
    assert request.masked_command == (
        "bake",
        "aws_access_key=****",
        "aws_secret_key=****",
        "aws_session_token=****",
        "db_password=****",
        "region=us-west-2",
        "--set",
    )
    assert request.tokenized_command[1] == "aws_access_key=AKIA"


def test_bake_status() -> None:
    """Test the terminal states of a job."""
    running = BakeStatus(id="1", state=State.RUNNING)
    assert not running.is_terminal
    assert str(running) == "1 RUNNING"
    done = BakeStatus(id="1", state=State.COMPLETED, result=Result.SUCCESS)
    assert done.is_terminal
    assert str(done) == "1 COMPLETED/SUCCESS"
    assert BakeStatus(id="1", state=State.CANCELED, result=Result.FAILURE).is_terminal
