"""Tests for running bakes through a job executor."""

import asyncio
from pathlib import Path

import pytest

from bakery.bake import BakeOrchestrator, TemplateBakeService, bake_with_execution_id
from bakery.config import HelmConfig, JinjaConfig
from bakery.context import execution_id
from bakery.exceptions import BakeException, FetchException, JobException
from bakery.helm import HelmTemplateBuilder
from bakery.jinja import JinjaTemplateBuilder
from bakery.jobs import JobExecutor
from bakery.model import (
    Artifact,
    BakeRecipe,
    BakeStatus,
    HelmBakeRequest,
    JinjaBakeRequest,
    JobRequest,
    Result,
    State,
)

from .conftest import FakeFetcher

RECIPE = BakeRecipe(name="web", command=("helm", "template", "web", "chart"))


class ScriptedExecutor(JobExecutor):
    """Reports a scripted sequence of statuses for every job."""

    def __init__(self, statuses: list[BakeStatus | None]) -> None:
        super().__init__()
        self.statuses = list(statuses)
        self.requests: list[JobRequest] = []
        self.canceled: list[str] = []
        self.polls = 0

    async def start_job(self, request: JobRequest) -> str:
        self.requests.append(request)
        return request.job_id

    async def job_exists(self, job_id: str) -> bool:
        return True

    async def update_job(self, job_id: str) -> BakeStatus | None:
        self.polls += 1
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    async def cancel_job(self, job_id: str) -> None:
        self.canceled.append(job_id)


def running() -> BakeStatus:
    return BakeStatus(id="job", state=State.RUNNING)


def succeeded(output: str) -> BakeStatus:
    return BakeStatus(
        id="job",
        state=State.COMPLETED,
        result=Result.SUCCESS,
        output_content=output,
        logs_content=output,
    )


async def test_run_success() -> None:
    """Test polling continues until the job reaches a terminal state."""
    executor = ScriptedExecutor([None, running(), running(), succeeded("kind: Pod\n")])
    orchestrator = BakeOrchestrator(executor, poll_interval=0)
    status = await orchestrator.run(RECIPE, execution_id="exec-1")
    assert status.output_content == "kind: Pod\n"
    assert executor.polls == 4

    (request,) = executor.requests
    assert request.tokenized_command == RECIPE.command
    assert request.execution_id == "exec-1"
    assert len(request.job_id) == 36


async def test_run_unique_job_ids() -> None:
    """Test every run gets its own job id."""
    executor = ScriptedExecutor([succeeded("")])
    orchestrator = BakeOrchestrator(executor, poll_interval=0)
    await orchestrator.run(RECIPE)
    await orchestrator.run(RECIPE)
    assert executor.requests[0].job_id != executor.requests[1].job_id


@pytest.mark.parametrize(
    "status",
    [
        BakeStatus(
            id="job",
            state=State.COMPLETED,
            result=Result.FAILURE,
            logs_content="Error: chart not found",
        ),
        BakeStatus(
            id="job",
            state=State.CANCELED,
            result=Result.FAILURE,
            logs_content="Error: chart not found",
        ),
    ],
)
async def test_run_failure(status: BakeStatus) -> None:
    """Test a job finishing without success fails the bake with its logs."""
    orchestrator = BakeOrchestrator(ScriptedExecutor([status]), poll_interval=0)
    with pytest.raises(BakeException, match="chart not found") as exc_info:
        await orchestrator.run(RECIPE)
    assert exc_info.value.logs == "Error: chart not found"


async def test_run_cancelled() -> None:
    """Test cancelling a bake cancels its job."""
    executor = ScriptedExecutor([running()])
    orchestrator = BakeOrchestrator(executor, poll_interval=0.01)
    task = asyncio.create_task(orchestrator.run(RECIPE))
    while not executor.polls:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert executor.canceled == [executor.requests[0].job_id]


class SlowStartExecutor(ScriptedExecutor):
    """Holds every job start until released."""

    def __init__(self, statuses: list[BakeStatus | None]) -> None:
        super().__init__(statuses)
        self.starting = asyncio.Event()
        self.release = asyncio.Event()

    async def start_job(self, request: JobRequest) -> str:
        self.requests.append(request)
        self.starting.set()
        await self.release.wait()
        return request.job_id


async def test_run_cancelled_while_starting() -> None:
    """Test a job started during cancellation is still cancelled."""
    executor = SlowStartExecutor([running()])
    orchestrator = BakeOrchestrator(executor, poll_interval=0.01)
    task = asyncio.create_task(orchestrator.run(RECIPE))
    await executor.starting.wait()
    task.cancel()
    await asyncio.sleep(0)
    assert not task.done()

    executor.release.set()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert executor.canceled == [executor.requests[0].job_id]
    assert executor.polls == 0


class FailingCancelExecutor(ScriptedExecutor):
    """Fails every attempt to cancel a job."""

    async def cancel_job(self, job_id: str) -> None:
        self.canceled.append(job_id)
        raise JobException("Failed to cancel k8s job. (500)")


async def test_run_cancelled_cancel_fails() -> None:
    """Test a failure to cancel the job does not mask the cancellation."""
    executor = FailingCancelExecutor([running()])
    orchestrator = BakeOrchestrator(executor, poll_interval=0.01)
    task = asyncio.create_task(orchestrator.run(RECIPE))
    while not executor.polls:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert executor.canceled == [executor.requests[0].job_id]


async def test_template_bake(tmp_path: Path) -> None:
    """Test a bake returns the embedded output and removes its staging directory."""
    fetcher = FakeFetcher({"template": "name: {{ name }}\n"})
    executor = ScriptedExecutor([succeeded("name: web\n")])
    service = TemplateBakeService(
        JinjaBakeRequest,
        JinjaTemplateBuilder(fetcher, JinjaConfig()),
        BakeOrchestrator(executor, poll_interval=0),
        staging_parent=tmp_path,
    )
    artifact = await service.bake(
        JinjaBakeRequest(
            output_name="web",
            output_artifact_name_="web-manifest",
            input_artifacts=(Artifact(reference="template"),),
        )
    )
    assert artifact == Artifact.embedded("web-manifest", "name: web\n")
    assert executor.requests[0].tokenized_command[0] == "jinja2"
    assert list(tmp_path.iterdir()) == []


async def test_helm_bake_removes_tests() -> None:
    """Test helm output drops the manifests of chart tests."""
    output = (
        "---\n# Source: web/templates/cm.yaml\nkind: ConfigMap\n"
        "---\n# Source: web/templates/tests/test.yaml\nkind: Pod\n"
    )
    service = TemplateBakeService.for_helm(
        HelmBakeRequest,
        HelmTemplateBuilder(FakeFetcher({"chart": b"chart"}), HelmConfig()),
        BakeOrchestrator(ScriptedExecutor([succeeded(output)]), poll_interval=0),
    )
    artifact = await service.bake(
        HelmBakeRequest(output_name="web", input_artifacts=(Artifact(reference="chart"),))
    )
    assert artifact.decoded_content() == (
        "---\n# Source: web/templates/cm.yaml\nkind: ConfigMap\n"
    )


async def test_bake_cleanup_on_failure(tmp_path: Path) -> None:
    """Test the staging directory is removed when the bake fails."""
    service = TemplateBakeService(
        JinjaBakeRequest,
        JinjaTemplateBuilder(FakeFetcher(), JinjaConfig()),
        BakeOrchestrator(ScriptedExecutor([succeeded("")]), poll_interval=0),
        staging_parent=tmp_path,
    )
    with pytest.raises(FetchException):
        await service.bake(
            JinjaBakeRequest(input_artifacts=(Artifact(reference="missing"),))
        )
    assert list(tmp_path.iterdir()) == []


async def test_bake_with_execution_id() -> None:
    """Test the execution id is attached to the job of the bake."""
    executor = ScriptedExecutor([succeeded("")])
    service = TemplateBakeService(
        JinjaBakeRequest,
        JinjaTemplateBuilder(FakeFetcher({"template": ""}), JinjaConfig()),
        BakeOrchestrator(executor, poll_interval=0),
    )
    request = JinjaBakeRequest(input_artifacts=(Artifact(reference="template"),))
    await bake_with_execution_id(service, request, "exec-42")
    assert executor.requests[0].execution_id == "exec-42"
    assert execution_id() is None
