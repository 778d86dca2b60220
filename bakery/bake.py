"""Run a bake from request to rendered artifact.

A bake stages its inputs into a fresh `StagingEnvironment`, asks a template
builder for the command to run, submits the command to the job executor and
polls the job until it reaches a terminal state:
```python
from bakery.bake import BakeOrchestrator, TemplateBakeService
from bakery.model import JinjaBakeRequest

service = TemplateBakeService(JinjaBakeRequest, builder, BakeOrchestrator(executor))
artifact = await service.bake(request)
print(artifact.decoded_content())
```

The staging environment is removed on every exit path, including when the
bake is cancelled, in which case the job is cancelled first.
"""

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Callable
import logging
from pathlib import Path
from typing import Generic, TypeVar
import uuid

from .context import execution_context, execution_id, trace_context
from .exceptions import BakeException
from .jobs import JobExecutor
from .model import Artifact, BakeRecipe, BakeRequest, BakeStatus, JobRequest, Result
from .staging import StagingEnvironment
from .template import TemplateBuilder, remove_tests_directory_templates

__all__ = [
    "BakeOrchestrator",
    "BakeService",
    "TemplateBakeService",
]

_LOGGER = logging.getLogger(__name__)

R = TypeVar("R", bound=BakeRequest)

DEFAULT_POLL_INTERVAL = 1.0


class BakeOrchestrator:
    """Submits recipes to a job executor and waits for their outcome."""

    def __init__(
        self, executor: JobExecutor, poll_interval: float = DEFAULT_POLL_INTERVAL
    ) -> None:
        """Initialize BakeOrchestrator."""
        self._executor = executor
        self._poll_interval = poll_interval

    @property
    def executor(self) -> JobExecutor:
        return self._executor

    async def run(self, recipe: BakeRecipe, execution_id: str | None = None) -> BakeStatus:
        """Run the recipe as a new job and return its successful status.

        Raises BakeException when the job fails or is cancelled. When the
        calling task is cancelled the job is cancelled before propagating,
        even when the cancellation arrives while the job is being started.
        """
        request = JobRequest(
            job_id=str(uuid.uuid4()),
            tokenized_command=recipe.command,
            execution_id=execution_id,
        )
        starting = asyncio.ensure_future(self._executor.start_job(request))
        try:
            job_id = await asyncio.shield(starting)
        except asyncio.CancelledError:
            _LOGGER.info(
                "Bake %s was interrupted while starting job %s", recipe.name, request.job_id
            )
            if (job_id := await self._started(starting)) is not None:
                await self._cancel(job_id)
            raise
        try:
            status = await self._wait(job_id)
        except asyncio.CancelledError:
            _LOGGER.info("Bake %s was interrupted, canceling job %s", recipe.name, job_id)
            await self._cancel(job_id)
            raise
        if status.result != Result.SUCCESS:
            raise BakeException(job_id, status.logs_content)
        return status

    async def _started(self, starting: asyncio.Future[str]) -> str | None:
        """Wait for an interrupted start to settle, returning the job id if it ran."""
        try:
            return await starting
        except Exception as err:
            _LOGGER.debug("Interrupted job did not start: %s", err)
            return None

    async def _cancel(self, job_id: str) -> None:
        try:
            await self._executor.cancel_job(job_id)
        except Exception as err:
            _LOGGER.error("Failed to cancel job %s: %s", job_id, err)

    async def _wait(self, job_id: str) -> BakeStatus:
        status = await self._executor.update_job(job_id)
        while status is None or not status.is_terminal:
            await asyncio.sleep(self._poll_interval)
            status = await self._executor.update_job(job_id)
        _LOGGER.debug("Job %s finished: %s", job_id, status)
        return status


class BakeService(ABC, Generic[R]):
    """Bakes one family of requests into an artifact."""

    request_type: type[R]
    """Dataclass the JSON body of a request decodes into."""

    def parse_request(self, body: dict) -> R:
        """Decode a request body."""
        return self.request_type.from_dict(body)

    @abstractmethod
    async def bake(self, request: R) -> Artifact:
        """Bake the request and return the rendered artifact."""


class TemplateBakeService(BakeService[R]):
    """Bakes requests by running the command built by a template builder."""

    def __init__(
        self,
        request_type: type[R],
        builder: TemplateBuilder[R],
        orchestrator: BakeOrchestrator,
        post_process: Callable[[str], str] | None = None,
        staging_parent: Path | None = None,
    ) -> None:
        """Initialize TemplateBakeService."""
        self.request_type = request_type
        self._builder = builder
        self._orchestrator = orchestrator
        self._post_process = post_process
        self._staging_parent = staging_parent

    @classmethod
    def for_helm(
        cls,
        request_type: type[R],
        builder: TemplateBuilder[R],
        orchestrator: BakeOrchestrator,
        staging_parent: Path | None = None,
    ) -> "TemplateBakeService[R]":
        """Return a service dropping chart test manifests from the output."""
        return cls(
            request_type,
            builder,
            orchestrator,
            post_process=remove_tests_directory_templates,
            staging_parent=staging_parent,
        )

    async def bake(self, request: R) -> Artifact:
        """Render the request in its own staging environment."""
        with trace_context(f"Bake {self._builder.label} '{request.output_name}'"):
            async with StagingEnvironment.create(self._staging_parent) as env:
                recipe = await self._builder.build_bake_recipe(env, request)
                status = await self._orchestrator.run(recipe, execution_id())
        output = status.output_content
        if self._post_process is not None:
            output = self._post_process(output)
        return Artifact.embedded(request.output_artifact_name, output)


async def bake_with_execution_id(
    service: BakeService[R], request: R, value: str | None
) -> Artifact:
    """Bake the request with `value` as the correlation id of the bake."""
    with execution_context(value):
        return await service.bake(request)
