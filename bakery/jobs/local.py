"""Job backend running bake commands as child processes of the bakery.

Each job runs in its own session so that cancelling it terminates the whole
process group, including any helper processes spawned by the renderer.
Output is captured incrementally: `output_content` holds stdout only while
`logs_content` holds stdout and stderr interleaved in arrival order.
"""

import asyncio
import codecs
from dataclasses import dataclass, field
import logging
import os
import signal
import subprocess

from ..config import LocalJobConfig
from ..exceptions import CommandException, InvalidRequestException
from ..model import BakeStatus, JobRequest, Result, State
from .executor import FinishedJobs, JobExecutor

__all__ = [
    "LocalJobExecutor",
]

_LOGGER = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024


@dataclass
class _Buffer:
    """Accumulates decoded output as it arrives."""

    chunks: list[str] = field(default_factory=list)

    @property
    def content(self) -> str:
        return "".join(self.chunks)


@dataclass
class _LocalJob:
    """A running child process and its captured output."""

    job_id: str
    process: asyncio.subprocess.Process
    output: _Buffer = field(default_factory=_Buffer)
    logs: _Buffer = field(default_factory=_Buffer)
    canceled: bool = False
    timed_out: bool = False
    supervisor: asyncio.Task[None] | None = None


async def _pump(stream: asyncio.StreamReader | None, *sinks: _Buffer) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while chunk := await stream.read(_READ_SIZE):
        text = decoder.decode(chunk)
        for sink in sinks:
            sink.chunks.append(text)
    if tail := decoder.decode(b"", final=True):
        for sink in sinks:
            sink.chunks.append(tail)


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        _LOGGER.debug("Process group %s already exited", process.pid)


class LocalJobExecutor(JobExecutor):
    """Runs jobs as local processes."""

    def __init__(self, config: LocalJobConfig | None = None) -> None:
        """Initialize LocalJobExecutor."""
        super().__init__()
        self._config = config or LocalJobConfig()
        self._jobs: dict[str, _LocalJob] = {}
        self._finished = FinishedJobs()

    @property
    def timeout(self) -> float | None:
        """Seconds a job may run before it is killed."""
        if self._config.timeout_minutes is None:
            return None
        return self._config.timeout_minutes * 60

    async def start_job(self, request: JobRequest) -> str:
        """Spawn the command as a child process."""
        _LOGGER.info(
            "Starting job %s (executionId: %s): %s",
            request.job_id,
            request.execution_id,
            " ".join(request.masked_command),
        )
        if not request.tokenized_command:
            raise InvalidRequestException(
                f"No tokenized command specified for {request.job_id}. "
                f"(executionId: {request.execution_id})"
            )
        try:
            process = await asyncio.create_subprocess_exec(
                *request.tokenized_command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as err:
            raise CommandException(
                f"Unable to start job {request.job_id}: {err}"
            ) from err
        job = _LocalJob(job_id=request.job_id, process=process)
        self._jobs[request.job_id] = job
        job.supervisor = asyncio.create_task(
            self._supervise(job), name=f"bake-job-{request.job_id}"
        )
        return request.job_id

    async def _supervise(self, job: _LocalJob) -> None:
        process = job.process
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _pump(process.stdout, job.output, job.logs),
                    _pump(process.stderr, job.logs),
                    process.wait(),
                ),
                self.timeout,
            )
        except TimeoutError:
            _LOGGER.warning("Job %s timed out after %ss", job.job_id, self.timeout)
            job.timed_out = True
            _signal_group(process, signal.SIGKILL)
            await process.wait()
        finally:
            self._finish(job)

    async def job_exists(self, job_id: str) -> bool:
        """Return True if the job is running or recently finished."""
        return job_id in self._jobs or job_id in self._finished

    async def update_job(self, job_id: str) -> BakeStatus | None:
        """Return the status of the job, with the output captured so far."""
        if (job := self._jobs.get(job_id)) is None:
            return self._finished.get(job_id)
        return BakeStatus(
            id=job_id,
            state=State.RUNNING,
            logs_content=job.logs.content,
            output_content=job.output.content,
        )

    def _finish(self, job: _LocalJob) -> None:
        """Record the terminal status of the job and release its process."""
        returncode = job.process.returncode
        logs = job.logs.content
        if job.timed_out:
            logs += f"\nJob timed out after {self.timeout} seconds\n"
        if job.canceled or job.timed_out:
            state, result = State.CANCELED, Result.FAILURE
        elif returncode == 0:
            state, result = State.COMPLETED, Result.SUCCESS
        else:
            state, result = State.COMPLETED, Result.FAILURE
        status = BakeStatus(
            id=job.job_id,
            state=state,
            result=result,
            logs_content=logs,
            output_content=job.output.content,
        )
        _LOGGER.info("Job %s finished with exit code %s: %s", job.job_id, returncode, status)
        self._jobs.pop(job.job_id, None)
        self._finished.add(job.job_id, status)

    async def cancel_job(self, job_id: str) -> None:
        """Send SIGTERM to the process group of the job."""
        if (job := self._jobs.get(job_id)) is None:
            return
        if job.process.returncode is not None:
            return
        _LOGGER.info("Canceling job %s", job_id)
        job.canceled = True
        _signal_group(job.process, signal.SIGTERM)

    def running_job_count(self) -> int:
        """Number of jobs whose process has not been reaped yet."""
        return len(self._jobs)

    async def close(self) -> None:
        """Terminate every running job and wait for them to exit."""
        for job_id in list(self._jobs):
            await self.cancel_job(job_id)
        supervisors = [job.supervisor for job in self._jobs.values() if job.supervisor]
        if supervisors:
            await asyncio.gather(*supervisors, return_exceptions=True)
