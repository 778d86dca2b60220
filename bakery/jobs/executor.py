"""Interface shared by every job backend.

A job runs one bake command asynchronously. Every backend follows the same
state machine: a job is RUNNING once `start_job` returns, then moves to either
COMPLETED (with SUCCESS or FAILURE) or CANCELED (with FAILURE) and never
changes again.
"""

from abc import ABC, abstractmethod
import asyncio
from collections import OrderedDict
import logging
from pathlib import Path

from ..exceptions import JobException
from ..model import BakeStatus, JobRequest

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "JobExecutor",
    "FinishedJobs",
    "read_config_dir",
]

# Terminal statuses kept around after a job is gone
MAX_FINISHED = 256


class JobExecutor(ABC):
    """Runs bake commands and reports their status."""

    def __init__(self) -> None:
        """Initialize the executor."""
        self._start_lock = asyncio.Lock()
        self._started = False

    async def start(self) -> None:
        """Provision the shared resources of the backend.

        Provisioning happens exactly once no matter how many concurrent bakes
        call this, and always completes before the first job is submitted.
        """
        if self._started:
            return
        async with self._start_lock:
            if self._started:
                return
            await self._provision()
            self._started = True
            _LOGGER.debug("Started job executor %s", type(self).__name__)

    async def _provision(self) -> None:
        """Create resources shared read-only by every job."""

    @abstractmethod
    async def start_job(self, request: JobRequest) -> str:
        """Launch the job.

        Args:
            request: The command to run and its identifiers

        Returns:
            The identifier used by the backend for the job
        """

    @abstractmethod
    async def job_exists(self, job_id: str) -> bool:
        """Return True if the backend still knows about the job."""

    @abstractmethod
    async def update_job(self, job_id: str) -> BakeStatus | None:
        """Poll the job once without blocking.

        Returns None when the backend has no information yet or the query
        failed transiently. The caller should poll again later.
        """

    @abstractmethod
    async def cancel_job(self, job_id: str) -> None:
        """Request termination of the job, a no-op if it no longer exists."""

    def running_job_count(self) -> int:
        """Number of jobs running in this process, zero for remote backends."""
        return 0

    async def close(self) -> None:
        """Release resources held by the backend."""


class FinishedJobs:
    """Terminal statuses of the most recent jobs, evicting the oldest first."""

    def __init__(self, max_size: int | None = None) -> None:
        """Initialize FinishedJobs."""
        self._max_size = max_size or MAX_FINISHED
        self._statuses: OrderedDict[str, BakeStatus] = OrderedDict()

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._statuses

    def __len__(self) -> int:
        return len(self._statuses)

    def get(self, job_id: str) -> BakeStatus | None:
        return self._statuses.get(job_id)

    def add(self, job_id: str, status: BakeStatus) -> None:
        """Record the status, dropping the oldest ones past the limit."""
        self._statuses[job_id] = status
        while len(self._statuses) > self._max_size:
            self._statuses.popitem(last=False)


def read_config_dir(config_dir: Path) -> dict[str, str]:
    """Read every file under the configuration directory keyed by file name.

    The files are shared with remote jobs, which lay them out flat in their
    own copy of the directory.
    """
    if not config_dir.is_dir():
        raise JobException(f"Configuration directory {config_dir} does not exist")
    data: dict[str, str] = {}
    for path in sorted(config_dir.rglob("*")):
        if not path.is_file():
            continue
        try:
            data[path.name] = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as err:
            raise JobException(
                f"Failed to read configuration file '{path}' as UTF-8 text: {err}"
            ) from err
    return data
