"""Exceptions related to the bakery."""

__all__ = [
    "BakeryException",
    "InvalidRequestException",
    "DescriptorException",
    "PathEscapeException",
    "FetchException",
    "CommandException",
    "JobException",
    "BakeException",
]


class BakeryException(Exception):
    """Generic base exception used for this library."""


class InvalidRequestException(BakeryException):
    """Raised when a bake request is rejected before any job is submitted."""


class DescriptorException(InvalidRequestException):
    """Raised when an overlay descriptor is missing, malformed or recursive."""


class PathEscapeException(InvalidRequestException):
    """Raised when a path would resolve outside of the staging root."""


class FetchException(BakeryException):
    """Raised when an artifact could not be fetched after all retries."""


class CommandException(BakeryException):
    """Raised when there is a failure spawning a subcommand."""


class JobException(BakeryException):
    """Raised when a job backend fails to start, cancel or provision."""


class BakeException(BakeryException):
    """Raised when a bake job finished without success."""

    def __init__(self, job_id: str, logs: str | None) -> None:
        super().__init__(f"Bake job {job_id} failed: {logs or 'no logs captured'}")
        self.job_id = job_id
        self.logs = logs
