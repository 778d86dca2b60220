"""Per-bake context tracking.

Concurrent bakes share the event loop, so the identifiers of the bake being
processed are kept in context variables and attached to trace log lines.
"""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


_trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")
_execution_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "execution_id", default=None
)


def execution_id() -> str | None:
    """Return the correlation id of the bake running in this context."""
    return _execution_id.get()


@contextmanager
def execution_context(value: str | None) -> Generator[None, None, None]:
    """Set the correlation id for all work done within the block."""
    token = _execution_id.set(value)
    try:
        yield
    finally:
        _execution_id.reset(token)


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Log entry to and elapsed time of a named step of a bake."""
    stack = _trace.get([])
    token = _trace.set(stack + [name])
    label = " > ".join(stack + [name])
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s (executionId: %s)", label, execution_id())
    try:
        yield
    finally:
        t2 = perf_counter()
        _trace.reset(token)
        _LOGGER.debug(
            "[Trace] < %s (%0.2fs, executionId: %s)", label, (t2 - t1), execution_id()
        )
