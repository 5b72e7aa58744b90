"""Tracing of the release steps a task is working on.

Each step (fetch, reconcile, apply) is pushed onto a context local stack along
with the release it acts on, so concurrent reconciles of different releases
keep separate traces. `TraceFilter` copies the current trace onto log records
so a log format can show which release a line belongs to:

```
%(asctime)s %(levelname)s [%(release)s] %(name)s: %(message)s
```
"""

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
import logging
from time import perf_counter
from typing import Generator

from .manifest import ReleaseId

__all__ = [
    "TraceFilter",
    "current_release",
    "trace_context",
]

_LOGGER = logging.getLogger(__name__)

NO_RELEASE = "-"


@dataclass(frozen=True)
class Step:
    """A named step performed on a release."""

    name: str
    release: ReleaseId

    def __str__(self) -> str:
        return f"{self.name} {self.release}"


trace: contextvars.ContextVar[tuple[Step, ...]] = contextvars.ContextVar(
    "trace", default=()
)


def current_release() -> ReleaseId | None:
    """Return the release of the innermost step, if any."""
    if not (steps := trace.get()):
        return None
    return steps[-1].release


@contextmanager
def trace_context(name: str, release: ReleaseId) -> Generator[None, None, None]:
    """Log entry and exit of a step on a release, nested under enclosing steps."""
    steps = trace.get() + (Step(name, release),)
    token = trace.set(steps)
    label = " > ".join(str(step) for step in steps)
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        t2 = perf_counter()
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, (t2 - t1))


class TraceFilter(logging.Filter):
    """Adds `release` and `trace` attributes to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        steps = trace.get()
        record.release = str(steps[-1].release) if steps else NO_RELEASE
        record.trace = " > ".join(step.name for step in steps)
        return True
