"""Utilities for tracing the phases of a synchronization cycle."""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

__all__ = ["cycle_phase"]


FETCHING = "Fetching"
RENDERING = "Rendering"
APPLYING = "Applying"
PRUNING = "Pruning"
REPORTING = "Reporting"
TERMINATING = "Terminating"
WRITING_BACK = "WritingBack"

trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")


@contextmanager
def cycle_phase(name: str) -> Generator[None, None, None]:
    """Record entering a named phase, nested under any enclosing phase."""
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    t1 = perf_counter()
    _LOGGER.debug("[Phase] > %s", label)
    try:
        yield
    finally:
        t2 = perf_counter()
        trace.reset(token)
        _LOGGER.debug("[Phase] < %s (%0.2fs)", label, (t2 - t1))

