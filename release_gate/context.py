"""Utilities for tracing and timing pipeline stages."""

import contextvars
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")


@dataclass
class TraceCollector:
    """Accumulates elapsed seconds per traced label."""

    timings: dict[str, float] = field(default_factory=lambda: defaultdict(float))
    counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def add(self, name: str, duration: float) -> None:
        """Record one traced block."""
        self.timings[name] += duration
        self.counts[name] += 1


_collector: contextvars.ContextVar[TraceCollector | None] = contextvars.ContextVar(
    "_collector", default=None
)


@contextmanager
def trace_collector() -> Generator[TraceCollector, None, None]:
    """Collect timings of every trace_context entered inside this block."""
    collector = TraceCollector()
    token = _collector.set(collector)
    try:
        yield collector
    finally:
        _collector.reset(token)


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Log entry and exit of a named block, nested under the enclosing blocks."""
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    start = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        elapsed = perf_counter() - start
        trace.reset(token)
        if (collector := _collector.get()) is not None:
            collector.add(label, elapsed)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, elapsed)
