"""Timing helpers that log slow operations and step durations."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator

logger = logging.getLogger(__name__)

DEFAULT_SLOW_LOG = 1.0
"""Seconds after which any timed block is reported as slow."""


def _format_duration(seconds: float) -> str:
    millis = round(seconds * 1000)
    if abs(millis) < 1000:
        return f"{millis}ms"
    return f"{millis / 1000:g}s"


@contextmanager
def slow_log(
    message: str, log_after: float = 0.0, default_threshold: float = DEFAULT_SLOW_LOG
) -> Iterator[None]:
    """Log a warning if the block takes longer than ``log_after`` or the default."""
    start = time.monotonic()
    try:
        yield
    finally:
        elapsed = time.monotonic() - start
        if (log_after > 0 and elapsed > log_after) or elapsed > default_threshold:
            logger.warning("%s - %s", _format_duration(elapsed), message)


class StepTimer:
    """Logs how long each step of a process took, restarting after each step."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._start = clock()

    def log_step(self, cluster: str, message: str) -> float:
        """Log the time since the last step and return it in seconds."""
        now = self._clock()
        elapsed = now - self._start
        logger.debug("\t> %6s\t [%12s] %s", _format_duration(elapsed), cluster, message)
        self._start = now
        return elapsed