"""
Process memory monitoring.

MemoryMonitor is an explicitly owned component (not a process-wide
singleton) so each pipeline, and each test, can hold its own. The probe and
the clock are injectable; the default probe reads the resident set size of
the current process through psutil.
"""
import time
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from boltindex.core.errors import MemorySamplingError
from boltindex.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_INTERVAL = 0.1  # seconds between real OS queries


@dataclass(frozen=True)
class MemorySample:
    """One (possibly cached) reading of process memory."""
    timestamp: float
    usage_bytes: int
    high_watermark_bytes: int


def process_rss() -> int:
    """Resident set size of the current process, in bytes."""
    try:
        return int(psutil.Process().memory_info().rss)
    except (psutil.Error, OSError) as e:
        raise MemorySamplingError(str(e)) from e


class MemoryMonitor:
    """
    Rate-limited memory sampler with a running high-watermark.

    State lives in a single immutable MemorySample that is replaced by
    reference on every real poll, so concurrent readers always see a
    consistent (timestamp, usage, high-watermark) triple without locking.

    Usage:
        monitor = MemoryMonitor()
        usage = monitor.sample()
        peak = monitor.high_watermark
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        probe: Optional[Callable[[], int]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.min_interval = min_interval
        self._probe = probe or process_rss
        self._clock = clock or time.monotonic
        self._state: Optional[MemorySample] = None

    def sample(self) -> int:
        """
        Return current memory usage in bytes.

        Within ``min_interval`` of the last real query this returns the cached
        high-watermark instead of querying again. A failing probe yields 0;
        sampling never raises.
        """
        now = self._clock()
        state = self._state
        if state is not None and now - state.timestamp < self.min_interval:
            return state.high_watermark_bytes

        try:
            usage = int(self._probe())
        except Exception as e:
            logger.debug("memory_sample_failed", error=str(e))
            usage = 0

        previous_peak = state.high_watermark_bytes if state is not None else 0
        self._state = MemorySample(
            timestamp=now,
            usage_bytes=usage,
            high_watermark_bytes=max(previous_peak, usage),
        )
        return usage

    def latest(self) -> Optional[MemorySample]:
        """Last recorded sample, without polling."""
        return self._state

    @property
    def high_watermark(self) -> int:
        state = self._state
        return state.high_watermark_bytes if state is not None else 0

    def reset(self) -> None:
        """Forget the high-watermark; the next sample() polls immediately."""
        self._state = None
