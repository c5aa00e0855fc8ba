"""Memory pressure monitoring.

A monitor is created by the caller and passed to the components that react
to pressure (the engine process pool sweeps idle instances before launching,
the orchestrator reports it as a capability limitation).
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

import psutil

from tierconvert.config.constants import DEFAULT_MEMORY_THRESHOLD
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)


class MemoryStatus(StrEnum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class MemorySample:
    """One reading of system memory usage."""

    used: int
    total: int

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.used / self.total


def sample_system_memory() -> MemorySample:
    """Read current system memory usage via psutil."""
    vm = psutil.virtual_memory()
    return MemorySample(used=vm.total - vm.available, total=vm.total)


class MemoryPressureMonitor:
    """Reports whether memory usage has crossed a configured threshold."""

    def __init__(
        self,
        threshold: float = DEFAULT_MEMORY_THRESHOLD,
        warning_ratio: float = 0.8,
        sampler: Callable[[], MemorySample] = sample_system_memory,
    ) -> None:
        """Initialize the monitor.

        Args:
            threshold: Fraction of memory in use treated as critical pressure
            warning_ratio: Fraction of ``threshold`` at which usage is a warning
            sampler: Callable returning the current :class:`MemorySample`
        """
        if not 0 < threshold <= 1:
            raise ValueError("threshold must be in (0, 1]")
        self.threshold = threshold
        self.warning_ratio = warning_ratio
        self._sampler = sampler
        self._last: MemorySample | None = None

    def sample(self) -> MemorySample | None:
        """Take a reading; returns None when the sampler fails."""
        try:
            self._last = self._sampler()
        except Exception as e:
            log.debug("Memory sampling failed", error=str(e))
            return None
        return self._last

    def status(self) -> MemoryStatus:
        """Classify current usage."""
        reading = self.sample()
        if reading is None:
            return MemoryStatus.NORMAL
        if reading.percentage >= self.threshold:
            return MemoryStatus.CRITICAL
        if reading.percentage >= self.threshold * self.warning_ratio:
            return MemoryStatus.WARNING
        return MemoryStatus.NORMAL

    def under_pressure(self) -> bool:
        """True when usage is at or above the threshold."""
        pressured = self.status() is MemoryStatus.CRITICAL
        if pressured and self._last is not None:
            log.warning(
                "Memory pressure detected",
                usage=round(self._last.percentage, 3),
                threshold=self.threshold,
            )
        return pressured

    def suggest_concurrency(self, base_limit: int) -> int:
        """Scale a concurrency limit down under pressure."""
        status = self.status()
        if status is MemoryStatus.CRITICAL:
            return 1
        if status is MemoryStatus.WARNING:
            return max(1, int(base_limit * 0.6))
        return base_limit
