"""
mcpexec Resource Limiter

Tracks memory (MB), CPU (%) and elapsed wall-clock time against ceilings.
The check_* methods only answer questions; enforce_limit() is the one place
where a violation turns into a ResourceLimitError.

Live samples come from psutil for the process the limiter watches (the
current process unless another one is attached).
"""

from __future__ import annotations

import time

import psutil
from pydantic import BaseModel

from mcpexec.core.models import ResourceKind, ResourceLimits
from mcpexec.exceptions import ResourceLimitError

DEFAULT_MEMORY_MB = 256
DEFAULT_CPU_PERCENT = 80.0
DEFAULT_TIMEOUT_MS = 30000


class ResourceStats(BaseModel):
    memory_mb: float
    cpu_percent: float
    execution_time_ms: float
    peak_memory_mb: float


class ResourceLimiter:
    """Ceilings plus on-demand sampling for one sandbox run."""

    def __init__(
        self,
        max_memory_mb: float = DEFAULT_MEMORY_MB,
        max_cpu_percent: float = DEFAULT_CPU_PERCENT,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        process: psutil.Process | None = None,
    ) -> None:
        self.max_memory_mb = max_memory_mb
        self.max_cpu_percent = max_cpu_percent
        self.timeout_ms = timeout_ms
        self._process = process or psutil.Process()
        self._started = time.monotonic()
        self._peak_memory_mb = 0.0
        self._last_elapsed_ms = 0.0

    @classmethod
    def from_limits(cls, limits: ResourceLimits, timeout_ms: int | None = None) -> ResourceLimiter:
        """Limiter for a sandbox config. One CPU core maps to 100%."""
        return cls(
            max_memory_mb=limits.memory_mb,
            max_cpu_percent=limits.cpu * 100.0,
            timeout_ms=timeout_ms or limits.timeout_ms,
        )

    def attach(self, pid: int) -> None:
        """Sample the given process (and its children) instead of ourselves."""
        self._process = psutil.Process(pid)

    @property
    def started_at(self) -> float:
        return self._started

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def peak_memory_mb(self) -> float:
        return self._peak_memory_mb

    # ─── Sampling ────────────────────────────────────────────

    def sample_memory_mb(self) -> float:
        """Resident memory of the watched process tree, in MB."""
        try:
            rss = self._process.memory_info().rss
            for child in self._process.children(recursive=True):
                try:
                    rss += child.memory_info().rss
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return self._peak_memory_mb
        memory_mb = rss / (1024 * 1024)
        self.observe_memory(memory_mb)
        return memory_mb

    def sample_cpu_percent(self) -> float:
        try:
            return self._process.cpu_percent(interval=None)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0.0

    def observe_memory(self, memory_mb: float) -> None:
        self._peak_memory_mb = max(self._peak_memory_mb, memory_mb)

    def elapsed_ms(self) -> float:
        # Clamp so successive readings never go backwards
        elapsed = (time.monotonic() - self._started) * 1000
        self._last_elapsed_ms = max(self._last_elapsed_ms, elapsed)
        return self._last_elapsed_ms

    # ─── Checks ──────────────────────────────────────────────

    def check_memory_usage(self, memory_mb: float | None = None) -> bool:
        used = self.sample_memory_mb() if memory_mb is None else memory_mb
        if memory_mb is not None:
            self.observe_memory(memory_mb)
        return used <= self.max_memory_mb

    def check_cpu_usage(self, cpu_percent: float | None = None) -> bool:
        used = self.sample_cpu_percent() if cpu_percent is None else cpu_percent
        return used <= self.max_cpu_percent

    def check_execution_time(self, start_time: float | None = None) -> bool:
        """Whether the time since start_time (a time.monotonic() value) is within the ceiling."""
        start = self._started if start_time is None else start_time
        return (time.monotonic() - start) * 1000 <= self.timeout_ms

    def enforce_limit(self, kind: ResourceKind | str, within_limit: bool, message: str | None = None) -> None:
        """Raise ResourceLimitError when within_limit is False."""
        if within_limit:
            return
        kind = ResourceKind(kind)
        raise ResourceLimitError(kind.value, message or f"Resource limit exceeded: {kind.value}")

    def get_resource_stats(self) -> ResourceStats:
        return ResourceStats(
            memory_mb=self.sample_memory_mb(),
            cpu_percent=self.sample_cpu_percent(),
            execution_time_ms=self.elapsed_ms(),
            peak_memory_mb=self._peak_memory_mb,
        )

    def reset_limits(
        self,
        max_memory_mb: float | None = None,
        max_cpu_percent: float | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        """Update any subset of the ceilings. Omitted ones keep their value."""
        if max_memory_mb is not None:
            self.max_memory_mb = max_memory_mb
        if max_cpu_percent is not None:
            self.max_cpu_percent = max_cpu_percent
        if timeout_ms is not None:
            self.timeout_ms = timeout_ms

    def get_limits(self) -> dict:
        return {
            "max_memory_mb": self.max_memory_mb,
            "max_cpu_percent": self.max_cpu_percent,
            "timeout_ms": self.timeout_ms,
        }
