"""
Sandbox backend contract.

Every backend implements one coroutine, _run(), and inherits execute(),
which owns the bookkeeping that must hold for all of them:

- the sandbox is registered in the active set before any resource is
  created and removed only after _run() (including its own teardown) has
  returned or raised;
- timeouts, resource-limit violations, thrown errors and non-zero exits all
  come back as ExecutionResult(success=False); nothing escapes execute().
"""

from __future__ import annotations

import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, ClassVar

from pydantic import BaseModel

from mcpexec.config import OutputSettings
from mcpexec.core.models import (
    ExecutionMetrics,
    ExecutionResult,
    Language,
    ResourceKind,
    SandboxConfig,
    SandboxType,
    TrackedSandbox,
)
from mcpexec.exceptions import McpExecError, ResourceLimitError, SandboxTimeoutError
from mcpexec.logging import get_logger
from mcpexec.sandbox.limiter import ResourceLimiter

logger = get_logger("mcpexec.sandbox")

# Env vars a sandbox always gets from us, never from the host
PROTECTED_ENV_VARS = frozenset({"HOME", "TMPDIR", "TMP", "TEMP", "PATH", "USERPROFILE"})


class SandboxRun(BaseModel):
    """Raw outcome of one backend run, before summarization."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    memory_used_mb: float = 0.0


class SandboxRegistry:
    """Concurrency-safe set of live sandboxes.

    Shared by every backend of one SandboxManager; registration and removal
    from different requests interleave freely.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, TrackedSandbox] = {}

    def register(self, sandbox: TrackedSandbox) -> None:
        with self._lock:
            self._active[sandbox.id] = sandbox

    def discard(self, sandbox_id: str) -> bool:
        with self._lock:
            return self._active.pop(sandbox_id, None) is not None

    def get(self, sandbox_id: str) -> TrackedSandbox | None:
        with self._lock:
            return self._active.get(sandbox_id)

    def snapshot(self) -> list[TrackedSandbox]:
        with self._lock:
            return list(self._active.values())

    def count(self, backend: SandboxType | None = None) -> int:
        with self._lock:
            if backend is None:
                return len(self._active)
            return sum(1 for s in self._active.values() if s.backend == backend)

    def __len__(self) -> int:
        return self.count()


def summarize_output(text: str, settings: OutputSettings) -> str:
    """Keep short output verbatim, truncate long output with a length note."""
    if len(text) <= settings.max_summary_chars:
        return text
    return (
        text[: settings.truncated_head_chars]
        + f"...\n\n[Output truncated. Total length: {len(text)} characters]"
    )


def estimate_tokens(text: str, settings: OutputSettings) -> int:
    return math.ceil(len(text) / settings.chars_per_token)


def _unchanged(text: str) -> str:
    return text


class SandboxBackend(ABC):
    """One isolation strategy. Higher layers only ever call execute()."""

    sandbox_type: ClassVar[SandboxType]

    def __init__(
        self,
        config: SandboxConfig | None = None,
        registry: SandboxRegistry | None = None,
        output: OutputSettings | None = None,
    ) -> None:
        self.config = config or SandboxConfig()
        self.registry = registry or SandboxRegistry()
        self.output = output or OutputSettings()

    @abstractmethod
    async def _run(
        self,
        sandbox: TrackedSandbox,
        code: str,
        language: Language,
        limiter: ResourceLimiter,
    ) -> SandboxRun:
        """Run code to completion and tear down everything it created.

        Raise SandboxTimeoutError / ResourceLimitError / SandboxError on
        failure. Teardown must happen in a finally block.
        """

    async def execute(
        self,
        code: str,
        language: Language | str,
        timeout_ms: int | None = None,
        redact: Callable[[str], str] | None = None,
    ) -> ExecutionResult:
        """Run code in a fresh sandbox and return a structured result.

        redact, when given, rewrites the complete output and error text
        before anything is truncated.
        """
        redact = redact or _unchanged
        language = Language(language)
        limiter = ResourceLimiter.from_limits(self.config.resource_limits, timeout_ms=timeout_ms)
        sandbox = TrackedSandbox(backend=self.sandbox_type, language=language)
        extra = {"sandbox_id": sandbox.id, "sandbox_type": self.sandbox_type.value}

        started = time.monotonic()
        self.registry.register(sandbox)
        logger.debug("Sandbox registered", extra=extra)
        try:
            run = await self._run(sandbox, code, language, limiter)
            limiter.enforce_limit(
                ResourceKind.MEMORY,
                limiter.check_memory_usage(run.memory_used_mb),
                f"Resource limit exceeded: memory ({run.memory_used_mb:.1f}MB > {limiter.max_memory_mb}MB)",
            )
            return self._result(run, started, redact)
        except SandboxTimeoutError as e:
            logger.warning(e.message, extra=extra)
            return self._failure(redact(e.message), started, limiter)
        except ResourceLimitError as e:
            logger.warning(e.message, extra=extra)
            return self._failure(redact(e.message), started, limiter)
        except McpExecError as e:
            logger.warning(f"Sandbox failed: {e.message}", extra=extra)
            return self._failure(redact(e.message), started, limiter)
        except Exception as e:
            logger.exception("Unexpected sandbox failure", extra=extra)
            return self._failure(redact(f"{type(e).__name__}: {e}"), started, limiter)
        finally:
            self.registry.discard(sandbox.id)
            logger.debug("Sandbox released", extra=extra)

    # ─── Result assembly ─────────────────────────────────────

    def _result(self, run: SandboxRun, started: float, redact: Callable[[str], str]) -> ExecutionResult:
        elapsed_ms = (time.monotonic() - started) * 1000
        stdout = run.stdout.strip()

        if run.exit_code != 0:
            detail = run.stderr.strip() or stdout or "no output"
            error = summarize_output(redact(f"Process exited with code {run.exit_code}: {detail}"), self.output)
            return ExecutionResult(
                success=False,
                error=error,
                sandbox_type=self.sandbox_type,
                metrics=ExecutionMetrics(
                    execution_time_ms=elapsed_ms,
                    memory_used_mb=run.memory_used_mb,
                    raw_output_tokens=estimate_tokens(run.stdout, self.output),
                ),
            )

        summary = summarize_output(redact(stdout), self.output)
        return ExecutionResult(
            success=True,
            summary=summary,
            sandbox_type=self.sandbox_type,
            metrics=ExecutionMetrics(
                execution_time_ms=elapsed_ms,
                memory_used_mb=run.memory_used_mb,
                tokens_in_summary=estimate_tokens(summary, self.output),
                raw_output_tokens=estimate_tokens(run.stdout, self.output),
            ),
        )

    def _failure(self, error: str, started: float, limiter: ResourceLimiter) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            error=error,
            sandbox_type=self.sandbox_type,
            metrics=ExecutionMetrics(
                execution_time_ms=(time.monotonic() - started) * 1000,
                memory_used_mb=limiter.peak_memory_mb,
            ),
        )
