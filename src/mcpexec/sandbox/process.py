"""
Process sandbox backend.

Runs code in a child interpreter with:
- a fresh temporary directory as cwd, HOME and TMPDIR (never the host HOME)
- an environment built from scratch plus the explicit allow-list
- its own session, so timeout kills the whole process group
- POSIX rlimits (CPU seconds, and address space for Python) applied via psutil
- psutil RSS sampling of the process tree against the memory ceiling

The lightest backend: it shares the host kernel, user and network, so it is
only selected for low-risk code.
"""

from __future__ import annotations

import asyncio
import math
import os
import shutil
import signal
import sys
import tempfile
from pathlib import Path

import psutil

from mcpexec.core.models import Language, ResourceKind, SandboxType, TrackedSandbox
from mcpexec.exceptions import InfrastructureError, SandboxTimeoutError
from mcpexec.logging import get_logger
from mcpexec.sandbox.base import PROTECTED_ENV_VARS, SandboxBackend, SandboxRun
from mcpexec.sandbox.limiter import ResourceLimiter

logger = get_logger("mcpexec.sandbox.process")

SYSTEM_PATH = ["/usr/local/bin", "/usr/bin", "/bin"]
MONITOR_INTERVAL = 0.05


class ProcessSandbox(SandboxBackend):
    """Child-process execution with a scrubbed environment."""

    sandbox_type = SandboxType.PROCESS

    async def _run(
        self,
        sandbox: TrackedSandbox,
        code: str,
        language: Language,
        limiter: ResourceLimiter,
    ) -> SandboxRun:
        workdir = Path(tempfile.mkdtemp(prefix="mcpexec-sandbox-"))
        proc: asyncio.subprocess.Process | None = None
        monitor: asyncio.Task | None = None
        breach: list[float] = []
        spawned: dict[int, psutil.Process] = {}
        try:
            (workdir / "home").mkdir()
            (workdir / "tmp").mkdir()
            script = workdir / ("main.py" if language == Language.PYTHON else "main.ts")
            script.write_text(code, encoding="utf-8")

            command = resolve_command(language, script)
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir),
                env=self.build_env(workdir, sandbox, command[0]),
                start_new_session=True,
            )
            logger.debug(
                f"Started {language.value} process pid={proc.pid}",
                extra={"sandbox_id": sandbox.id, "sandbox_type": "process"},
            )
            self._apply_rlimits(proc.pid, language, limiter)
            limiter.attach(proc.pid)
            monitor = asyncio.create_task(self._monitor(proc, limiter, breach, spawned))

            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limiter.timeout_seconds)
            except TimeoutError:
                if proc.returncode is None:
                    _kill_group(proc.pid)
                    await proc.wait()
                raise SandboxTimeoutError("process", limiter.timeout_ms)

            if breach:
                limiter.enforce_limit(
                    ResourceKind.MEMORY,
                    False,
                    f"Resource limit exceeded: memory ({breach[0]:.1f}MB > {limiter.max_memory_mb}MB)",
                )

            return SandboxRun(
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=stderr.decode("utf-8", errors="replace"),
                exit_code=proc.returncode if proc.returncode is not None else -1,
                memory_used_mb=limiter.peak_memory_mb,
            )
        finally:
            if monitor is not None:
                monitor.cancel()
                try:
                    await monitor
                except asyncio.CancelledError:
                    pass
            if proc is not None:
                if proc.returncode is None:
                    _kill_group(proc.pid)
                    await proc.wait()
                # The leader is reaped and its pid is free for reuse, so stragglers go by identity
                _kill_tracked(spawned.values())
            await asyncio.to_thread(shutil.rmtree, workdir, ignore_errors=True)

    def build_env(self, workdir: Path, sandbox: TrackedSandbox, executable: str) -> dict[str, str]:
        """Environment for the child: fixed base plus allow-listed host vars."""
        path = [str(Path(executable).parent)] + [p for p in SYSTEM_PATH if p != str(Path(executable).parent)]
        env = {
            "PATH": os.pathsep.join(path),
            "HOME": str(workdir / "home"),
            "TMPDIR": str(workdir / "tmp"),
            "LANG": "C.UTF-8",
            "PYTHONIOENCODING": "utf-8",
            "PYTHONDONTWRITEBYTECODE": "1",
            "NODE_ENV": "sandbox",
            "MCPEXEC_SANDBOX_ID": sandbox.id,
        }
        for name in self.config.allowed_env_vars:
            if name in PROTECTED_ENV_VARS:
                logger.warning(f"Ignoring allow-listed {name}: set by the sandbox itself")
                continue
            if name in os.environ:
                env[name] = os.environ[name]
        return env

    def _apply_rlimits(self, pid: int, language: Language, limiter: ResourceLimiter) -> None:
        if not hasattr(psutil, "RLIMIT_CPU"):
            return
        try:
            child = psutil.Process(pid)
            cpu_seconds = max(1, math.ceil(limiter.timeout_seconds * max(1.0, self.config.resource_limits.cpu)))
            child.rlimit(psutil.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
            # Node reserves large virtual ranges up front, so address-space caps only suit Python
            if language == Language.PYTHON:
                limit = int(limiter.max_memory_mb * 1024 * 1024)
                child.rlimit(psutil.RLIMIT_AS, (limit, limit))
        except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError, OSError) as e:
            logger.debug(f"Could not apply rlimits to pid {pid}: {e}")

    async def _monitor(
        self,
        proc: asyncio.subprocess.Process,
        limiter: ResourceLimiter,
        breach: list[float],
        spawned: dict[int, psutil.Process],
    ) -> None:
        try:
            root = psutil.Process(proc.pid)
        except psutil.NoSuchProcess:
            return
        while proc.returncode is None:
            try:
                for child in root.children(recursive=True):
                    spawned.setdefault(child.pid, child)
            except psutil.NoSuchProcess:
                pass
            memory_mb = limiter.sample_memory_mb()
            if not limiter.check_memory_usage(memory_mb):
                breach.append(memory_mb)
                _kill_group(proc.pid)
                return
            await asyncio.sleep(MONITOR_INTERVAL)


def resolve_command(language: Language, script: Path) -> list[str]:
    """Interpreter command line for a script.

    TypeScript prefers tsx, then ts-node, then Node's built-in type stripping.
    """
    if language == Language.PYTHON:
        return [sys.executable, "-I", "-B", str(script)]

    tsx = shutil.which("tsx")
    if tsx:
        return [tsx, str(script)]
    ts_node = shutil.which("ts-node")
    if ts_node:
        return [ts_node, "--transpile-only", str(script)]
    node = shutil.which("node")
    if node:
        return [node, "--experimental-strip-types", "--no-warnings", str(script)]
    raise InfrastructureError("process", "No TypeScript runtime found (tried tsx, ts-node, node)")


def typescript_available() -> bool:
    return any(shutil.which(name) for name in ("tsx", "ts-node", "node"))


def _kill_group(pid: int) -> None:
    try:
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def _kill_tracked(processes) -> None:
    # psutil refuses to signal a pid that now belongs to a different process
    for child in processes:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
