"""
VM sandbox backend.

Python code is compiled with RestrictedPython and executed in a forked child
process. The child's interpreter context only holds explicitly injected
globals: a curated builtins table without open/eval/exec/compile, an
__import__ that admits a short list of pure-computation modules, and the
RestrictedPython guards. Host modules, files and environment resolve as
absent.

The child also gets an address-space rlimit. The parent polls for the
result and kills the child on timeout.

Only Python is supported; TypeScript requests fail with
UnsupportedLanguageError.
"""

from __future__ import annotations

import asyncio
import multiprocessing
import operator
import queue
import resource
import time
from typing import Any

import psutil

from mcpexec.core.models import Language, SandboxType, TrackedSandbox
from mcpexec.exceptions import SandboxError, SandboxTimeoutError, UnsupportedLanguageError
from mcpexec.logging import get_logger
from mcpexec.sandbox.base import SandboxBackend, SandboxRun
from mcpexec.sandbox.limiter import ResourceLimiter

logger = get_logger("mcpexec.sandbox.vm")

ALLOWED_MODULES = frozenset({
    "json", "math", "re", "typing", "datetime", "collections", "itertools",
    "functools", "statistics", "string", "decimal", "fractions",
})

EXTRA_BUILTINS = (
    "dict", "list", "set", "frozenset", "enumerate", "sum", "min", "max", "any",
    "all", "map", "filter", "reversed", "iter", "next", "format",
)

POLL_INTERVAL = 0.01

_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
    ">>=": operator.irshift,
    "<<=": operator.ilshift,
}


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    try:
        return _INPLACE_OPERATORS[op](x, y)
    except KeyError:
        raise ValueError(f"Unknown operator: {op}") from None


def _guarded_import(name: str, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or name.split(".")[0] not in ALLOWED_MODULES:
        raise ImportError(f"import of '{name}' is not allowed in the vm sandbox")
    return __import__(name, globals, locals, fromlist, level)


def build_globals() -> dict[str, Any]:
    """The complete global namespace visible to sandboxed code."""
    import builtins

    from RestrictedPython import safe_builtins
    from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
    from RestrictedPython.Guards import (
        full_write_guard,
        guarded_iter_unpack_sequence,
        guarded_unpack_sequence,
        safer_getattr,
    )
    from RestrictedPython.PrintCollector import PrintCollector

    sandbox_builtins = dict(safe_builtins)
    for name in ("open", "eval", "exec", "compile", "input", "breakpoint", "globals", "locals", "vars"):
        sandbox_builtins.pop(name, None)
    for name in EXTRA_BUILTINS:
        sandbox_builtins[name] = getattr(builtins, name)
    sandbox_builtins["__import__"] = _guarded_import
    sandbox_builtins["getattr"] = safer_getattr

    return {
        "__builtins__": sandbox_builtins,
        "__name__": "__sandbox__",
        "__metaclass__": type,
        "_print_": PrintCollector,
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_inplacevar_": _inplacevar,
        "_write_": full_write_guard,
    }


def _execute_restricted(code: str, results: multiprocessing.Queue, memory_limit_mb: int) -> None:
    """Child-process entry point."""
    import warnings

    warnings.filterwarnings("ignore", category=SyntaxWarning)

    # A forked child starts with the parent's address space, so the cap is
    # measured on top of what is already mapped.
    me = psutil.Process()
    baseline = me.memory_info()
    try:
        limit = baseline.vms + memory_limit_mb * 1024 * 1024
        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        if hard == resource.RLIM_INFINITY or limit <= hard:
            resource.setrlimit(resource.RLIMIT_AS, (limit, hard))
    except (ValueError, OSError):
        pass

    from RestrictedPython import compile_restricted

    payload: dict[str, Any] = {"stdout": "", "error": None}
    try:
        byte_code = compile_restricted(code, "<sandbox>", "exec")
        namespace = build_globals()
        exec(byte_code, namespace)
        collector = namespace.get("_print")
        payload["stdout"] = collector() if collector is not None else ""
    except SyntaxError as e:
        payload["error"] = f"SyntaxError: {e}"
    except MemoryError:
        payload["error"] = "MemoryError: sandbox memory limit reached"
    except Exception as e:
        payload["error"] = f"{type(e).__name__}: {e}"

    try:
        grown = me.memory_info().rss - baseline.rss
    except psutil.Error:
        grown = 0
    payload["peak_memory_mb"] = max(0, grown) / (1024 * 1024)
    results.put(payload)


def _context() -> Any:
    if "fork" in multiprocessing.get_all_start_methods():
        return multiprocessing.get_context("fork")
    return multiprocessing.get_context()


class VMSandbox(SandboxBackend):
    """RestrictedPython in a child process."""

    sandbox_type = SandboxType.VM

    async def _run(
        self,
        sandbox: TrackedSandbox,
        code: str,
        language: Language,
        limiter: ResourceLimiter,
    ) -> SandboxRun:
        if language != Language.PYTHON:
            raise UnsupportedLanguageError("vm", language.value)

        ctx = _context()
        results = ctx.Queue()
        process = ctx.Process(
            target=_execute_restricted,
            args=(code, results, int(limiter.max_memory_mb)),
            daemon=True,
        )
        try:
            process.start()
            payload = await self._wait_for_result(process, results, limiter)
        finally:
            if process.is_alive():
                process.kill()
            if process.pid is not None:
                await asyncio.to_thread(process.join)
            results.close()
            results.cancel_join_thread()
            process.close()

        peak = float(payload.get("peak_memory_mb") or 0.0)
        limiter.observe_memory(peak)
        if payload.get("error"):
            return SandboxRun(stdout=payload.get("stdout", ""), stderr=payload["error"], exit_code=1, memory_used_mb=peak)
        return SandboxRun(stdout=payload.get("stdout", ""), exit_code=0, memory_used_mb=peak)

    async def _wait_for_result(
        self,
        process: Any,
        results: Any,
        limiter: ResourceLimiter,
    ) -> dict[str, Any]:
        # Drain the queue while polling; a child blocked on a full pipe never exits
        deadline = time.monotonic() + limiter.timeout_seconds
        while True:
            try:
                return results.get_nowait()
            except queue.Empty:
                pass

            if not process.is_alive():
                await asyncio.sleep(POLL_INTERVAL)
                try:
                    return results.get_nowait()
                except queue.Empty:
                    raise SandboxError(
                        "vm",
                        f"Sandbox process exited with code {process.exitcode} without a result",
                    ) from None

            if time.monotonic() >= deadline:
                process.kill()
                raise SandboxTimeoutError("vm", limiter.timeout_ms)

            await asyncio.sleep(POLL_INTERVAL)
