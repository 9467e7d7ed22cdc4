"""
mcpexec Cleanup Manager

A single place for teardown. Components register named handlers (sync or
async); cleanup() runs them newest-first and keeps going when one fails.
Exit hooks route interpreter shutdown and SIGTERM through the same path.
"""

from __future__ import annotations

import asyncio
import atexit
import inspect
import signal
import sys
import threading
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field

from mcpexec.logging import get_logger

logger = get_logger("mcpexec.cleanup")

CleanupHandler = Callable[[], Any] | Callable[[], Awaitable[Any]]


class CleanupSummary(BaseModel):
    completed: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


class CleanupManager:
    """Named teardown handlers, run in reverse registration order."""

    def __init__(self) -> None:
        self._handlers: list[tuple[str, CleanupHandler]] = []
        self._hooks_installed = False

    def register(self, name: str, handler: CleanupHandler) -> None:
        """Register a handler. Raises ValueError if the name is taken."""
        if any(existing == name for existing, _ in self._handlers):
            raise ValueError(f"Cleanup handler '{name}' is already registered")
        self._handlers.append((name, handler))

    def unregister(self, name: str) -> bool:
        before = len(self._handlers)
        self._handlers = [(n, h) for n, h in self._handlers if n != name]
        return len(self._handlers) != before

    @property
    def handler_names(self) -> list[str]:
        return [name for name, _ in self._handlers]

    async def cleanup(self) -> CleanupSummary:
        """Run every handler once, newest first. Handlers are cleared afterwards."""
        handlers, self._handlers = self._handlers, []
        summary = CleanupSummary()
        for name, handler in reversed(handlers):
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
                summary.completed.append(name)
            except Exception as e:
                summary.failed[name] = f"{type(e).__name__}: {e}"
                logger.error(f"Cleanup handler '{name}' failed: {e}")
        return summary

    def run_sync(self) -> CleanupSummary | None:
        """Run cleanup from synchronous code such as an atexit hook."""
        if not self._handlers:
            return None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.cleanup())
        logger.warning("run_sync() called inside a running event loop, use cleanup() instead")
        return None

    def install_exit_hooks(self) -> None:
        """Run cleanup at interpreter exit and on SIGTERM."""
        if self._hooks_installed:
            return
        atexit.register(self.run_sync)
        if threading.current_thread() is threading.main_thread():
            # SystemExit unwinds normally, so atexit handlers still run
            signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(128 + signum))
        self._hooks_installed = True
        logger.debug("Exit hooks installed")
