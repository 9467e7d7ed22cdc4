"""
mcpexec Workspace Manager

Each request gets an isolated directory under the workspace root. Sessions
are created on demand, removed explicitly, or reaped once their last
modification is older than a threshold. Filesystem work runs in a thread so
the event loop never blocks on disk.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import time
from pathlib import Path

from mcpexec.exceptions import WorkspaceError
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.workspace")

_SESSION_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class WorkspaceManager:
    """Session directories under one root."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def get_session_path(self, session_id: str) -> Path:
        if not _SESSION_ID.match(session_id):
            raise WorkspaceError(session_id, "invalid session id")
        return self.root / session_id

    def session_exists(self, session_id: str) -> bool:
        return self.get_session_path(session_id).is_dir()

    async def create_session(self, session_id: str) -> Path:
        """Create the session directory. Fails if it already exists."""
        path = self.get_session_path(session_id)

        def create() -> None:
            self.root.mkdir(parents=True, exist_ok=True)
            path.mkdir(mode=0o700)

        try:
            await asyncio.to_thread(create)
        except FileExistsError:
            raise WorkspaceError(session_id, "session already exists") from None
        logger.debug(f"Created workspace session {session_id}")
        return path

    async def write_file(self, session_id: str, name: str, content: str) -> Path:
        """Write a file directly inside a session directory."""
        session = self.get_session_path(session_id)
        target = session / Path(name).name
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        return target

    async def cleanup_session(self, session_id: str) -> bool:
        """Remove a session. Idempotent; returns whether anything was removed."""
        path = self.get_session_path(session_id)
        if not path.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)
        logger.debug(f"Removed workspace session {session_id}")
        return True

    async def cleanup_old_sessions(self, max_age_ms: int) -> int:
        """Remove sessions whose directory was last modified more than max_age_ms ago."""

        def purge() -> int:
            if not self.root.is_dir():
                return 0
            cutoff = time.time() - max_age_ms / 1000
            removed = 0
            for entry in self.root.iterdir():
                try:
                    if entry.is_dir() and entry.stat().st_mtime < cutoff:
                        shutil.rmtree(entry)
                        removed += 1
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.warning(f"Could not remove old session {entry.name}: {e}")
            return removed

        removed = await asyncio.to_thread(purge)
        if removed:
            logger.info(f"Removed {removed} old workspace sessions")
        return removed

    def list_sessions(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def get_stats(self) -> dict:
        sessions = self.list_sessions()
        size = 0
        for name in sessions:
            for file in (self.root / name).rglob("*"):
                try:
                    if file.is_file():
                        size += file.stat().st_size
                except OSError:
                    continue
        return {
            "root": str(self.root),
            "total_sessions": len(sessions),
            "total_bytes": size,
        }
