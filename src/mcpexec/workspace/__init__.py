"""
mcpexec Workspaces

- WorkspaceManager: per-session scratch directories, reaped by age
- CleanupManager: named teardown handlers run in reverse registration order
"""

from mcpexec.workspace.cleanup import CleanupManager
from mcpexec.workspace.manager import WorkspaceManager

__all__ = ["CleanupManager", "WorkspaceManager"]
