"""
mcpexec Sandboxed Execution

Three isolation backends behind one contract, execute(code, language):

- ProcessSandbox: child interpreter with scrubbed env and private HOME/TMPDIR
- VMSandbox: RestrictedPython in a forked child with injected globals only
- ContainerSandbox: labeled, hardened docker container per execution

SandboxManager selects between them by risk; ContainerCleanupJob reclaims
labeled containers that outlived their request.
"""

from mcpexec.sandbox.base import SandboxBackend, SandboxRegistry, SandboxRun
from mcpexec.sandbox.cleanup_job import ContainerCleanupJob
from mcpexec.sandbox.container import ContainerSandbox
from mcpexec.sandbox.limiter import ResourceLimiter
from mcpexec.sandbox.manager import SandboxManager, select_sandbox_level
from mcpexec.sandbox.process import ProcessSandbox
from mcpexec.sandbox.vm import VMSandbox

__all__ = [
    "ContainerCleanupJob",
    "ContainerSandbox",
    "ProcessSandbox",
    "ResourceLimiter",
    "SandboxBackend",
    "SandboxManager",
    "SandboxRegistry",
    "SandboxRun",
    "VMSandbox",
    "select_sandbox_level",
]
