"""
mcpexec: Secure Code Execution for MCP Tools

Turns a free-text intent into a typed wrapper over the most relevant tools,
scores it for risk, runs it in a process, RestrictedPython or container
sandbox, and returns a short PII-scrubbed summary instead of raw tool output.

Usage:
    from mcpexec import ExecutionOrchestrator

    async with ExecutionOrchestrator() as engine:
        result = await engine.execute(
            "read package.json and analyze dependencies",
            language="typescript",
        )
        print(result.summary, result.metrics.tokens_in_summary)
"""

__version__ = "0.3.0"

from mcpexec.audit.logger import AuditLogger
from mcpexec.codegen.generator import CodeGenerator
from mcpexec.config import EngineConfig
from mcpexec.core.models import (
    ExecutionMetrics,
    ExecutionOptions,
    ExecutionResult,
    GeneratedWrapper,
    Language,
    NetworkPolicy,
    ResourceLimits,
    SandboxConfig,
    SandboxType,
    Tool,
    ValidationResult,
)
from mcpexec.discovery.indexer import ToolIndexer
from mcpexec.discovery.scorer import RelevanceScorer
from mcpexec.orchestrator import ExecutionOrchestrator
from mcpexec.sandbox.manager import SandboxManager
from mcpexec.security.pii import PIITokenizer
from mcpexec.security.validator import CodeValidator

__all__ = [
    # Main API
    "ExecutionOrchestrator",
    "EngineConfig",
    "__version__",
    # Models
    "ExecutionMetrics",
    "ExecutionOptions",
    "ExecutionResult",
    "GeneratedWrapper",
    "Language",
    "NetworkPolicy",
    "ResourceLimits",
    "SandboxConfig",
    "SandboxType",
    "Tool",
    "ValidationResult",
    # Components
    "AuditLogger",
    "CodeGenerator",
    "CodeValidator",
    "PIITokenizer",
    "RelevanceScorer",
    "SandboxManager",
    "ToolIndexer",
]
