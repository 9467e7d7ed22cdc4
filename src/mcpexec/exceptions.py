"""
mcpexec Custom Exceptions

Structured exception hierarchy for the execution engine.
All mcpexec-specific exceptions inherit from McpExecError.

Exception hierarchy:
    McpExecError
    +-- SecurityConfigError       (unsafe sandbox configuration, raised at construction)
    +-- ConfigError               (invalid engine/sandbox configuration values)
    +-- SchemaError               (malformed tool schema document)
    +-- ValidationBlockedError    (static validation required approval that was not granted)
    +-- ResourceLimitError        (memory / cpu / time ceiling breached)
    +-- SandboxError              (failure inside a sandbox backend)
    |   +-- SandboxTimeoutError   (wall-clock timeout, backend was killed)
    |   +-- UnsupportedLanguageError
    |   +-- InfrastructureError   (backend could not be started after retries)
    +-- AuditWriteError           (durable audit append failed)
    +-- WorkspaceError            (session directory conflicts)

Only construction-time configuration errors are meant to reach callers.
Everything raised during a request is converted into a failed
ExecutionResult at the sandbox manager / orchestrator boundary.
"""

from __future__ import annotations


class McpExecError(Exception):
    """Base exception for all mcpexec errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SecurityConfigError(McpExecError):
    """Raised when a sandbox configuration would leak secrets or privileges.

    Deliberately not a ValueError so pydantic validators let it propagate
    unchanged instead of wrapping it into a ValidationError.
    """

    def __init__(self, message: str, offending: list[str] | None = None, details: dict | None = None):
        super().__init__(
            message,
            details={"offending": offending or [], **(details or {})},
        )
        self.offending = offending or []


class ConfigError(McpExecError):
    """Raised for invalid configuration values."""

    def __init__(self, message: str, problems: list[str] | None = None, details: dict | None = None):
        super().__init__(
            message,
            details={"problems": problems or [], **(details or {})},
        )
        self.problems = problems or []


class SchemaError(McpExecError):
    """Raised when a tool schema document cannot be interpreted."""

    def __init__(self, message: str, source: str | None = None, details: dict | None = None):
        super().__init__(
            message if source is None else f"{source}: {message}",
            details={"source": source, **(details or {})},
        )
        self.source = source


class ValidationBlockedError(McpExecError):
    """Raised when generated code needs approval and none was granted."""

    def __init__(self, risk_score: int, issues: list[str] | None = None, details: dict | None = None):
        super().__init__(
            f"Code requires approval (risk score {risk_score}) and was not approved",
            details={"risk_score": risk_score, "issues": issues or [], **(details or {})},
        )
        self.risk_score = risk_score
        self.issues = issues or []


class ResourceLimitError(McpExecError):
    """Raised when a resource ceiling is breached."""

    def __init__(self, kind: str, message: str | None = None, details: dict | None = None):
        super().__init__(
            message or f"Resource limit exceeded: {kind}",
            details={"kind": kind, **(details or {})},
        )
        self.kind = kind


class SandboxError(McpExecError):
    """Base exception for failures inside a sandbox backend."""

    def __init__(self, backend: str, message: str, details: dict | None = None):
        super().__init__(
            message,
            details={"backend": backend, **(details or {})},
        )
        self.backend = backend


class SandboxTimeoutError(SandboxError):
    """Raised when a sandbox exceeds its wall-clock timeout."""

    def __init__(self, backend: str, timeout_ms: int, details: dict | None = None):
        super().__init__(
            backend,
            f"Execution timed out after {timeout_ms}ms",
            details={"timeout_ms": timeout_ms, **(details or {})},
        )
        self.timeout_ms = timeout_ms


class UnsupportedLanguageError(SandboxError):
    """Raised when a backend cannot run the requested language."""

    def __init__(self, backend: str, language: str, details: dict | None = None):
        super().__init__(
            backend,
            f"Backend '{backend}' does not support language '{language}'",
            details={"language": language, **(details or {})},
        )
        self.language = language


class InfrastructureError(SandboxError):
    """Raised when a backend cannot be brought up."""

    pass


class AuditWriteError(McpExecError):
    """Raised when an audit entry cannot be durably written."""

    pass


class WorkspaceError(McpExecError):
    """Raised for workspace session conflicts and invalid session ids."""

    def __init__(self, session_id: str, message: str, details: dict | None = None):
        super().__init__(
            f"Workspace '{session_id}': {message}",
            details={"session_id": session_id, **(details or {})},
        )
        self.session_id = session_id
