"""
mcpexec Core Data Models

All shared types used across the engine. Besides pydantic, this module only
depends on the exception hierarchy and the env-var policy, so every other
component can import from it.
"""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mcpexec.security.env_policy import ensure_safe_env_vars


# ─── Enums ───────────────────────────────────────────────────

class Language(str, Enum):
    """Target language of a generated wrapper."""
    TYPESCRIPT = "typescript"
    PYTHON = "python"


class SandboxType(str, Enum):
    """Isolation backends, in increasing order of isolation."""
    PROCESS = "process"
    VM = "vm"
    CONTAINER = "container"


class NetworkMode(str, Enum):
    """Egress policy for a sandbox."""
    NONE = "none"
    ALLOWLIST = "allowlist"
    FULL = "full"


class AuditEventType(str, Enum):
    DISCOVERY = "discovery"
    EXECUTION = "execution"
    SECURITY = "security"
    ERROR = "error"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class IssueSeverity(str, Enum):
    """Severity of a static-analysis finding."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResourceKind(str, Enum):
    MEMORY = "memory"
    CPU = "cpu"
    TIME = "time"


class SandboxOperation(str, Enum):
    """Capabilities a piece of code appears to use.

    Produced by the validator and consumed by sandbox selection.
    """
    NETWORK = "network"
    SPAWN = "spawn"
    FILESYSTEM = "filesystem"
    ENVIRONMENT = "environment"
    DYNAMIC_CODE = "dynamic_code"


# ─── Tools ───────────────────────────────────────────────────

class ToolParameter(BaseModel):
    """A single typed parameter of a tool."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    required: bool = True
    default: Any = None
    description: str = ""


class ToolOutput(BaseModel):
    """Output schema of a tool, mapped to a return type by the generator."""
    model_config = ConfigDict(frozen=True)

    type: str = "object"
    description: str = ""
    items: str | None = None


class Tool(BaseModel):
    """An indexed tool schema. Immutable once indexed."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    category: str = "general"
    parameters: tuple[ToolParameter, ...] = ()
    output: ToolOutput = Field(default_factory=ToolOutput)
    source: str | None = None

    @property
    def required_parameters(self) -> list[ToolParameter]:
        return [p for p in self.parameters if p.required]

    @property
    def optional_parameters(self) -> list[ToolParameter]:
        return [p for p in self.parameters if not p.required]


class RelevanceScore(BaseModel):
    """A tool paired with its relevance to one query."""
    model_config = ConfigDict(frozen=True)

    tool: Tool
    score: float = Field(ge=0.0, le=1.0)


# ─── Code Generation ─────────────────────────────────────────

class GeneratedWrapper(BaseModel):
    """Synthesized wrapper source exposing a set of tools."""
    language: Language
    code: str
    estimated_tokens: int = Field(ge=0)
    dependencies: set[str] = Field(default_factory=set)
    tools: list[str] = Field(default_factory=list)


# ─── Validation ──────────────────────────────────────────────

class SecurityIssue(BaseModel):
    """One static-analysis finding."""
    model_config = ConfigDict(frozen=True)

    type: str
    severity: IssueSeverity
    line: int = Field(ge=1)
    column: int = Field(ge=1)
    message: str
    snippet: str = ""
    suggestion: str = ""
    operation: SandboxOperation | None = None

    @property
    def location(self) -> str:
        return f"{self.line}:{self.column}"


class ValidationResult(BaseModel):
    """Outcome of validating one piece of code."""
    model_config = ConfigDict(frozen=True)

    is_secure: bool
    risk_score: int = Field(ge=0, le=100)
    requires_approval: bool
    issues: list[SecurityIssue] = Field(default_factory=list)

    @property
    def operations(self) -> set[SandboxOperation]:
        return {i.operation for i in self.issues if i.operation is not None}

    @property
    def critical_issues(self) -> list[SecurityIssue]:
        return [i for i in self.issues if i.severity == IssueSeverity.CRITICAL]


# ─── Sandbox Configuration ───────────────────────────────────

_MEMORY_RE = re.compile(r"^(\d+)([KMG])?B?$", re.IGNORECASE)
_MEMORY_UNIT_MB = {"K": 1 / 1024, "M": 1, "G": 1024}


def parse_memory_mb(value: int | float | str) -> int:
    """Parse a memory size like 512, "512M" or "1G" into whole megabytes."""
    if isinstance(value, bool):
        raise ValueError("memory must be a number or a size string")
    if isinstance(value, (int, float)):
        return int(value)
    match = _MEMORY_RE.match(value.strip())
    if not match:
        raise ValueError(f"invalid memory size '{value}', expected e.g. 512M or 1G")
    amount, unit = match.groups()
    return max(1, int(int(amount) * _MEMORY_UNIT_MB[(unit or "M").upper()]))


class ResourceLimits(BaseModel):
    """Memory / CPU / wall-clock ceilings for one sandbox run."""
    memory_mb: int = Field(default=512, ge=16, le=16384)
    cpu: float = Field(default=1.0, ge=0.1, le=8.0, description="CPU cores")
    timeout_ms: int = Field(default=30000, ge=100, le=300000)

    @field_validator("memory_mb", mode="before")
    @classmethod
    def _parse_memory(cls, value: Any) -> int:
        return parse_memory_mb(value)


class NetworkPolicy(BaseModel):
    """Egress policy. Defaults to no network at all."""
    mode: NetworkMode = NetworkMode.NONE
    allowed_domains: list[str] = Field(default_factory=list)

    @property
    def allows_egress(self) -> bool:
        return self.mode != NetworkMode.NONE

    def validate_domain(self, url: str) -> tuple[bool, str]:
        """Check a URL against the policy.

        Returns (is_allowed, reason).
        """
        if self.mode == NetworkMode.NONE:
            return False, "Network access is disabled in sandbox"
        if self.mode == NetworkMode.FULL:
            return True, "Unrestricted network policy"

        domain = urlparse(url).hostname or ""
        if not domain:
            return False, f"Invalid URL: {url}"

        for allowed in self.allowed_domains:
            if domain == allowed or domain.endswith(f".{allowed}"):
                return True, f"Domain {domain} is in the allowlist"

        return False, f"Domain {domain} is not in the allowlist: {self.allowed_domains}"


class SandboxConfig(BaseModel):
    """Sandbox configuration.

    Credential-shaped names in allowed_env_vars are rejected with
    SecurityConfigError when the model is constructed.
    """
    type: SandboxType = SandboxType.PROCESS
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    network_policy: NetworkPolicy = Field(default_factory=NetworkPolicy)
    allowed_env_vars: list[str] = Field(default_factory=list)

    @field_validator("allowed_env_vars")
    @classmethod
    def _reject_secrets(cls, value: list[str]) -> list[str]:
        return ensure_safe_env_vars(value)


# ─── Execution ───────────────────────────────────────────────

class ExecutionMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_time_ms: float = 0.0
    memory_used_mb: float = 0.0
    tokens_in_summary: int = 0
    raw_output_tokens: int = 0


class ExecutionResult(BaseModel):
    """The only payload handed back to callers. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    success: bool
    summary: str | None = None
    error: str | None = None
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    pii_tokenized: bool = False
    request_id: str | None = None
    sandbox_type: SandboxType | None = None
    risk_score: int | None = None
    tools: list[str] = Field(default_factory=list)
    issues: list[SecurityIssue] = Field(default_factory=list)


class ExecutionOptions(BaseModel):
    """Per-request knobs accepted from callers."""
    max_tools: int = Field(default=5, ge=1, le=50)
    timeout_ms: int | None = Field(default=None, ge=100, le=300000)
    script: str | None = None


class SandboxSelection(BaseModel):
    """Inputs to backend selection."""
    risk_score: int = Field(default=0, ge=0, le=100)
    code_type: Language = Language.TYPESCRIPT
    operations: set[SandboxOperation] = Field(default_factory=set)


# ─── Audit ───────────────────────────────────────────────────

class AuditLogEntry(BaseModel):
    """One compliance record. Append-only, never edited or deleted."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    type: AuditEventType
    severity: AuditSeverity
    message: str
    metadata: dict[str, Any] | None = None
    sequence: int = 0
    hash: str = ""
    previous_hash: str = ""


# ─── Sandbox Tracking ────────────────────────────────────────

SANDBOX_LABEL = "mcpexec.sandbox"
SANDBOX_LABEL_VALUE = "true"


class TrackedSandbox(BaseModel):
    """A live sandbox, registered from creation until teardown completes."""
    id: str = Field(default_factory=lambda: f"sb-{uuid.uuid4().hex[:8]}")
    backend: SandboxType
    language: Language
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    labels: dict[str, str] = Field(default_factory=dict)
    container_id: str | None = None

    def model_post_init(self, __context: Any) -> None:
        self.labels.setdefault(SANDBOX_LABEL, SANDBOX_LABEL_VALUE)
        self.labels.setdefault(f"{SANDBOX_LABEL}.id", self.id)
        self.labels.setdefault(f"{SANDBOX_LABEL}.language", self.language.value)
        self.labels.setdefault(f"{SANDBOX_LABEL}.created", self.created_at.isoformat())
