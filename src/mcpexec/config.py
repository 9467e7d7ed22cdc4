"""
mcpexec Engine Configuration

Every tunable of the engine lives here as a pydantic model with a sensible
default. The risk weights, backend-selection thresholds and the token
divisor are empirical values, so they are configuration rather than
constants baked into the components that use them.

Environment overrides (read by EngineConfig.from_env):
    MCPEXEC_TOOLS_DIR            directory of tool schema JSON documents
    MCPEXEC_AUDIT_LOG            audit log file (JSON lines)
    MCPEXEC_WORKSPACE_DIR        root for per-request workspace sessions
    MCPEXEC_MAX_TOOLS            tools selected per request
    MCPEXEC_SANDBOX_TIMEOUT_MS   default wall-clock timeout
    MCPEXEC_SANDBOX_MEMORY_MB    default memory ceiling (accepts 512M / 1G)
    MCPEXEC_SANDBOX_ENV          comma-separated host env vars passed through
    MCPEXEC_CLEANUP_ENABLED      run the container cleanup job (1/0)
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field

from mcpexec.core.models import Language, ResourceLimits, SandboxConfig


class ValidatorSettings(BaseModel):
    """Risk increments and the approval threshold of the code validator."""
    critical_weight: int = Field(default=80, ge=0, le=100)
    suspicious_weight: int = Field(default=15, ge=0, le=100)
    safety_threshold: int = Field(default=70, ge=1, le=100)


class SandboxPolicy(BaseModel):
    """Risk bands for backend selection.

    risk < process_max_risk -> process, risk < vm_max_risk -> vm,
    anything above (or network/spawn capable code) -> container.
    """
    process_max_risk: int = Field(default=30, ge=0, le=100)
    vm_max_risk: int = Field(default=60, ge=0, le=100)


class OutputSettings(BaseModel):
    """How raw sandbox output is condensed into a summary."""
    chars_per_token: int = Field(default=4, ge=1)
    max_summary_chars: int = Field(default=2000, ge=100)
    truncated_head_chars: int = Field(default=1800, ge=50)


class CleanupJobSettings(BaseModel):
    enabled: bool = True
    interval_ms: int = Field(default=60000, ge=1000)
    max_age_seconds: float = Field(default=3600.0, ge=0)
    max_per_run: int = Field(default=100, ge=1)


class ContainerSettings(BaseModel):
    """Images and hardening knobs of the container backend."""
    images: dict[Language, str] = Field(
        default_factory=lambda: {
            Language.PYTHON: "python:3.12-alpine",
            Language.TYPESCRIPT: "node:22-alpine",
        }
    )
    pull_images: bool = True
    max_start_attempts: int = Field(default=3, ge=1, le=10)
    pids_limit: int = Field(default=64, ge=8)
    user: str = "65534:65534"


class EngineConfig(BaseModel):
    """Top-level configuration handed to the orchestrator."""
    tools_dir: Path = Path("tools")
    audit_log_path: Path = Path("logs/mcp-audit.log")
    workspace_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "mcpexec-workspaces"
    )
    max_tools: int = Field(default=5, ge=1, le=50)
    min_relevance: float = Field(default=0.05, ge=0.0, le=1.0)
    workspace_max_age_ms: int = Field(default=24 * 60 * 60 * 1000, ge=0)
    # atexit and SIGTERM teardown; meant for processes that own the engine, like the CLI
    install_exit_hooks: bool = False

    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    validator: ValidatorSettings = Field(default_factory=ValidatorSettings)
    policy: SandboxPolicy = Field(default_factory=SandboxPolicy)
    output: OutputSettings = Field(default_factory=OutputSettings)
    cleanup_job: CleanupJobSettings = Field(default_factory=CleanupJobSettings)
    container: ContainerSettings = Field(default_factory=ContainerSettings)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build a config from MCPEXEC_* environment variables."""
        config = cls()
        env = os.environ

        if "MCPEXEC_TOOLS_DIR" in env:
            config.tools_dir = Path(env["MCPEXEC_TOOLS_DIR"])
        if "MCPEXEC_AUDIT_LOG" in env:
            config.audit_log_path = Path(env["MCPEXEC_AUDIT_LOG"])
        if "MCPEXEC_WORKSPACE_DIR" in env:
            config.workspace_dir = Path(env["MCPEXEC_WORKSPACE_DIR"])
        if "MCPEXEC_MAX_TOOLS" in env:
            config.max_tools = int(env["MCPEXEC_MAX_TOOLS"])

        limits = config.sandbox.resource_limits.model_dump()
        if "MCPEXEC_SANDBOX_TIMEOUT_MS" in env:
            limits["timeout_ms"] = int(env["MCPEXEC_SANDBOX_TIMEOUT_MS"])
        if "MCPEXEC_SANDBOX_MEMORY_MB" in env:
            limits["memory_mb"] = env["MCPEXEC_SANDBOX_MEMORY_MB"]

        env_vars = config.sandbox.allowed_env_vars
        if env.get("MCPEXEC_SANDBOX_ENV"):
            env_vars = [v.strip() for v in env["MCPEXEC_SANDBOX_ENV"].split(",") if v.strip()]

        config.sandbox = SandboxConfig(
            type=config.sandbox.type,
            resource_limits=ResourceLimits(**limits),
            network_policy=config.sandbox.network_policy,
            allowed_env_vars=env_vars,
        )

        if "MCPEXEC_CLEANUP_ENABLED" in env:
            config.cleanup_job.enabled = env["MCPEXEC_CLEANUP_ENABLED"].lower() in ("1", "true", "yes")

        return config
