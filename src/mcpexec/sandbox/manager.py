"""
mcpexec Sandbox Manager

Owns the three backends and the shared active-sandbox registry, and picks a
backend per execution with select_sandbox_level(), a pure policy function:

    network / spawn capable code          -> container
    risk >= vm_max_risk                   -> container
    risk >= process_max_risk              -> vm (Python) / container (TypeScript)
    otherwise                             -> process

Callers never branch on backend identity; they hand code to execute() and
get an ExecutionResult back, whatever happened inside.
"""

from __future__ import annotations

from typing import Any, Callable

from mcpexec.config import ContainerSettings, OutputSettings, SandboxPolicy
from mcpexec.core.models import (
    ExecutionResult,
    Language,
    NetworkMode,
    SandboxConfig,
    SandboxOperation,
    SandboxSelection,
    SandboxType,
    ValidationResult,
)
from mcpexec.exceptions import ConfigError
from mcpexec.logging import get_logger
from mcpexec.sandbox.base import SandboxBackend, SandboxRegistry
from mcpexec.sandbox.container import ContainerSandbox
from mcpexec.sandbox.process import ProcessSandbox
from mcpexec.sandbox.vm import VMSandbox
from mcpexec.security.env_policy import is_secret_name

logger = get_logger("mcpexec.sandbox.manager")

CONTAINER_OPERATIONS = frozenset({SandboxOperation.NETWORK, SandboxOperation.SPAWN})


def select_sandbox_level(selection: SandboxSelection, policy: SandboxPolicy | None = None) -> SandboxType:
    """Pick the isolation backend for a piece of code."""
    policy = policy or SandboxPolicy()
    if selection.operations & CONTAINER_OPERATIONS:
        return SandboxType.CONTAINER
    if selection.risk_score >= policy.vm_max_risk:
        return SandboxType.CONTAINER
    if selection.risk_score >= policy.process_max_risk:
        # The vm backend only runs Python
        return SandboxType.VM if selection.code_type == Language.PYTHON else SandboxType.CONTAINER
    return SandboxType.PROCESS


class SandboxManager:
    """Executes code in the right backend and never raises for a failed run."""

    def __init__(
        self,
        config: SandboxConfig | None = None,
        policy: SandboxPolicy | None = None,
        output: OutputSettings | None = None,
        container: ContainerSettings | None = None,
        docker_client: Any = None,
        registry: SandboxRegistry | None = None,
    ) -> None:
        self.config = config or SandboxConfig()
        problems = self.validate_config(self.config)
        if problems:
            raise ConfigError(f"Invalid sandbox configuration: {'; '.join(problems)}", problems=problems)

        self.policy = policy or SandboxPolicy()
        self.registry = registry or SandboxRegistry()
        output = output or OutputSettings()
        self._container = ContainerSandbox(
            self.config, self.registry, output, settings=container, client=docker_client
        )
        self._backends: dict[SandboxType, SandboxBackend] = {
            SandboxType.PROCESS: ProcessSandbox(self.config, self.registry, output),
            SandboxType.VM: VMSandbox(self.config, self.registry, output),
            SandboxType.CONTAINER: self._container,
        }
        self._executions: dict[SandboxType, int] = {t: 0 for t in SandboxType}

    @staticmethod
    def validate_config(config: SandboxConfig) -> list[str]:
        """Problems with a sandbox configuration (empty if it is usable)."""
        problems: list[str] = []
        limits = config.resource_limits
        if not 0.1 <= limits.cpu <= 8:
            problems.append(f"cpu must be between 0.1 and 8 cores, got {limits.cpu}")
        if limits.memory_mb < 16:
            problems.append(f"memory must be at least 16MB, got {limits.memory_mb}MB")
        if not 100 <= limits.timeout_ms <= 300000:
            problems.append(f"timeout must be between 100ms and 5 minutes, got {limits.timeout_ms}ms")

        policy = config.network_policy
        if policy.mode == NetworkMode.ALLOWLIST and not policy.allowed_domains:
            problems.append("allowlist network mode needs at least one allowed domain")
        if policy.mode == NetworkMode.NONE and policy.allowed_domains:
            problems.append("allowed_domains given but network mode is none")

        secrets = [name for name in config.allowed_env_vars if is_secret_name(name)]
        if secrets:
            problems.append(f"secret-shaped env vars: {', '.join(secrets)}")
        return problems

    def select_backend(self, selection: SandboxSelection) -> SandboxType:
        return select_sandbox_level(selection, self.policy)

    def backend(self, sandbox_type: SandboxType | str) -> SandboxBackend:
        return self._backends[SandboxType(sandbox_type)]

    async def execute(
        self,
        code: str,
        language: Language | str,
        sandbox_type: SandboxType | str | None = None,
        timeout_ms: int | None = None,
        redact: Callable[[str], str] | None = None,
    ) -> ExecutionResult:
        """Run code in the given backend (the configured type by default)."""
        chosen = SandboxType(sandbox_type or self.config.type)
        self._executions[chosen] += 1
        try:
            return await self._backends[chosen].execute(code, language, timeout_ms=timeout_ms, redact=redact)
        except Exception as e:
            # execute() already converts failures; this only catches bad arguments
            logger.exception("Sandbox manager caught an unexpected error", extra={"sandbox_type": chosen.value})
            return ExecutionResult(success=False, error=f"{type(e).__name__}: {e}", sandbox_type=chosen)

    async def execute_validated(
        self,
        code: str,
        language: Language | str,
        validation: ValidationResult,
        timeout_ms: int | None = None,
        redact: Callable[[str], str] | None = None,
    ) -> ExecutionResult:
        """Run code in the backend its validation result calls for."""
        selection = SandboxSelection(
            risk_score=validation.risk_score,
            code_type=Language(language),
            operations=validation.operations,
        )
        return await self.execute(code, language, self.select_backend(selection), timeout_ms, redact)

    @property
    def active_count(self) -> int:
        return self.registry.count()

    async def emergency_cleanup(self) -> int:
        """Force-remove containers still owned by this manager."""
        return await self._container.emergency_cleanup()

    def get_stats(self) -> dict:
        return {
            "active_sandboxes": self.registry.count(),
            "active_by_type": {t.value: self.registry.count(t) for t in SandboxType},
            "executions_by_type": {t.value: n for t, n in self._executions.items()},
            "tracked_containers": len(self._container.active_containers),
        }
