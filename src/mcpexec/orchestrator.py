"""
mcpexec Execution Orchestrator

The public entry point. Each execute() call runs five phases strictly in
order and always returns an ExecutionResult:

1. Discovery: rank indexed tools against the intent, keep the top N
2. Generation: synthesize a typed wrapper exposing those tools
3. Validation: static risk scoring; code that needs approval is blocked
   unless an approval callback grants it
4. Execution: the Sandbox Manager runs the wrapper in the backend the
   risk score calls for, under the Resource Limiter
5. Result processing: metrics, PII bookkeeping, anomaly checks. The
   request's PII tokenizer already ran inside the backend, over the full
   output and before truncation

Every phase writes to the audit trail, including the failing ones.
Nothing is shared between requests except the tool index, the audit log
and the active-sandbox registry.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from mcpexec.audit.anomaly import AnomalyDetector
from mcpexec.audit.logger import AuditLogger
from mcpexec.codegen.generator import CodeGenerator
from mcpexec.config import EngineConfig
from mcpexec.core.models import (
    AuditSeverity,
    ExecutionMetrics,
    ExecutionOptions,
    ExecutionResult,
    GeneratedWrapper,
    Language,
    SandboxSelection,
    SandboxType,
    ValidationResult,
)
from mcpexec.discovery.indexer import ToolIndexer
from mcpexec.discovery.scorer import RelevanceScorer
from mcpexec.exceptions import AuditWriteError, ValidationBlockedError
from mcpexec.logging import get_logger
from mcpexec.sandbox.base import estimate_tokens
from mcpexec.sandbox.cleanup_job import ContainerCleanupJob
from mcpexec.sandbox.manager import SandboxManager
from mcpexec.security.pii import PIITokenizer
from mcpexec.security.validator import CodeValidator
from mcpexec.workspace.cleanup import CleanupManager
from mcpexec.workspace.manager import WorkspaceManager

logger = get_logger("mcpexec.orchestrator")

ApprovalCallback = Callable[[GeneratedWrapper, ValidationResult], bool | Awaitable[bool]]

WRAPPER_FILES = {Language.PYTHON: "wrapper.py", Language.TYPESCRIPT: "wrapper.ts"}


class ExecutionOrchestrator:
    """Runs intents through discovery, generation, validation, execution and result processing.

    Components are built from the config unless injected, so several
    orchestrators can run side by side with their own state.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        indexer: ToolIndexer | None = None,
        scorer: RelevanceScorer | None = None,
        generator: CodeGenerator | None = None,
        validator: CodeValidator | None = None,
        sandbox_manager: SandboxManager | None = None,
        audit_logger: AuditLogger | None = None,
        workspace: WorkspaceManager | None = None,
        cleanup_manager: CleanupManager | None = None,
        cleanup_job: ContainerCleanupJob | None = None,
        anomaly_detector: AnomalyDetector | None = None,
        approval_callback: ApprovalCallback | None = None,
        docker_client: Any = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Engine configuration. Defaults to EngineConfig().
            approval_callback: Called with (wrapper, validation) when validation
                requires approval. May be sync or async. Without one, such code
                is blocked.
            docker_client: Optional docker client shared by the container
                backend and the cleanup job.

        Raises:
            ConfigError: If the sandbox configuration is unusable.
            SecurityConfigError: If the sandbox config passes secret env vars.
        """
        self.config = config or EngineConfig()
        self._indexer = indexer or ToolIndexer()
        self._scorer = scorer or RelevanceScorer()
        self._generator = generator or CodeGenerator(self.config.output)
        self._validator = validator or CodeValidator(self.config.validator)
        self._sandbox = sandbox_manager or SandboxManager(
            self.config.sandbox,
            policy=self.config.policy,
            output=self.config.output,
            container=self.config.container,
            docker_client=docker_client,
        )
        self._audit = audit_logger or AuditLogger(self.config.audit_log_path)
        self._workspace = workspace or WorkspaceManager(self.config.workspace_dir)
        self._cleanup = cleanup_manager or CleanupManager()
        self._cleanup_job = cleanup_job or ContainerCleanupJob(docker_client, self.config.cleanup_job)
        self._anomalies = anomaly_detector or AnomalyDetector()
        self._approval_callback = approval_callback

        self._initialized = False
        self._stats: dict[str, Any] = {
            "requests": 0,
            "succeeded": 0,
            "failed": 0,
            "blocked": 0,
            "by_sandbox_type": {t.value: 0 for t in SandboxType},
            "pii_tokens": {},
        }

    @property
    def indexer(self) -> ToolIndexer:
        return self._indexer

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit

    @property
    def sandbox_manager(self) -> SandboxManager:
        return self._sandbox

    # ─── Lifecycle ───────────────────────────────────────────

    async def initialize(self) -> None:
        """Load the tool directory, start background cleanup, wire teardown. Idempotent."""
        if self._initialized:
            return
        count = await asyncio.to_thread(self._indexer.load_directory, self.config.tools_dir, True)

        if self.config.cleanup_job.enabled:
            self._cleanup_job.start()
            self._cleanup.register("cleanup-job", self._cleanup_job.stop)

        self._cleanup.register("workspaces", self._purge_workspaces)
        self._cleanup.register("sandboxes", self._sandbox.emergency_cleanup)
        if self.config.install_exit_hooks:
            self._cleanup.install_exit_hooks()
        self._initialized = True
        logger.info(f"Orchestrator initialized with {count} tools")

    async def shutdown(self) -> None:
        """Run registered teardown handlers, newest first."""
        summary = await self._cleanup.cleanup()
        if summary.failed:
            logger.warning(f"Shutdown finished with failed handlers: {sorted(summary.failed)}")
        self._initialized = False

    async def __aenter__(self) -> ExecutionOrchestrator:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    async def _purge_workspaces(self) -> int:
        return await self._workspace.cleanup_old_sessions(self.config.workspace_max_age_ms)

    # ─── Pipeline ────────────────────────────────────────────

    async def execute(
        self,
        intent: str,
        language: Language | str = Language.TYPESCRIPT,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Run one intent through all five phases.

        Never raises for a failed run: validation blocks, sandbox errors,
        timeouts and internal errors all come back as success=False.
        """
        options = options or ExecutionOptions()
        max_tools = options.max_tools if "max_tools" in options.model_fields_set else self.config.max_tools
        request_id = f"req-{uuid.uuid4().hex[:8]}"
        self._stats["requests"] += 1
        phase = "discovery"
        session_created = False

        try:
            language = Language(language)

            # 1. Discovery
            scores = self._scorer.filter_by_threshold(
                self._scorer.score_tools(self._indexer.all_tools(), intent),
                self.config.min_relevance,
            )
            tools = [s.tool for s in scores[:max_tools]]
            tool_names = [t.name for t in tools]
            await self._audit.log_discovery(
                intent, tool_names,
                {"request_id": request_id, "phase": phase, "indexed_tools": len(self._indexer)},
            )
            if not tools:
                await self._audit.log_error(
                    f"No relevant tools found for intent: {intent[:80]}",
                    {"request_id": request_id, "phase": phase},
                )
                return self._finish(ExecutionResult(
                    success=False,
                    error="No relevant tools found for intent",
                    request_id=request_id,
                ))

            # 2. Code generation
            phase = "generation"
            wrapper = self._generator.generate(tools, language, script=options.script)
            await self._audit.log_execution(
                f"Generated {language.value} wrapper for {len(tools)} tools",
                metadata={
                    "request_id": request_id,
                    "phase": phase,
                    "tools": tool_names,
                    "estimated_tokens": wrapper.estimated_tokens,
                    "dependencies": sorted(wrapper.dependencies),
                },
            )

            # 3. Security validation
            phase = "validation"
            validation = await asyncio.to_thread(self._validator.validate, wrapper.code)
            await self._audit.log_security(
                AuditSeverity.INFO if validation.is_secure else AuditSeverity.WARNING,
                f"Validation: risk score {validation.risk_score}, {len(validation.issues)} issues",
                {
                    "request_id": request_id,
                    "phase": phase,
                    "risk_score": validation.risk_score,
                    "is_secure": validation.is_secure,
                    "requires_approval": validation.requires_approval,
                    "issues": [f"{i.type}@{i.location}" for i in validation.issues],
                },
            )
            if validation.requires_approval:
                try:
                    await self._require_approval(wrapper, validation)
                except ValidationBlockedError as e:
                    return await self._blocked(request_id, e, validation, tool_names)

            # 4. Sandboxed execution
            phase = "execution"
            await self._workspace.create_session(request_id)
            session_created = True
            await self._workspace.write_file(request_id, WRAPPER_FILES[language], wrapper.code)

            sandbox_type = self._sandbox.select_backend(SandboxSelection(
                risk_score=validation.risk_score,
                code_type=language,
                operations=validation.operations,
            ))
            logger.info(
                f"Executing in {sandbox_type.value} sandbox",
                extra={"request_id": request_id, "phase": phase, "risk_score": validation.risk_score},
            )
            started = time.monotonic()
            tokenizer = PIITokenizer()
            raw = await self._sandbox.execute(
                wrapper.code, language, sandbox_type,
                timeout_ms=options.timeout_ms, redact=tokenizer.tokenize,
            )
            elapsed_ms = (time.monotonic() - started) * 1000
            self._stats["by_sandbox_type"][sandbox_type.value] += 1

            # 5. Result processing
            phase = "result"
            result = await self._process_result(
                raw, tokenizer, request_id, sandbox_type, validation, tool_names, elapsed_ms
            )
            return self._finish(result)

        except Exception as e:
            logger.exception(
                f"Pipeline failed in {phase} phase",
                extra={"request_id": request_id, "phase": phase},
            )
            try:
                await self._audit.log_error(e, {"request_id": request_id, "phase": phase})
            except AuditWriteError as audit_error:
                logger.error(f"Could not audit pipeline failure: {audit_error}", extra={"request_id": request_id})
            return self._finish(ExecutionResult(
                success=False,
                error=f"{phase} failed: {e}",
                request_id=request_id,
            ))
        finally:
            if session_created:
                try:
                    await self._workspace.cleanup_session(request_id)
                except OSError as e:
                    logger.warning(f"Workspace cleanup failed: {e}", extra={"request_id": request_id})

    async def _require_approval(self, wrapper: GeneratedWrapper, validation: ValidationResult) -> None:
        """Ask the approval callback; raise ValidationBlockedError unless it grants."""
        approved = False
        if self._approval_callback is not None:
            decision = self._approval_callback(wrapper, validation)
            if inspect.isawaitable(decision):
                decision = await decision
            approved = bool(decision)
        if not approved:
            raise ValidationBlockedError(
                validation.risk_score, [f"{i.type}@{i.location}" for i in validation.issues]
            )

    async def _blocked(
        self,
        request_id: str,
        blocked: ValidationBlockedError,
        validation: ValidationResult,
        tool_names: list[str],
    ) -> ExecutionResult:
        self._stats["blocked"] += 1
        critical = validation.critical_issues
        reasons = "; ".join(f"{i.message} at {i.location}" for i in (critical or validation.issues)[:5])
        await self._audit.log_security(
            AuditSeverity.CRITICAL if critical else AuditSeverity.ERROR,
            f"Execution blocked: {blocked}",
            {
                "request_id": request_id,
                "phase": "validation",
                "blocked": True,
                "critical_issues": len(critical),
                **blocked.details,
            },
        )
        logger.warning(
            "Execution blocked pending approval",
            extra={"request_id": request_id, "phase": "validation", "risk_score": validation.risk_score},
        )
        return self._finish(ExecutionResult(
            success=False,
            error=f"Security validation failed (risk score {validation.risk_score}): {reasons}",
            request_id=request_id,
            risk_score=validation.risk_score,
            tools=tool_names,
            issues=validation.issues,
        ))

    async def _process_result(
        self,
        raw: ExecutionResult,
        tokenizer: PIITokenizer,
        request_id: str,
        sandbox_type: SandboxType,
        validation: ValidationResult,
        tool_names: list[str],
        elapsed_ms: float,
    ) -> ExecutionResult:
        """Assemble the caller-facing result from already-redacted sandbox output.

        The backend ran the tokenizer over the full output before truncating
        it. pii_detected covers everything the tokenizer saw plus anything
        still visible in what came back; pii_tokenized only holds when
        nothing is still visible.
        """
        summary, error = raw.summary, raw.error
        leaked = any(tokenizer.contains_pii(text) for text in (summary, error) if text)
        if leaked:
            logger.warning(
                "Sandbox output still contains PII after tokenization",
                extra={"request_id": request_id, "sandbox_type": sandbox_type.value},
            )
        pii_detected = tokenizer.token_count > 0 or leaked
        pii_tokenized = pii_detected and not leaked
        for pii_type, count in tokenizer.get_token_count_by_type().items():
            self._stats["pii_tokens"][pii_type] = self._stats["pii_tokens"].get(pii_type, 0) + count

        metrics = ExecutionMetrics(
            execution_time_ms=raw.metrics.execution_time_ms or elapsed_ms,
            memory_used_mb=raw.metrics.memory_used_mb,
            tokens_in_summary=estimate_tokens(summary or "", self.config.output),
            raw_output_tokens=raw.metrics.raw_output_tokens,
        )
        result = ExecutionResult(
            success=raw.success,
            summary=summary,
            error=error,
            metrics=metrics,
            pii_tokenized=pii_tokenized,
            request_id=request_id,
            sandbox_type=sandbox_type,
            risk_score=validation.risk_score,
            tools=tool_names,
            issues=validation.issues,
        )

        await self._audit.log_execution(
            f"Execution {'succeeded' if result.success else 'failed'} in {sandbox_type.value} sandbox",
            severity=AuditSeverity.INFO if result.success else AuditSeverity.WARNING,
            metadata={
                "request_id": request_id,
                "phase": "execution",
                "success": result.success,
                "sandbox_type": sandbox_type.value,
                "execution_time_ms": metrics.execution_time_ms,
                "memory_used_mb": metrics.memory_used_mb,
                "tokens_in_summary": metrics.tokens_in_summary,
                "raw_output_tokens": metrics.raw_output_tokens,
                "pii_detected": pii_detected,
                "pii_tokenized": pii_tokenized,
                "error": error,
            },
        )

        report = self._anomalies.analyze(
            metrics.execution_time_ms,
            metrics.memory_used_mb,
            self._audit.get_recent_logs(50),
        )
        if report.detected:
            await self._audit.log_security(
                AuditSeverity.WARNING,
                f"{len(report.anomalies)} anomalies detected",
                {
                    "request_id": request_id,
                    "phase": "result",
                    "risk_level": report.risk_level.value,
                    "anomalies": [a.type for a in report.anomalies],
                },
            )
        return result

    def _finish(self, result: ExecutionResult) -> ExecutionResult:
        self._stats["succeeded" if result.success else "failed"] += 1
        return result

    # ─── Observability ───────────────────────────────────────

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "by_sandbox_type": dict(self._stats["by_sandbox_type"]),
            "pii_tokens": dict(self._stats["pii_tokens"]),
            "initialized": self._initialized,
            "tools": self._indexer.get_stats(),
            "sandboxes": self._sandbox.get_stats(),
            "audit": self._audit.get_stats(),
            "workspace": self._workspace.get_stats(),
            "cleanup_job": self._cleanup_job.get_stats(),
            "anomalies": self._anomalies.get_stats(),
        }
