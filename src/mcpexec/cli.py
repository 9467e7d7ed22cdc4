"""
mcpexec CLI

Command-line interface for the execution engine.

Commands:
    mcpexec run "intent"         Execute an intent through the full pipeline
    mcpexec validate FILE        Risk-score a source file without running it
    mcpexec audit                Show recent audit entries
    mcpexec verify               Verify the audit hash chain
    mcpexec cleanup              Reclaim old sandbox containers and workspaces
    mcpexec status               Show engine status and configuration

Configuration comes from MCPEXEC_* environment variables, see
mcpexec.config.EngineConfig.from_env. MCPEXEC_LOG_LEVEL and MCPEXEC_LOG_JSON
reconfigure operational logging for the invocation.
"""

from __future__ import annotations

import asyncio
import importlib
import json
import os
import shutil
import sys
from pathlib import Path

import click

from mcpexec import __version__
from mcpexec.audit.logger import AuditLogger
from mcpexec.config import EngineConfig
from mcpexec.core.models import AuditEventType, ExecutionOptions, ExecutionResult, Language
from mcpexec.logging import configure_logging
from mcpexec.security.validator import CodeValidator


@click.group()
@click.version_option(version=__version__, prog_name="mcpexec")
def cli() -> None:
    """mcpexec: secure code execution for MCP tools"""
    level = os.environ.get("MCPEXEC_LOG_LEVEL")
    json_logs = os.environ.get("MCPEXEC_LOG_JSON", "").lower() in ("1", "true", "yes")
    if level or json_logs:
        configure_logging(level=level or "INFO", json_output=json_logs)


@cli.command()
@click.argument("intent")
@click.option(
    "--language", "-l",
    type=click.Choice([lang.value for lang in Language]),
    default=Language.TYPESCRIPT.value,
    show_default=True,
    help="Wrapper language",
)
@click.option("--tools-dir", type=click.Path(file_okay=False, path_type=Path), help="Tool schema directory")
@click.option("--max-tools", type=click.IntRange(1, 50), help="Tools selected for the wrapper")
@click.option("--timeout-ms", type=click.IntRange(100, 300000), help="Sandbox wall-clock timeout")
@click.option("--script", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Code appended to the generated wrapper")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def run(
    intent: str,
    language: str,
    tools_dir: Path | None,
    max_tools: int | None,
    timeout_ms: int | None,
    script: Path | None,
    json_output: bool,
) -> None:
    """Execute an intent and print the summarized result."""
    config = EngineConfig.from_env()
    if tools_dir is not None:
        config.tools_dir = tools_dir
    # One-shot runs leave reclamation to `mcpexec cleanup`
    config.cleanup_job.enabled = False
    config.install_exit_hooks = True

    options = ExecutionOptions(
        max_tools=max_tools or config.max_tools,
        timeout_ms=timeout_ms,
        script=script.read_text(encoding="utf-8") if script else None,
    )
    result = asyncio.run(_run_pipeline(config, intent, language, options))

    if json_output:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        _print_result(intent, result)
    if not result.success:
        sys.exit(1)


async def _run_pipeline(
    config: EngineConfig,
    intent: str,
    language: str,
    options: ExecutionOptions,
) -> ExecutionResult:
    from mcpexec.orchestrator import ExecutionOrchestrator

    async with ExecutionOrchestrator(config) as orchestrator:
        return await orchestrator.execute(intent, language, options)


def _print_result(intent: str, result: ExecutionResult) -> None:
    _print_header("mcpexec Pipeline")
    print(f"  Intent: {intent}")
    print(f"  Request: {result.request_id}")
    print(f"  Tools: {', '.join(result.tools) or '-'}")
    if result.risk_score is not None:
        print(f"  Risk score: {result.risk_score}")
    if result.sandbox_type is not None:
        print(f"  Sandbox: {result.sandbox_type.value}")
    print()

    _print_header("Result")
    print(f"  Status: {'SUCCESS' if result.success else 'FAILED'}")
    metrics = result.metrics
    print(f"  Time: {metrics.execution_time_ms:.0f}ms  Memory: {metrics.memory_used_mb:.1f}MB")
    print(f"  Tokens: {metrics.tokens_in_summary} in summary ({metrics.raw_output_tokens} raw)")
    if result.pii_tokenized:
        print("  PII: tokenized")
    for issue in result.issues:
        print(f"  [{issue.severity.value:8s}] {issue.location:8s} {issue.message}")
    print()
    print(result.summary if result.success else f"  Error: {result.error}")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json-output", is_flag=True, help="Output as JSON")
def validate(file: Path, json_output: bool) -> None:
    """Risk-score a source file without running it."""
    result = CodeValidator(EngineConfig.from_env().validator).validate(file.read_text(encoding="utf-8"))

    if json_output:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        _print_header(f"Validation: {file.name}")
        print(f"  Secure: {'yes' if result.is_secure else 'no'}")
        print(f"  Risk score: {result.risk_score}")
        print(f"  Requires approval: {'yes' if result.requires_approval else 'no'}")
        if result.issues:
            print()
        for issue in result.issues:
            print(f"  [{issue.severity.value:8s}] {issue.location:8s} {issue.message}  ({issue.snippet})")
    if not result.is_secure:
        sys.exit(1)


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, type=click.IntRange(1), help="Entries to show")
@click.option("--type", "event_type", type=click.Choice([t.value for t in AuditEventType]),
              help="Only entries of this type")
def audit(limit: int, event_type: str | None) -> None:
    """Show recent audit entries."""
    logger = AuditLogger(EngineConfig.from_env().audit_log_path)
    entries = logger.get_logs_by_type(event_type) if event_type else logger.get_recent_logs(limit)
    entries = entries[-limit:]

    _print_header(f"Audit Trail: {logger.get_log_file_path()}")
    if not entries:
        print("  No audit entries found.")
        return
    for entry in entries:
        print(
            f"  #{entry.sequence:4d} {entry.timestamp:%Y-%m-%d %H:%M:%S} "
            f"{entry.type.value:10s} [{entry.severity.value:8s}] {entry.message[:60]}  [{entry.hash[:12]}]"
        )


@cli.command()
def verify() -> None:
    """Verify the audit log hash chain."""
    logger = AuditLogger(EngineConfig.from_env().audit_log_path)
    _print_header("Audit Chain Verification")
    ok, message = logger.verify_integrity()
    print(f"  Log: {logger.get_log_file_path()}")
    print(f"  {'OK' if ok else 'BROKEN'}: {message}")
    if not ok:
        sys.exit(1)


@cli.command()
@click.option("--max-age-hours", default=1.0, show_default=True, type=click.FloatRange(0), help="Minimum age to reclaim")
def cleanup(max_age_hours: float) -> None:
    """Reclaim old sandbox containers and workspace sessions."""
    from mcpexec.sandbox.cleanup_job import ContainerCleanupJob
    from mcpexec.workspace.manager import WorkspaceManager

    config = EngineConfig.from_env()
    settings = config.cleanup_job.model_copy(update={"max_age_seconds": max_age_hours * 3600})

    _print_header("Sandbox Cleanup")
    report = asyncio.run(ContainerCleanupJob(settings=settings).run_once())
    print(f"  Containers checked: {report.checked}")
    print(f"  Containers removed: {len(report.removed)}")
    for error in report.errors:
        print(f"  Error: {error}")

    purged = asyncio.run(WorkspaceManager(config.workspace_dir).cleanup_old_sessions(int(max_age_hours * 3600 * 1000)))
    print(f"  Workspace sessions removed: {purged}")


@cli.command()
def status() -> None:
    """Show engine status and configuration."""
    config = EngineConfig.from_env()
    _print_header("mcpexec Status")
    print(f"  Version: {__version__}")
    print(f"  Python: {sys.version.split()[0]}")

    deps = {
        "pydantic": "Models",
        "jinja2": "Code generation",
        "RestrictedPython": "VM sandbox",
        "psutil": "Resource limits",
        "docker": "Container sandbox",
        "click": "CLI",
    }
    print("\n  Dependencies:")
    for pkg, label in deps.items():
        try:
            mod = importlib.import_module(pkg)
            version = getattr(mod, "__version__", "installed")
            print(f"    {label:24s} {pkg:20s} {version}")
        except ImportError:
            print(f"    {label:24s} {pkg:20s} NOT INSTALLED")

    print("\n  Runtimes:")
    for binary in ("node", "tsx", "ts-node"):
        print(f"    {binary:20s} {shutil.which(binary) or 'NOT FOUND'}")

    print("\n  Configuration:")
    limits = config.sandbox.resource_limits
    print(f"    {'tools_dir':30s} {config.tools_dir}")
    print(f"    {'audit_log':30s} {config.audit_log_path}")
    print(f"    {'workspace_dir':30s} {config.workspace_dir}")
    print(f"    {'max_tools':30s} {config.max_tools}")
    print(f"    {'memory_mb':30s} {limits.memory_mb}")
    print(f"    {'timeout_ms':30s} {limits.timeout_ms}")
    print(f"    {'allowed_env_vars':30s} {', '.join(config.sandbox.allowed_env_vars) or '-'}")


def _print_header(title: str) -> None:
    print(f"\n  {'=' * 60}")
    print(f"  {title}")
    print(f"  {'=' * 60}\n")


if __name__ == "__main__":
    cli()
