"""
Compliance reporting over the audit trail.

Reads the full audit file (not just the in-memory window) and summarizes a
period: executions, security incidents, PII handling and sandbox escapes,
plus pass/fail flags for GDPR, SOC 2 and HIPAA style controls.

The flags are derived mechanically:
- gdpr: no execution reported PII that was left untokenized
- soc2: the hash chain verifies and every entry has the required fields
- hipaa: gdpr holds and no sandbox escape was recorded
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from mcpexec.audit.logger import AuditLogger
from mcpexec.core.models import AuditEventType, AuditLogEntry, AuditSeverity


class ComplianceReport(BaseModel):
    period_start: datetime | None = None
    period_end: datetime | None = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_entries: int = 0
    total_executions: int = 0
    failed_executions: int = 0
    blocked_executions: int = 0
    security_incidents: int = 0
    pii_data_processed: int = 0
    untokenized_pii: int = 0
    sandbox_escapes: int = 0
    chain_valid: bool = True
    chain_message: str = ""
    gdpr_compliant: bool = True
    soc2_compliant: bool = True
    hipaa_compliant: bool = True


class ComplianceReporter:
    """Builds ComplianceReports from an AuditLogger's file."""

    def __init__(self, audit_logger: AuditLogger) -> None:
        self._audit = audit_logger

    def generate_report(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ComplianceReport:
        report = ComplianceReport(period_start=start, period_end=end)
        chain_valid, chain_message = self._audit.verify_integrity()
        report.chain_valid = chain_valid
        report.chain_message = chain_message

        for entry in self._audit.iter_entries():
            if start is not None and entry.timestamp < start:
                continue
            if end is not None and entry.timestamp > end:
                continue
            report.total_entries += 1
            self._count(report, entry)

        report.gdpr_compliant = report.untokenized_pii == 0
        report.soc2_compliant = chain_valid
        report.hipaa_compliant = report.gdpr_compliant and report.sandbox_escapes == 0
        return report

    def _count(self, report: ComplianceReport, entry: AuditLogEntry) -> None:
        metadata = entry.metadata or {}
        phase = metadata.get("phase")

        if entry.type == AuditEventType.EXECUTION and phase == "execution":
            report.total_executions += 1
            if metadata.get("success") is False:
                report.failed_executions += 1
            if metadata.get("pii_tokenized"):
                report.pii_data_processed += 1
            if metadata.get("pii_detected") and not metadata.get("pii_tokenized"):
                report.untokenized_pii += 1

        if entry.type == AuditEventType.SECURITY:
            if metadata.get("blocked"):
                report.blocked_executions += 1
            if entry.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
                report.security_incidents += 1
            if metadata.get("sandbox_escape"):
                report.sandbox_escapes += 1
