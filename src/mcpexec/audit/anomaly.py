"""
Anomaly detection over execution metrics and recent audit entries.

Heuristics:
- resource spike: time or memory above spike_factor x the rolling average,
  once at least min_history samples exist
- critical security entries in the recent window
- error entries above error_threshold
- failed executions above failure_threshold
- execution time outside [min_time_ms, max_time_ms]
"""

from __future__ import annotations

from collections import deque

from pydantic import BaseModel, Field

from mcpexec.core.models import AuditEventType, AuditLogEntry, AuditSeverity

_RISK_ORDER = [AuditSeverity.INFO, AuditSeverity.WARNING, AuditSeverity.ERROR, AuditSeverity.CRITICAL]


class Anomaly(BaseModel):
    type: str
    severity: AuditSeverity
    description: str
    metadata: dict = Field(default_factory=dict)


class AnomalyReport(BaseModel):
    anomalies: list[Anomaly] = Field(default_factory=list)
    risk_level: AuditSeverity = AuditSeverity.INFO

    @property
    def detected(self) -> bool:
        return bool(self.anomalies)


class AnomalyDetector:
    def __init__(
        self,
        history_size: int = 100,
        spike_factor: float = 3.0,
        min_history: int = 10,
        error_threshold: int = 5,
        failure_threshold: int = 3,
        min_time_ms: float = 10.0,
        max_time_ms: float = 60000.0,
    ) -> None:
        self._times: deque[float] = deque(maxlen=history_size)
        self._memory: deque[float] = deque(maxlen=history_size)
        self.spike_factor = spike_factor
        self.min_history = min_history
        self.error_threshold = error_threshold
        self.failure_threshold = failure_threshold
        self.min_time_ms = min_time_ms
        self.max_time_ms = max_time_ms
        self._detected = 0

    def analyze(
        self,
        execution_time_ms: float,
        memory_mb: float,
        recent_logs: list[AuditLogEntry] | None = None,
    ) -> AnomalyReport:
        """Check one execution against history, then add it to the history."""
        anomalies: list[Anomaly] = []
        anomalies.extend(self._spikes(execution_time_ms, memory_mb))
        anomalies.extend(self._log_patterns(recent_logs or []))

        if execution_time_ms < self.min_time_ms or execution_time_ms > self.max_time_ms:
            anomalies.append(Anomaly(
                type="unusual_timing",
                severity=AuditSeverity.WARNING,
                description=f"Execution took {execution_time_ms:.0f}ms",
                metadata={"execution_time_ms": execution_time_ms},
            ))

        self._times.append(execution_time_ms)
        self._memory.append(memory_mb)
        self._detected += len(anomalies)

        risk = AuditSeverity.INFO
        for anomaly in anomalies:
            if _RISK_ORDER.index(anomaly.severity) > _RISK_ORDER.index(risk):
                risk = anomaly.severity
        return AnomalyReport(anomalies=anomalies, risk_level=risk)

    def _spikes(self, execution_time_ms: float, memory_mb: float) -> list[Anomaly]:
        if len(self._times) < self.min_history:
            return []
        found = []
        for name, value, history in (
            ("execution_time_ms", execution_time_ms, self._times),
            ("memory_mb", memory_mb, self._memory),
        ):
            average = sum(history) / len(history)
            if average > 0 and value > average * self.spike_factor:
                found.append(Anomaly(
                    type="resource_spike",
                    severity=AuditSeverity.WARNING,
                    description=f"{name} {value:.1f} is over {self.spike_factor:g}x the average {average:.1f}",
                    metadata={"metric": name, "value": value, "average": average},
                ))
        return found

    def _log_patterns(self, logs: list[AuditLogEntry]) -> list[Anomaly]:
        found = []
        critical = [e for e in logs if e.type == AuditEventType.SECURITY and e.severity == AuditSeverity.CRITICAL]
        if critical:
            found.append(Anomaly(
                type="security_pattern",
                severity=AuditSeverity.CRITICAL,
                description=f"{len(critical)} critical security events in recent activity",
                metadata={"count": len(critical)},
            ))

        errors = [e for e in logs if e.type == AuditEventType.ERROR]
        if len(errors) > self.error_threshold:
            found.append(Anomaly(
                type="error_rate",
                severity=AuditSeverity.ERROR,
                description=f"{len(errors)} errors in recent activity",
                metadata={"count": len(errors)},
            ))

        failures = [
            e for e in logs
            if e.type == AuditEventType.EXECUTION and (e.metadata or {}).get("success") is False
        ]
        if len(failures) > self.failure_threshold:
            found.append(Anomaly(
                type="repeated_failures",
                severity=AuditSeverity.WARNING,
                description=f"{len(failures)} failed executions in recent activity",
                metadata={"count": len(failures)},
            ))
        return found

    def get_stats(self) -> dict:
        return {
            "samples": len(self._times),
            "anomalies_detected": self._detected,
            "average_time_ms": sum(self._times) / len(self._times) if self._times else 0.0,
            "average_memory_mb": sum(self._memory) / len(self._memory) if self._memory else 0.0,
        }
