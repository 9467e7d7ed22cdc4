"""
mcpexec Audit Logger

Durable, append-only compliance trail written as JSON lines. Every entry
carries the compliance-minimum fields (timestamp, type, severity, message,
optional metadata) plus a SHA-256 hash chain:

    hash = sha256(entry fields + previous_hash + sequence)

so any edit, deletion or reordering in the file is detectable with
verify_integrity(). The chain head is recovered from the existing file at
startup, so the trail continues across restarts.

Each log call returns only after its line has been written, flushed and
fsync'ed. Appends are serialized by a lock and run in a worker thread, so
concurrent requests never interleave partial lines or block the event loop.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import threading
from collections import deque
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mcpexec.core.models import AuditEventType, AuditLogEntry, AuditSeverity
from mcpexec.exceptions import AuditWriteError
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.audit")

DEFAULT_LOG_PATH = Path("logs/mcp-audit.log")


def compute_hash(
    timestamp: str,
    type: str,
    severity: str,
    message: str,
    metadata: dict | None,
    previous_hash: str,
    sequence: int,
) -> str:
    content = json.dumps(
        {
            "timestamp": timestamp,
            "type": type,
            "severity": severity,
            "message": message,
            "metadata": metadata,
            "previous_hash": previous_hash,
            "sequence": sequence,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(content.encode()).hexdigest()


def entry_to_record(entry: AuditLogEntry) -> dict[str, Any]:
    record: dict[str, Any] = {
        "timestamp": entry.timestamp.isoformat(),
        "type": entry.type.value,
        "severity": entry.severity.value,
        "message": entry.message,
    }
    if entry.metadata is not None:
        record["metadata"] = entry.metadata
    record["sequence"] = entry.sequence
    record["previous_hash"] = entry.previous_hash
    record["hash"] = entry.hash
    return record


def record_to_entry(record: dict[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        timestamp=datetime.fromisoformat(record["timestamp"]),
        type=AuditEventType(record["type"]),
        severity=AuditSeverity(record["severity"]),
        message=record["message"],
        metadata=record.get("metadata"),
        sequence=record.get("sequence", 0),
        hash=record.get("hash", ""),
        previous_hash=record.get("previous_hash", ""),
    )


class AuditLogger:
    """Append-only, tamper-evident JSONL audit trail."""

    GENESIS_HASH = "0" * 64

    def __init__(self, log_path: str | Path = DEFAULT_LOG_PATH, max_memory_entries: int = 1000) -> None:
        self._path = Path(log_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._recent: deque[AuditLogEntry] = deque(maxlen=max_memory_entries)
        self._sequence = 0
        self._head = self.GENESIS_HASH
        self._recover()

    def _recover(self) -> None:
        if not self._path.exists():
            return
        for record in self._iter_records():
            try:
                entry = record_to_entry(record)
            except (KeyError, ValueError) as e:
                logger.warning(f"Unreadable audit record skipped during recovery: {e}")
                continue
            self._recent.append(entry)
            self._sequence = entry.sequence + 1
            self._head = entry.hash or self._head
        if self._sequence:
            logger.info(f"Resumed audit chain at sequence {self._sequence}")

    # ─── Writing ─────────────────────────────────────────────

    def append(
        self,
        type: AuditEventType | str,
        severity: AuditSeverity | str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Write one entry durably (blocking). Prefer log() from async code."""
        type = AuditEventType(type)
        severity = AuditSeverity(severity)
        if metadata is not None:
            # Store exactly what the file will hold
            metadata = json.loads(json.dumps(metadata, default=str))

        with self._lock:
            timestamp = datetime.now(timezone.utc)
            entry_hash = compute_hash(
                timestamp.isoformat(), type.value, severity.value, message,
                metadata, self._head, self._sequence,
            )
            entry = AuditLogEntry(
                timestamp=timestamp,
                type=type,
                severity=severity,
                message=message,
                metadata=metadata,
                sequence=self._sequence,
                hash=entry_hash,
                previous_hash=self._head,
            )
            line = json.dumps(entry_to_record(entry), default=str)
            try:
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise AuditWriteError(f"Failed to write audit entry to {self._path}: {e}") from e

            self._head = entry_hash
            self._sequence += 1
            self._recent.append(entry)
        return entry

    async def log(
        self,
        type: AuditEventType | str,
        severity: AuditSeverity | str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Write one entry; returns once it is on disk."""
        return await asyncio.to_thread(self.append, type, severity, message, metadata)

    async def log_discovery(
        self,
        query: str,
        tools_found: list[str],
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        return await self.log(
            AuditEventType.DISCOVERY,
            AuditSeverity.INFO,
            f"Tool discovery: {len(tools_found)} tools found",
            {"query": query, "tools_found": tools_found, **(metadata or {})},
        )

    async def log_execution(
        self,
        message: str,
        severity: AuditSeverity | str = AuditSeverity.INFO,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        return await self.log(AuditEventType.EXECUTION, severity, message, metadata)

    async def log_security(
        self,
        severity: AuditSeverity | str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        return await self.log(AuditEventType.SECURITY, severity, message, metadata)

    async def log_error(
        self,
        error: BaseException | str,
        context: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            details = {"error_type": type(error).__name__}
        else:
            message, details = error, {}
        return await self.log(AuditEventType.ERROR, AuditSeverity.ERROR, message, {**details, **(context or {})})

    # ─── Reading ─────────────────────────────────────────────

    def get_recent_logs(self, count: int = 100) -> list[AuditLogEntry]:
        """Most recent entries, oldest first."""
        if count <= 0:
            return []
        with self._lock:
            entries = list(self._recent)
        return entries[-count:]

    def get_logs_by_type(self, type: AuditEventType | str) -> list[AuditLogEntry]:
        type = AuditEventType(type)
        with self._lock:
            return [e for e in self._recent if e.type == type]

    def get_logs_by_severity(self, severity: AuditSeverity | str) -> list[AuditLogEntry]:
        severity = AuditSeverity(severity)
        with self._lock:
            return [e for e in self._recent if e.severity == severity]

    def get_log_file_path(self) -> Path:
        return self._path

    def iter_entries(self) -> Iterator[AuditLogEntry]:
        """Every entry in the file, including those written by earlier runs."""
        for record in self._iter_records():
            yield record_to_entry(record)

    def _iter_records(self) -> Iterator[dict[str, Any]]:
        if not self._path.exists():
            return
        with open(self._path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Malformed line in audit log")

    def verify_integrity(self) -> tuple[bool, str]:
        """Re-read the file and check every hash link.

        Returns (is_valid, message).
        """
        expected_prev = self.GENESIS_HASH
        count = 0
        with self._lock:
            if not self._path.exists():
                return True, "Empty log, no entries to verify"
            with open(self._path, encoding="utf-8") as f:
                for index, line in enumerate(f):
                    if not line.strip():
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        return False, f"Malformed entry at line {index + 1}"

                    missing = [k for k in ("timestamp", "type", "severity", "message") if k not in record]
                    if missing:
                        return False, f"Entry {count} is missing required fields: {', '.join(missing)}"

                    if record.get("previous_hash") != expected_prev:
                        return False, (
                            f"Chain broken at entry {count}: "
                            f"expected previous_hash={expected_prev[:16]}..., "
                            f"got {str(record.get('previous_hash'))[:16]}..."
                        )
                    if record.get("sequence") != count:
                        return False, f"Sequence gap at entry {count}: got {record.get('sequence')}"

                    recomputed = compute_hash(
                        record["timestamp"], record["type"], record["severity"], record["message"],
                        record.get("metadata"), record["previous_hash"], record["sequence"],
                    )
                    if recomputed != record.get("hash"):
                        return False, (
                            f"Tampered entry at {count}: "
                            f"stored hash={str(record.get('hash'))[:16]}..., "
                            f"recomputed={recomputed[:16]}..."
                        )
                    expected_prev = record["hash"]
                    count += 1

        if count == 0:
            return True, "Empty log, no entries to verify"
        return True, f"All {count} entries verified, chain intact"

    def get_stats(self) -> dict:
        with self._lock:
            entries = list(self._recent)
            total = self._sequence
            head = self._head
        by_type = {t.value: 0 for t in AuditEventType}
        by_severity = {s.value: 0 for s in AuditSeverity}
        for entry in entries:
            by_type[entry.type.value] += 1
            by_severity[entry.severity.value] += 1
        return {
            "total_entries": total,
            "entries_in_memory": len(entries),
            "by_type": by_type,
            "by_severity": by_severity,
            "log_file": str(self._path),
            "chain_head": head,
        }

    def __len__(self) -> int:
        return self._sequence
