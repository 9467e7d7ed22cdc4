"""
mcpexec Container Cleanup Job

Periodic safety net for sandbox containers that outlived their request
(crash, kill -9, lost daemon connection). Each cycle:

1. lists containers carrying mcpexec.sandbox=true (label filter on the
   daemon, then re-checked locally)
2. keeps those older than max_age_seconds, oldest first
3. force-removes at most max_per_run of them

A cycle that is still running when the timer fires again is skipped, not
queued. Errors are logged and never end the job.
"""

from __future__ import annotations

import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Any

import docker
from docker.errors import DockerException, NotFound
from pydantic import BaseModel, Field

from mcpexec.config import CleanupJobSettings
from mcpexec.core.models import SANDBOX_LABEL, SANDBOX_LABEL_VALUE
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.sandbox.cleanup")

CREATED_LABEL = f"{SANDBOX_LABEL}.created"
_FRACTION = re.compile(r"\.(\d+)")


class CleanupReport(BaseModel):
    """Outcome of one cleanup cycle."""
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    skipped: bool = False
    checked: int = 0
    eligible: int = 0
    removed: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0


class ContainerCleanupJob:
    """Reclaims labeled sandbox containers older than a threshold."""

    def __init__(
        self,
        client: Any = None,
        settings: CleanupJobSettings | None = None,
    ) -> None:
        self.settings = settings or CleanupJobSettings()
        self._client = client
        self._ticker: asyncio.Task | None = None
        self._cycles: set[asyncio.Task] = set()
        self._in_progress = False
        self._stats = {
            "cycles": 0,
            "skipped_cycles": 0,
            "removed": 0,
            "errors": 0,
        }
        self._last_report: CleanupReport | None = None

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def start(self, interval_ms: int | None = None) -> None:
        """Run a cycle now and then every interval_ms. Must be called from a running loop."""
        if self.is_running:
            logger.warning("Container cleanup job already running, ignoring start()")
            return
        interval = (interval_ms or self.settings.interval_ms) / 1000
        self._ticker = asyncio.get_running_loop().create_task(self._tick_forever(interval))
        logger.info(f"Container cleanup job started (every {interval:.0f}s)")

    async def stop(self) -> None:
        """Stop the timer and cancel a cycle in flight."""
        tasks = list(self._cycles)
        if self._ticker is not None:
            tasks.append(self._ticker)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._ticker is not None:
            logger.info("Container cleanup job stopped")
        self._ticker = None
        self._cycles.clear()

    async def _tick_forever(self, interval: float) -> None:
        while True:
            # Fire and forget: a slow cycle must not delay the timer
            cycle = asyncio.create_task(self.run_once())
            self._cycles.add(cycle)
            cycle.add_done_callback(self._cycles.discard)
            await asyncio.sleep(interval)

    async def run_once(self) -> CleanupReport:
        """Run a single cycle. Never raises."""
        if self._in_progress:
            self._stats["skipped_cycles"] += 1
            logger.warning("Previous cleanup cycle still running, skipping this one")
            return CleanupReport(skipped=True)

        self._in_progress = True
        started = time.monotonic()
        report = CleanupReport()
        try:
            await self._cycle(report)
        except Exception as e:
            report.errors.append(f"{type(e).__name__}: {e}")
            logger.error(f"Cleanup cycle failed: {e}")
        finally:
            self._in_progress = False
            report.duration_ms = (time.monotonic() - started) * 1000
            self._stats["cycles"] += 1
            self._stats["removed"] += len(report.removed)
            self._stats["errors"] += len(report.errors)
            self._last_report = report
        return report

    async def _cycle(self, report: CleanupReport) -> None:
        client = await asyncio.to_thread(self._get_client)
        containers = await asyncio.to_thread(
            client.containers.list,
            all=True,
            filters={"label": f"{SANDBOX_LABEL}={SANDBOX_LABEL_VALUE}"},
        )
        report.checked = len(containers)

        now = datetime.now(timezone.utc)
        eligible: list[tuple[datetime, Any]] = []
        for container in containers:
            labels = _labels(container)
            # Never trust the daemon-side filter alone
            if labels.get(SANDBOX_LABEL) != SANDBOX_LABEL_VALUE:
                continue
            created = container_created_at(container)
            if created is None:
                continue
            if (now - created).total_seconds() > self.settings.max_age_seconds:
                eligible.append((created, container))

        eligible.sort(key=lambda item: item[0])
        report.eligible = len(eligible)

        for _, container in eligible[: self.settings.max_per_run]:
            try:
                await asyncio.to_thread(container.remove, force=True, v=True)
                report.removed.append(container.id)
                logger.info("Removed orphaned sandbox container", extra={"container_id": container.id[:12]})
            except NotFound:
                continue
            except DockerException as e:
                report.errors.append(f"{container.id[:12]}: {e}")
                logger.warning(f"Could not remove container: {e}", extra={"container_id": container.id[:12]})

        if len(eligible) > self.settings.max_per_run:
            logger.info(f"{len(eligible) - self.settings.max_per_run} old containers left for the next cycle")

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "running": self.is_running,
            "in_progress": self._in_progress,
            "last_run": self._last_report.started_at.isoformat() if self._last_report else None,
        }


def _labels(container: Any) -> dict[str, str]:
    labels = getattr(container, "labels", None)
    if labels is None:
        labels = (getattr(container, "attrs", None) or {}).get("Config", {}).get("Labels")
    return labels or {}


def container_created_at(container: Any) -> datetime | None:
    """Creation time from our label, else from the daemon's Created field."""
    raw = _labels(container).get(CREATED_LABEL)
    if raw is None:
        raw = (getattr(container, "attrs", None) or {}).get("Created")
    if not raw:
        return None
    return parse_timestamp(str(raw))


def parse_timestamp(raw: str) -> datetime | None:
    # Docker reports nanoseconds and a trailing Z
    text = raw.strip().replace("Z", "+00:00")
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
