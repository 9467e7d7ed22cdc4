"""
Container sandbox backend.

Each execution gets a brand-new, labeled container:

    pull image (if missing) -> create (retried) -> inject code via put_archive
    -> start -> wait with timeout -> collect logs -> force-remove (finally)

Hardening: no network unless the policy allows egress, all capabilities
dropped, no-new-privileges, pids limit, memory and nano-cpu limits, and an
unprivileged user. Every container carries the mcpexec.sandbox=true label
so the cleanup job can find orphans.

All docker SDK calls are blocking and run via asyncio.to_thread. The client
is injectable; by default it is created lazily with docker.from_env().
"""

from __future__ import annotations

import asyncio
import io
import os
import tarfile
import threading
import time
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from mcpexec.config import ContainerSettings, OutputSettings
from mcpexec.core.models import Language, ResourceKind, SandboxConfig, SandboxType, TrackedSandbox
from mcpexec.exceptions import InfrastructureError, SandboxTimeoutError
from mcpexec.logging import get_logger
from mcpexec.sandbox.base import PROTECTED_ENV_VARS, SandboxBackend, SandboxRegistry, SandboxRun
from mcpexec.sandbox.limiter import ResourceLimiter

logger = get_logger("mcpexec.sandbox.container")

CODE_DIR = "/tmp/sandbox"
SCRIPT_NAMES = {Language.PYTHON: "main.py", Language.TYPESCRIPT: "main.ts"}
COMMANDS = {
    Language.PYTHON: ["python", "-I", "-B", f"{CODE_DIR}/main.py"],
    Language.TYPESCRIPT: ["node", "--experimental-strip-types", "--no-warnings", f"{CODE_DIR}/main.ts"],
}
RETRY_DELAY = 0.2


class ContainerSandbox(SandboxBackend):
    """Docker container per execution."""

    sandbox_type = SandboxType.CONTAINER

    def __init__(
        self,
        config: SandboxConfig | None = None,
        registry: SandboxRegistry | None = None,
        output: OutputSettings | None = None,
        settings: ContainerSettings | None = None,
        client: Any = None,
    ) -> None:
        super().__init__(config, registry, output)
        self.settings = settings or ContainerSettings()
        self._client = client
        self._client_lock = threading.Lock()
        self._containers_lock = threading.Lock()
        self._containers: dict[str, Any] = {}

    @property
    def active_containers(self) -> list[str]:
        with self._containers_lock:
            return list(self._containers)

    def _get_client(self) -> Any:
        with self._client_lock:
            if self._client is None:
                try:
                    self._client = docker.from_env()
                except DockerException as e:
                    raise InfrastructureError("container", f"Docker is not available: {e}") from e
            return self._client

    async def _run(
        self,
        sandbox: TrackedSandbox,
        code: str,
        language: Language,
        limiter: ResourceLimiter,
    ) -> SandboxRun:
        client = await asyncio.to_thread(self._get_client)
        image = self.settings.images[language]
        if self.settings.pull_images:
            await asyncio.to_thread(self._ensure_image, client, image)

        container = await self._create(client, sandbox, image, language, limiter)
        extra = {"sandbox_id": sandbox.id, "container_id": container.id[:12]}
        try:
            archive = build_archive(SCRIPT_NAMES[language], code)
            await asyncio.to_thread(container.put_archive, "/tmp", archive)
            await asyncio.to_thread(container.start)
            logger.debug("Container started", extra=extra)

            try:
                status = await asyncio.wait_for(
                    asyncio.to_thread(container.wait),
                    timeout=limiter.timeout_seconds,
                )
            except TimeoutError:
                await asyncio.to_thread(self._kill, container)
                raise SandboxTimeoutError("container", limiter.timeout_ms)

            await asyncio.to_thread(container.reload)
            state = (getattr(container, "attrs", None) or {}).get("State", {})
            if state.get("OOMKilled"):
                limiter.enforce_limit(
                    ResourceKind.MEMORY,
                    False,
                    f"Resource limit exceeded: memory (container OOM at {limiter.max_memory_mb}MB)",
                )

            stdout = await asyncio.to_thread(container.logs, stdout=True, stderr=False)
            stderr = await asyncio.to_thread(container.logs, stdout=False, stderr=True)
            return SandboxRun(
                stdout=_decode(stdout),
                stderr=_decode(stderr),
                exit_code=int((status or {}).get("StatusCode", -1)),
            )
        finally:
            await asyncio.to_thread(self._remove, container)

    # ─── Lifecycle steps ─────────────────────────────────────

    def _ensure_image(self, client: Any, image: str) -> None:
        try:
            client.images.get(image)
        except ImageNotFound:
            logger.info(f"Pulling sandbox image {image}")
            try:
                client.images.pull(image)
            except DockerException as e:
                logger.warning(f"Could not pull {image}: {e}")

    async def _create(
        self,
        client: Any,
        sandbox: TrackedSandbox,
        image: str,
        language: Language,
        limiter: ResourceLimiter,
    ) -> Any:
        limits = self.config.resource_limits
        kwargs = {
            "command": COMMANDS[language],
            "labels": dict(sandbox.labels),
            "detach": True,
            "working_dir": "/tmp",
            "environment": self._environment(),
            "mem_limit": f"{int(limiter.max_memory_mb)}m",
            "memswap_limit": f"{int(limiter.max_memory_mb)}m",
            "nano_cpus": int(limits.cpu * 1_000_000_000),
            "pids_limit": self.settings.pids_limit,
            "network_disabled": not self.config.network_policy.allows_egress,
            "cap_drop": ["ALL"],
            "security_opt": ["no-new-privileges"],
            "user": self.settings.user,
        }

        last_error: Exception | None = None
        for attempt in range(1, self.settings.max_start_attempts + 1):
            try:
                container = await asyncio.to_thread(client.containers.create, image, **kwargs)
            except (APIError, DockerException) as e:
                last_error = e
                logger.warning(
                    f"Container create attempt {attempt}/{self.settings.max_start_attempts} failed: {e}",
                    extra={"sandbox_id": sandbox.id},
                )
                await asyncio.sleep(RETRY_DELAY * attempt)
                continue

            sandbox.container_id = container.id
            with self._containers_lock:
                self._containers[container.id] = container
            return container

        raise InfrastructureError(
            "container",
            f"Could not create container after {self.settings.max_start_attempts} attempts: {last_error}",
        )

    def _environment(self) -> dict[str, str]:
        env = {"HOME": "/tmp", "TMPDIR": "/tmp", "NODE_ENV": "sandbox", "PYTHONIOENCODING": "utf-8"}
        for name in self.config.allowed_env_vars:
            if name not in PROTECTED_ENV_VARS and name in os.environ:
                env[name] = os.environ[name]
        return env

    def _kill(self, container: Any) -> None:
        try:
            container.kill()
        except (NotFound, APIError):
            pass

    def _remove(self, container: Any) -> None:
        try:
            container.remove(force=True, v=True)
        except NotFound:
            pass
        except DockerException as e:
            # The cleanup job reclaims it later by label
            logger.error(f"Failed to remove container: {e}", extra={"container_id": container.id[:12]})
        finally:
            with self._containers_lock:
                self._containers.pop(container.id, None)

    async def emergency_cleanup(self) -> int:
        """Force-remove every container this backend still tracks."""
        with self._containers_lock:
            containers = list(self._containers.values())
        for container in containers:
            await asyncio.to_thread(self._remove, container)
        if containers:
            logger.warning(f"Emergency cleanup removed {len(containers)} containers")
        return len(containers)


def build_archive(filename: str, code: str) -> bytes:
    """Tar archive holding sandbox/<filename>, readable by the sandbox user."""
    data = code.encode("utf-8")
    buffer = io.BytesIO()
    now = time.time()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        directory = tarfile.TarInfo("sandbox")
        directory.type = tarfile.DIRTYPE
        directory.mode = 0o755
        directory.mtime = now
        tar.addfile(directory)

        info = tarfile.TarInfo(f"sandbox/{filename}")
        info.size = len(data)
        info.mode = 0o644
        info.mtime = now
        tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _decode(raw: Any) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw or "")
