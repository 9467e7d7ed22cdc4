"""Shared test fixtures for the mcpexec test suite."""

import json
import shutil
import signal
import subprocess
import threading
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from mcpexec.config import CleanupJobSettings, EngineConfig
from mcpexec.core.models import ResourceLimits, SandboxConfig, Tool, ToolParameter

TOOL_SCHEMAS = {
    "filesystem/read_file.json": {
        "name": "read_file",
        "description": "Read the contents of a file from the local filesystem",
        "parameters": [
            {"name": "path", "type": "string", "description": "File path"},
            {"name": "encoding", "type": "string", "required": False, "description": "Text encoding"},
        ],
        "returns": {"type": "string", "description": "File contents"},
    },
    "filesystem/write_file.json": {
        "name": "write_file",
        "description": "Write text content to a file",
        "parameters": [
            {"name": "path", "type": "string"},
            {"name": "content", "type": "string"},
        ],
        "returns": "boolean",
    },
    "filesystem/list_directory.json": {
        "name": "list_directory",
        "description": "List entries of a directory",
        "inputSchema": {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "recursive": {"type": "boolean", "default": False},
            },
            "required": ["path"],
        },
        "returns": {"type": "array", "items": {"type": "string"}},
    },
    "web/http_get.json": {
        "name": "http_get",
        "description": "Perform an HTTP GET request against a URL",
        "parameters": {"url": {"type": "string"}, "headers": {"type": "object", "optional": True}},
    },
    "web/search_web.json": {
        "name": "search_web",
        "description": "Search the web and return matching pages",
        "parameters": [
            {"name": "query", "type": "string"},
            {"name": "limit", "type": "integer", "default": 10, "required": False},
        ],
        "returns": {"type": "array", "items": {"type": "object"}},
    },
    "calendar.json": {
        "tools": [
            {
                "name": "createEvent",
                "description": "Create a calendar event",
                "category": "calendar",
                "parameters": [
                    {"name": "title", "type": "string"},
                    {"name": "startTime", "type": "string"},
                ],
            },
            {
                "name": "list_events",
                "description": "List upcoming calendar events",
                "category": "calendar",
            },
        ],
    },
}


@pytest.fixture
def tools_dir(tmp_path):
    root = tmp_path / "tools"
    for relative, schema in TOOL_SCHEMAS.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(schema), encoding="utf-8")
    return root


@pytest.fixture
def sample_tools():
    return [
        Tool(
            name="read_file",
            description="Read the contents of a file from the local filesystem",
            category="filesystem",
            parameters=(
                ToolParameter(name="path", type="string", description="File path"),
                ToolParameter(name="encoding", type="string", required=False),
            ),
        ),
        Tool(
            name="write_file",
            description="Write text content to a file",
            category="filesystem",
            parameters=(ToolParameter(name="path"), ToolParameter(name="content")),
        ),
        Tool(
            name="http_get",
            description="Perform an HTTP GET request against a URL",
            category="web",
            parameters=(ToolParameter(name="url"),),
        ),
        Tool(
            name="search_web",
            description="Search the web and return matching pages",
            category="web",
            parameters=(ToolParameter(name="query"),),
        ),
    ]


@pytest.fixture
def fast_sandbox_config():
    return SandboxConfig(resource_limits=ResourceLimits(memory_mb=512, timeout_ms=10000))


@pytest.fixture
def engine_config(tmp_path, tools_dir):
    return EngineConfig(
        tools_dir=tools_dir,
        audit_log_path=tmp_path / "logs" / "audit.log",
        workspace_dir=tmp_path / "workspaces",
        sandbox=SandboxConfig(resource_limits=ResourceLimits(memory_mb=512, timeout_ms=15000)),
        cleanup_job=CleanupJobSettings(enabled=False),
    )


@pytest.fixture
def exit_hooks(monkeypatch):
    """Capture atexit and SIGTERM registrations instead of touching the test process."""
    captured = {"atexit": [], "signals": {}}
    monkeypatch.setattr(
        "mcpexec.workspace.cleanup.atexit", SimpleNamespace(register=captured["atexit"].append)
    )
    monkeypatch.setattr(
        "mcpexec.workspace.cleanup.signal",
        SimpleNamespace(SIGTERM=signal.SIGTERM, signal=captured["signals"].__setitem__),
    )
    return captured


# ─── TypeScript runtime ────────────────────────────────────


def _typescript_runtime() -> bool:
    if shutil.which("tsx") or shutil.which("ts-node"):
        return True
    node = shutil.which("node")
    if not node:
        return False
    try:
        out = subprocess.run([node, "--version"], capture_output=True, text=True, timeout=10).stdout
        major, minor = (int(part) for part in out.strip().lstrip("v").split(".")[:2])
    except (OSError, ValueError, subprocess.SubprocessError):
        return False
    # Type stripping landed in Node 22.6
    return (major, minor) >= (22, 6)


HAS_TYPESCRIPT = _typescript_runtime()


@pytest.fixture
def typescript_runtime():
    if not HAS_TYPESCRIPT:
        pytest.skip("no TypeScript runtime available")


# ─── Fake docker client ────────────────────────────────────


class FakeContainer:
    """Records lifecycle calls the way docker.models.containers.Container is used."""

    def __init__(self, client, image, command=None, labels=None, created=None, **kwargs):
        self.client = client
        self.id = uuid.uuid4().hex * 2
        self.image = image
        self.command = command
        self.labels = dict(labels or {})
        self.kwargs = kwargs
        self.attrs = {
            "Created": (created or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z"),
            "State": {"OOMKilled": False},
        }
        self.archives = []
        self.started = False
        self.killed = False
        self.removed = False
        self.remove_calls = []
        self.exit_code = 0
        self.stdout = b""
        self.stderr = b""
        self.block = False
        self.remove_error = None
        self._done = threading.Event()

    def put_archive(self, path, data):
        self.archives.append((path, data))
        return True

    def start(self):
        self.started = True

    def wait(self):
        if self.block:
            self._done.wait(timeout=10)
        return {"StatusCode": 137 if self.killed else self.exit_code}

    def kill(self):
        self.killed = True
        self._done.set()

    def reload(self):
        pass

    def logs(self, stdout=True, stderr=True):
        return self.stdout if stdout else self.stderr

    def remove(self, force=False, v=False):
        self.remove_calls.append({"force": force, "v": v})
        if self.remove_error is not None:
            raise self.remove_error
        if self.removed:
            raise NotFound("container already removed")
        self.removed = True
        self._done.set()


class FakeContainers:
    def __init__(self, client):
        self.client = client
        self.created = []
        self.existing = []
        self.create_failures = 0
        self.list_calls = []
        self.configure = None

    def create(self, image, command=None, labels=None, **kwargs):
        if self.create_failures:
            self.create_failures -= 1
            raise APIError("daemon busy")
        container = FakeContainer(self.client, image, command=command, labels=labels, **kwargs)
        if self.configure is not None:
            self.configure(container)
        self.created.append(container)
        return container

    def list(self, all=False, filters=None):
        self.list_calls.append({"all": all, "filters": filters})
        candidates = [c for c in self.existing + self.created if not c.removed]
        wanted = (filters or {}).get("label")
        if wanted is None:
            return candidates
        key, _, value = wanted.partition("=")
        return [c for c in candidates if c.labels.get(key) == value]

    def add(self, labels=None, age=timedelta(hours=2)):
        container = FakeContainer(self.client, "alpine", labels=labels, created=datetime.now(timezone.utc) - age)
        self.existing.append(container)
        return container


class FakeImages:
    def __init__(self):
        self.available = set()
        self.pulled = []

    def get(self, name):
        if name not in self.available:
            raise ImageNotFound(f"no such image: {name}")
        return name

    def pull(self, name):
        self.pulled.append(name)
        self.available.add(name)
        return name


class FakeDockerClient:
    def __init__(self):
        self.containers = FakeContainers(self)
        self.images = FakeImages()


@pytest.fixture
def docker_client():
    return FakeDockerClient()
