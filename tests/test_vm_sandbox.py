"""Tests for the RestrictedPython vm sandbox backend."""

import asyncio
import json

import pytest

from mcpexec.codegen.generator import CodeGenerator
from mcpexec.core.models import Language, ResourceLimits, SandboxConfig, SandboxType
from mcpexec.sandbox.base import SandboxRegistry
from mcpexec.sandbox.vm import ALLOWED_MODULES, VMSandbox, build_globals


@pytest.fixture
def registry():
    return SandboxRegistry()


@pytest.fixture
def sandbox(fast_sandbox_config, registry):
    return VMSandbox(fast_sandbox_config, registry)


class TestGlobals:
    def test_dangerous_builtins_absent(self):
        builtins = build_globals()["__builtins__"]
        for name in ("open", "eval", "exec", "compile", "input", "globals"):
            assert name not in builtins

    def test_guards_present(self):
        namespace = build_globals()
        for name in ("_print_", "_getattr_", "_getitem_", "_getiter_", "_write_", "_inplacevar_"):
            assert name in namespace

    def test_guarded_import(self):
        importer = build_globals()["__builtins__"]["__import__"]
        assert importer("json").dumps([1]) == "[1]"
        with pytest.raises(ImportError):
            importer("os")
        with pytest.raises(ImportError):
            importer("json", level=1)
        assert "os" not in ALLOWED_MODULES


class TestExecution:
    @pytest.mark.asyncio
    async def test_print_collected(self, sandbox):
        result = await sandbox.execute("print('hi')\nprint(2 + 3)", Language.PYTHON)
        assert result.success is True
        assert result.summary == "hi\n5"
        assert result.sandbox_type == SandboxType.VM

    @pytest.mark.asyncio
    async def test_allowed_module(self, sandbox):
        result = await sandbox.execute("import math\nprint(math.sqrt(16))", Language.PYTHON)
        assert result.summary == "4.0"

    @pytest.mark.asyncio
    async def test_data_structures(self, sandbox):
        code = (
            "totals = {}\n"
            "for name, amount in [('a', 1), ('b', 2), ('a', 3)]:\n"
            "    totals[name] = totals.get(name, 0) + amount\n"
            "count = 0\n"
            "count += len(totals)\n"
            "print(sorted(totals.items()), count)\n"
        )
        result = await sandbox.execute(code, Language.PYTHON)
        assert result.success is True
        assert result.summary == "[('a', 4), ('b', 2)] 2"

    @pytest.mark.asyncio
    async def test_generated_wrapper_runs(self, sandbox, sample_tools):
        code = CodeGenerator().generate_python(sample_tools, script="search_web('sandboxes')").code
        result = await sandbox.execute(code, Language.PYTHON)
        assert result.success is True
        payload = json.loads(result.summary)
        assert payload["calls"] == [{"tool": "search_web", "params": {"query": "sandboxes"}}]


class TestIsolation:
    @pytest.mark.asyncio
    async def test_os_import_blocked(self, sandbox):
        result = await sandbox.execute("import os\nprint(os.getcwd())", Language.PYTHON)
        assert result.success is False
        assert "ImportError" in result.error

    @pytest.mark.asyncio
    async def test_open_unavailable(self, sandbox):
        result = await sandbox.execute("print(open('/etc/passwd').read())", Language.PYTHON)
        assert result.success is False
        assert "NameError" in result.error

    @pytest.mark.asyncio
    async def test_underscore_names_rejected(self, sandbox):
        result = await sandbox.execute("mod = __import__('os')", Language.PYTHON)
        assert result.success is False
        assert "SyntaxError" in result.error

    @pytest.mark.asyncio
    async def test_eval_unavailable(self, sandbox):
        result = await sandbox.execute("print(eval('1 + 1'))", Language.PYTHON)
        assert result.success is False

    @pytest.mark.asyncio
    async def test_typescript_unsupported(self, sandbox, registry):
        result = await sandbox.execute("console.log(1);", Language.TYPESCRIPT)
        assert result.success is False
        assert result.error == "Backend 'vm' does not support language 'typescript'"
        assert len(registry) == 0


class TestLimits:
    @pytest.mark.asyncio
    async def test_timeout(self, sandbox, registry):
        result = await sandbox.execute("while True:\n    pass", Language.PYTHON, timeout_ms=500)
        assert result.success is False
        assert result.error == "Execution timed out after 500ms"
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_memory_limit(self, registry):
        config = SandboxConfig(resource_limits=ResourceLimits(memory_mb=64, timeout_ms=10000))
        result = await VMSandbox(config, registry).execute(
            "blob = 'a' * (1024 * 1024 * 1024)\nprint(len(blob))", Language.PYTHON,
        )
        assert result.success is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["print('ok')", "raise ValueError('x')", "def (", "import socket"])
    async def test_registry_restored(self, sandbox, registry, code):
        await sandbox.execute(code, Language.PYTHON)
        assert len(registry) == 0


class TestRegistryBookkeeping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code,timeout_ms",
        [
            ("print('ok')", None),
            ("raise ValueError('nope')", None),
            ("this is not python", None),
            ("while True:\n    pass", 300),
        ],
    )
    async def test_count_restored(self, sandbox, registry, code, timeout_ms):
        before = len(registry)
        await sandbox.execute(code, Language.PYTHON, timeout_ms=timeout_ms)
        assert len(registry) == before == 0

    @pytest.mark.asyncio
    async def test_count_during_run(self, sandbox, registry):
        task = asyncio.create_task(sandbox.execute("while True:\n    pass", Language.PYTHON, timeout_ms=1000))
        for _ in range(50):
            if len(registry):
                break
            await asyncio.sleep(0.01)
        assert len(registry) == 1
        await task
        assert len(registry) == 0

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_stress(self, sandbox, registry):
        for i in range(100):
            code = "print('ok')" if i % 2 == 0 else "raise ValueError('nope')"
            await sandbox.execute(code, Language.PYTHON)
        assert len(registry) == 0

