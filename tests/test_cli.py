"""Tests for the mcpexec CLI.

Commands are invoked in-process through click's CliRunner, with all
paths pointed at a temporary directory through MCPEXEC_* variables.
"""

import json
import signal

import docker
import pytest
from click.testing import CliRunner
from docker.errors import DockerException

from mcpexec import __version__
from mcpexec.audit.logger import AuditLogger
from mcpexec.cli import cli


@pytest.fixture
def audit_path(tmp_path):
    return tmp_path / "logs" / "audit.log"


@pytest.fixture
def env(monkeypatch, tmp_path, tools_dir, audit_path):
    monkeypatch.setenv("MCPEXEC_TOOLS_DIR", str(tools_dir))
    monkeypatch.setenv("MCPEXEC_AUDIT_LOG", str(audit_path))
    monkeypatch.setenv("MCPEXEC_WORKSPACE_DIR", str(tmp_path / "workspaces"))
    monkeypatch.setenv("MCPEXEC_SANDBOX_MEMORY_MB", "512")
    monkeypatch.setenv("MCPEXEC_CLEANUP_ENABLED", "0")
    for name in ("MCPEXEC_SANDBOX_ENV", "MCPEXEC_LOG_LEVEL", "MCPEXEC_LOG_JSON"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def runner():
    return CliRunner()


class TestBasics:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        for command in ("run", "validate", "audit", "verify", "cleanup", "status"):
            assert command in result.output

    @pytest.mark.usefixtures("env")
    def test_status(self, runner, tools_dir):
        result = runner.invoke(cli, ["status"])
        assert result.exit_code == 0
        assert "mcpexec Status" in result.output
        assert str(tools_dir) in result.output
        assert "512" in result.output


@pytest.mark.usefixtures("env")
class TestValidate:
    def test_safe_file(self, runner, tmp_path):
        path = tmp_path / "safe.py"
        path.write_text("total = sum(range(10))\nprint(total)\n", encoding="utf-8")

        result = runner.invoke(cli, ["validate", str(path)])
        assert result.exit_code == 0
        assert "Secure: yes" in result.output
        assert "Risk score: 0" in result.output

    def test_eval_file(self, runner, tmp_path):
        path = tmp_path / "danger.ts"
        path.write_text("const value = eval(input);\n", encoding="utf-8")

        result = runner.invoke(cli, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Secure: no" in result.output
        assert "Risk score: 80" in result.output
        assert "1:15" in result.output

    def test_json_output(self, runner, tmp_path):
        path = tmp_path / "net.ts"
        path.write_text("await fetch(url);\n", encoding="utf-8")

        result = runner.invoke(cli, ["validate", str(path), "--json-output"])
        payload = json.loads(result.output)
        assert result.exit_code == 0
        assert payload["risk_score"] == 15
        assert payload["issues"][0]["type"] == "network_access"

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["validate", str(tmp_path / "nope.py")])
        assert result.exit_code == 2


@pytest.mark.usefixtures("env")
class TestAuditCommands:
    def test_empty_log(self, runner):
        result = runner.invoke(cli, ["audit"])
        assert result.exit_code == 0
        assert "No audit entries found." in result.output

    def test_lists_entries(self, runner, audit_path):
        audit = AuditLogger(audit_path)
        audit.append("execution", "info", "first run")
        audit.append("security", "warning", "risky wrapper")

        result = runner.invoke(cli, ["audit", "-n", "5"])
        assert "first run" in result.output
        assert "risky wrapper" in result.output

        filtered = runner.invoke(cli, ["audit", "--type", "security"])
        assert "risky wrapper" in filtered.output
        assert "first run" not in filtered.output

    def test_verify_ok(self, runner, audit_path):
        AuditLogger(audit_path).append("execution", "info", "ran")
        result = runner.invoke(cli, ["verify"])
        assert result.exit_code == 0
        assert "OK: All 1 entries verified, chain intact" in result.output

    def test_verify_broken(self, runner, audit_path):
        audit = AuditLogger(audit_path)
        audit.append("execution", "info", "ran")
        audit.append("execution", "info", "ran again")
        audit_path.write_text(audit_path.read_text(encoding="utf-8").replace("ran again", "never ran"), encoding="utf-8")

        result = runner.invoke(cli, ["verify"])
        assert result.exit_code == 1
        assert "BROKEN: Tampered entry at 1" in result.output


@pytest.mark.usefixtures("env", "exit_hooks")
class TestRun:
    def test_python_json_output(self, runner, audit_path):
        result = runner.invoke(cli, ["run", "read a file", "-l", "python", "--json-output"])
        payload = json.loads(result.output)

        assert result.exit_code == 0
        assert payload["success"] is True
        assert payload["sandbox_type"] == "process"
        assert payload["tools"][0] == "read_file"
        assert len(AuditLogger(audit_path)) >= 4

    def test_script_blocked(self, runner, tmp_path):
        script = tmp_path / "script.py"
        script.write_text("import subprocess\n", encoding="utf-8")

        result = runner.invoke(cli, ["run", "read a file", "-l", "python", "--script", str(script)])
        assert result.exit_code == 1
        assert "FAILED" in result.output
        assert "Security validation failed" in result.output

    def test_no_tools(self, runner):
        result = runner.invoke(cli, ["run", "quantum chromodynamics", "-l", "python"])
        assert result.exit_code == 1
        assert "No relevant tools found for intent" in result.output

    def test_installs_exit_hooks(self, runner, exit_hooks):
        result = runner.invoke(cli, ["run", "read a file", "-l", "python", "--json-output"])
        assert result.exit_code == 0
        assert len(exit_hooks["atexit"]) == 1
        assert signal.SIGTERM in exit_hooks["signals"]
        # The run already shut down cleanly, so the exit hook has nothing left to do
        assert exit_hooks["atexit"][0]() is None


@pytest.mark.usefixtures("env")
class TestCleanup:
    def test_without_docker(self, runner, monkeypatch, tmp_path):
        def unavailable():
            raise DockerException("socket not found")
        monkeypatch.setattr(docker, "from_env", unavailable)
        (tmp_path / "workspaces").mkdir()

        result = runner.invoke(cli, ["cleanup", "--max-age-hours", "0"])
        assert result.exit_code == 0
        assert "Containers removed: 0" in result.output
        assert "socket not found" in result.output
        assert "Workspace sessions removed: 0" in result.output
