"""Tests for mcpexec static code validation."""

import asyncio

import pytest

from mcpexec.config import ValidatorSettings
from mcpexec.core.models import IssueSeverity, SandboxOperation
from mcpexec.security.validator import CodeValidator


@pytest.fixture
def validator():
    return CodeValidator()


class TestCriticalPatterns:
    @pytest.mark.parametrize(
        "code",
        [
            "const x = eval(input);",
            "exec('print(1)')",
            "const f = new Function('return 1');",
            "mod = __import__('os')",
            "code = compile(src, 'x', 'exec')",
            "const cp = require('child_process');",
            "os.system('ls')",
            "import subprocess",
            "vm.runInNewContext(src)",
        ],
    )
    def test_blocked(self, validator, code):
        result = validator.validate(code)
        assert result.is_secure is False
        assert result.requires_approval is True
        assert result.risk_score > 70
        assert result.critical_issues

    def test_eval_issue_details(self, validator):
        result = validator.validate("const a = 1;\nconst b = eval('2');\n")
        issue = result.issues[0]
        assert issue.type == "dynamic_eval"
        assert issue.severity == IssueSeverity.CRITICAL
        assert issue.line == 2
        assert issue.column == 11
        assert issue.snippet == "eval("
        assert issue.operation == SandboxOperation.DYNAMIC_CODE

    def test_method_named_eval_not_flagged(self, validator):
        assert validator.validate("model.eval()\nretrieval(x)").issues == []


class TestSuspiciousPatterns:
    def test_single_network_call(self, validator):
        result = validator.validate("const r = await fetch('https://example.com');")
        assert result.is_secure is True
        assert result.risk_score == 15
        assert result.requires_approval is False
        assert result.issues[0].operation == SandboxOperation.NETWORK

    def test_environment_read(self, validator):
        result = validator.validate("token = os.environ['HOME']")
        assert result.issues[0].type == "environment_access"
        assert result.issues[0].severity == IssueSeverity.MEDIUM

    def test_accumulates_to_threshold(self, validator):
        code = "\n".join(["fetch(a)", "fetch(b)", "fetch(c)", "fetch(d)", "fetch(e)"])
        result = validator.validate(code)
        assert result.risk_score == 75
        assert result.is_secure is False
        assert result.requires_approval is True
        assert not result.critical_issues

    def test_unbounded_loop(self, validator):
        assert validator.validate("while (true) {}").issues[0].type == "infinite_loop"
        assert validator.validate("while True:\n    pass").issues[0].type == "infinite_loop"


class TestScoring:
    def test_safe_code(self, validator):
        result = validator.validate("const total = [1, 2, 3].reduce((a, b) => a + b, 0);\nconsole.log(total);")
        assert result.is_secure is True
        assert result.risk_score == 0
        assert result.risk_score < 30
        assert result.issues == []

    def test_empty_code(self, validator):
        result = validator.validate("")
        assert result.is_secure is True
        assert result.risk_score == 0

    def test_score_clamped(self, validator):
        result = validator.validate("eval(a)\neval(b)\neval(c)")
        assert result.risk_score == 100
        assert len(result.issues) == 3

    def test_issues_ordered_by_position(self, validator):
        result = validator.validate("fetch(x)\nos.system('ls')\nprocess.env.X")
        assert [i.line for i in result.issues] == [1, 2, 3]

    def test_custom_weights(self):
        validator = CodeValidator(ValidatorSettings(suspicious_weight=40, safety_threshold=50))
        result = validator.validate("fetch(a)\nfetch(b)")
        assert result.risk_score == 80
        assert result.requires_approval is True

    def test_operations(self, validator):
        result = validator.validate("fetch(a)\nconst h = process.env.HOME;")
        assert result.operations == {SandboxOperation.NETWORK, SandboxOperation.ENVIRONMENT}


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_shared_instance_is_deterministic(self, validator):
        samples = [
            "eval(x)",
            "fetch(url)",
            "const a = 1;",
            "os.environ['X']\nopen('f')",
            "while (true) { fetch(a) }",
            "require('child_process').exec('ls')",
        ]
        expected = [validator.validate(code) for code in samples]
        codes = samples * 20

        results = await asyncio.gather(*(asyncio.to_thread(validator.validate, code) for code in codes))

        assert len(results) == 120
        for i, result in enumerate(results):
            assert result == expected[i % len(samples)]
