"""
mcpexec Code Validator

Static, pattern-based risk scoring for generated and caller-supplied code.

Two tiers of patterns:
- critical: dynamic evaluation and shell / process spawning. Each hit adds
  the critical weight and forces requires_approval.
- suspicious: network access, environment reads, filesystem writes,
  unbounded loops, dynamic imports. Each hit adds the suspicious weight.

All patterns are compiled once when the validator is built. validate() reads
nothing but its argument and the immutable pattern table, so one instance
can be shared by any number of concurrent callers.
"""

from __future__ import annotations

import bisect
import re
from typing import NamedTuple

from mcpexec.config import ValidatorSettings
from mcpexec.core.models import IssueSeverity, SandboxOperation, SecurityIssue, ValidationResult


class SecurityPattern(NamedTuple):
    regex: re.Pattern[str]
    issue_type: str
    critical: bool
    operation: SandboxOperation | None
    message: str
    suggestion: str


def _pattern(
    expression: str,
    issue_type: str,
    critical: bool,
    operation: SandboxOperation | None,
    message: str,
    suggestion: str = "",
) -> SecurityPattern:
    return SecurityPattern(re.compile(expression), issue_type, critical, operation, message, suggestion)


def build_patterns() -> tuple[SecurityPattern, ...]:
    dyn = SandboxOperation.DYNAMIC_CODE
    spawn = SandboxOperation.SPAWN
    net = SandboxOperation.NETWORK
    env = SandboxOperation.ENVIRONMENT
    fs = SandboxOperation.FILESYSTEM

    return (
        # Critical: dynamic code evaluation
        _pattern(r"(?<![.\w])eval\s*\(", "dynamic_eval", True, dyn,
                 "eval() executes arbitrary code", "Parse data explicitly instead of evaluating it"),
        _pattern(r"(?<![.\w])exec\s*\(", "dynamic_exec", True, dyn,
                 "exec() executes arbitrary code", "Call the generated tool functions directly"),
        _pattern(r"(?<![.\w])(?:new\s+)?Function\s*\(", "function_constructor", True, dyn,
                 "Function constructor compiles code from strings", "Define functions statically"),
        _pattern(r"__import__\s*\(", "dynamic_import", True, dyn,
                 "__import__() loads modules dynamically", "Use static import statements"),
        _pattern(r"(?<![.\w])compile\s*\(", "dynamic_compile", True, dyn,
                 "compile() builds executable code objects"),
        _pattern(r"\bvm\.(?:runIn\w+|Script)\b", "vm_module", True, dyn,
                 "Node vm module evaluates code in a new context"),
        # Critical: shell / process execution
        _pattern(r"\bchild_process\b", "shell_exec", True, spawn,
                 "child_process can run shell commands", "Use a tool instead of spawning processes"),
        _pattern(r"\b(?:execSync|execFileSync|execFile)\s*\(", "shell_exec", True, spawn,
                 "Synchronous process execution"),
        _pattern(r"\bspawn(?:Sync)?\s*\(", "process_spawn", True, spawn,
                 "Spawns a child process"),
        _pattern(r"\bos\.(?:system|popen|fork|exec[lv]p?e?|spawn\w*)\s*\(", "shell_exec", True, spawn,
                 "os module process execution", "Use a tool instead of spawning processes"),
        _pattern(r"\bsubprocess\b|\bcreate_subprocess_(?:exec|shell)\b", "shell_exec", True, spawn,
                 "subprocess can run arbitrary commands", "Use a tool instead of spawning processes"),
        # Suspicious: network
        _pattern(r"(?<![.\w])fetch\s*\(", "network_access", False, net,
                 "Outbound HTTP request via fetch()", "Route network access through a tool"),
        _pattern(r"\bXMLHttpRequest\b", "network_access", False, net,
                 "Outbound HTTP request via XMLHttpRequest"),
        _pattern(r"\bWebSocket\b", "network_access", False, net,
                 "WebSocket connection"),
        _pattern(r"\b(?:https?|net|dgram|tls)\.(?:request|get|connect|createConnection|createSocket)\s*\(",
                 "network_access", False, net, "Node network module call"),
        _pattern(r"\brequests\.(?:get|post|put|patch|delete|head|options|request|Session)\b",
                 "network_access", False, net, "HTTP request via requests"),
        _pattern(r"\burllib\.request\b|\burlopen\s*\(", "network_access", False, net,
                 "HTTP request via urllib"),
        _pattern(r"\bhttp\.client\b", "network_access", False, net, "HTTP request via http.client"),
        _pattern(r"\bhttpx\.\w+|\baiohttp\b", "network_access", False, net, "HTTP client library"),
        _pattern(r"\bsocket\.(?:socket|create_connection)\b", "network_access", False, net,
                 "Raw socket access"),
        # Suspicious: environment
        _pattern(r"\bprocess\.env\b", "environment_access", False, env,
                 "Reads host environment variables", "Pass values as tool parameters"),
        _pattern(r"\bos\.(?:environ|getenv)\b", "environment_access", False, env,
                 "Reads host environment variables", "Pass values as tool parameters"),
        # Suspicious: filesystem writes
        _pattern(r"\bfs\.(?:writeFile|appendFile|unlink|rm|rmdir|rename|createWriteStream)\w*\s*\(",
                 "filesystem_write", False, fs, "Modifies the filesystem"),
        _pattern(r"\bshutil\.(?:rmtree|move|copy\w*)\s*\(|\bos\.(?:remove|unlink|rmdir|rename)\s*\(",
                 "filesystem_write", False, fs, "Modifies the filesystem"),
        _pattern(r"(?<![.\w])open\s*\(", "filesystem_access", False, fs,
                 "Direct file access", "Use a filesystem tool"),
        # Suspicious: resource exhaustion
        _pattern(r"\bwhile\s*\(\s*(?:true|1)\s*\)|\bwhile\s+(?:True|1)\s*:|\bfor\s*\(\s*;\s*;\s*\)",
                 "infinite_loop", False, None, "Unbounded loop", "Bound the loop explicitly"),
        _pattern(r"\bsetInterval\s*\(", "timer", False, None, "Recurring timer keeps the sandbox alive"),
        # Suspicious: dynamic module loading
        _pattern(r"(?<![.\w])import\s*\(", "dynamic_import", False, dyn, "Dynamic import()"),
        _pattern(r"(?<![.\w])require\s*\(", "dynamic_require", False, None, "CommonJS require()"),
        _pattern(r"\bimportlib\b", "dynamic_import", False, dyn, "importlib loads modules dynamically"),
    )


class CodeValidator:
    """Scores code for risk. Pure and safe to share between concurrent requests."""

    def __init__(self, settings: ValidatorSettings | None = None) -> None:
        self._settings = settings or ValidatorSettings()
        self._patterns = build_patterns()

    @property
    def settings(self) -> ValidatorSettings:
        return self._settings

    def validate(self, code: str) -> ValidationResult:
        """Scan code and return its risk assessment.

        Issues are ordered by position in the source.
        """
        line_starts = _line_starts(code)
        found: list[tuple[int, int, SecurityIssue]] = []

        for order, pattern in enumerate(self._patterns):
            for match in pattern.regex.finditer(code):
                offset = match.start()
                line = bisect.bisect_right(line_starts, offset)
                column = offset - line_starts[line - 1] + 1
                issue = SecurityIssue(
                    type=pattern.issue_type,
                    severity=IssueSeverity.CRITICAL if pattern.critical else IssueSeverity.MEDIUM,
                    line=line,
                    column=column,
                    message=pattern.message,
                    snippet=match.group(0).strip(),
                    suggestion=pattern.suggestion,
                    operation=pattern.operation,
                )
                found.append((offset, order, issue))

        found.sort(key=lambda item: (item[0], item[1]))
        issues = [issue for _, _, issue in found]

        raw_score = sum(
            self._settings.critical_weight if i.severity == IssueSeverity.CRITICAL
            else self._settings.suspicious_weight
            for i in issues
        )
        risk_score = max(0, min(100, raw_score))
        has_critical = any(i.severity == IssueSeverity.CRITICAL for i in issues)
        threshold = self._settings.safety_threshold

        return ValidationResult(
            is_secure=not has_critical and risk_score < threshold,
            risk_score=risk_score,
            requires_approval=has_critical or risk_score >= threshold,
            issues=issues,
        )


def _line_starts(code: str) -> list[int]:
    starts = [0]
    for match in re.finditer(r"\n", code):
        starts.append(match.end())
    return starts
