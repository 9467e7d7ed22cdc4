"""
Wrapper synthesis.

Each selected tool becomes one function in the target language. Required
parameters are declared before optional ones, optional parameters use the
language's native form (``name?: T`` / ``name: Optional[T] = None``) or
their schema default, and the tool's output schema becomes the declared
return type.

The generated module records every tool call in a call list and prints one
JSON line ``{"tools": [...], "calls": [...]}`` when it finishes. Python
wrappers stay inside the subset accepted by the VM backend: no
underscore-prefixed names and printing only at module level.
"""

from __future__ import annotations

import json
import keyword
import math
import re
import sys
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from mcpexec.config import OutputSettings
from mcpexec.core.models import GeneratedWrapper, Language, Tool, ToolParameter
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.codegen")

TEMPLATE_DIR = Path(__file__).parent / "templates"

TEMPLATES = {
    Language.TYPESCRIPT: "wrapper.ts.j2",
    Language.PYTHON: "wrapper.py.j2",
}

TS_TYPES = {
    "string": "string",
    "number": "number",
    "integer": "number",
    "float": "number",
    "boolean": "boolean",
    "object": "Record<string, unknown>",
    "null": "null",
    "void": "void",
    "any": "unknown",
}

PY_TYPES = {
    "string": "str",
    "number": "float",
    "integer": "int",
    "float": "float",
    "boolean": "bool",
    "object": "Dict[str, Any]",
    "null": "None",
    "void": "None",
    "any": "Any",
}

# Names the generated module defines itself, or that would read as dangerous calls
PY_RESERVED = frozenset({
    "call_tool", "params", "json", "print", "eval", "exec", "compile", "open",
    "input", "type", "id", "list", "dict", "set", "str", "int", "float", "bool",
    "Any", "Dict", "List", "Optional", "TOOL_CALLS",
})

TS_RESERVED = frozenset({
    "break", "case", "catch", "class", "const", "continue", "debugger", "default",
    "delete", "do", "else", "enum", "export", "extends", "false", "finally", "for",
    "function", "if", "import", "in", "instanceof", "new", "null", "return", "super",
    "switch", "this", "throw", "true", "try", "typeof", "var", "void", "while", "with",
    "let", "static", "yield", "await", "eval", "arguments", "require", "params",
    "callTool", "toolCalls", "console", "JSON", "Function",
})

_TS_IMPORT = re.compile(
    r"""^\s*import\s+(?:type\s+)?(?:[\w*{}\s,$]+?\s+from\s+)?["']([^"']+)["']""",
    re.MULTILINE,
)
_PY_IMPORT = re.compile(r"^\s*import\s+([\w.]+(?:\s*,\s*[\w.]+)*)", re.MULTILINE)
_PY_FROM_IMPORT = re.compile(r"^\s*from\s+(\.*[\w.]*)\s+import\s", re.MULTILINE)


class CodeGenerator:
    """Renders GeneratedWrappers from tool schemas with Jinja2 templates."""

    def __init__(
        self,
        output: OutputSettings | None = None,
        template_dir: str | Path | None = None,
    ) -> None:
        self._chars_per_token = (output or OutputSettings()).chars_per_token
        self._env = Environment(
            loader=FileSystemLoader(str(template_dir or TEMPLATE_DIR)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._env.filters["pystr"] = _py_literal
        self._env.filters["jsstr"] = _js_literal
        self._env.filters["pydoc"] = _py_docstring
        self._env.filters["tscomment"] = _ts_comment

    def generate(
        self,
        tools: list[Tool],
        language: Language | str,
        script: str | None = None,
    ) -> GeneratedWrapper:
        """Synthesize a wrapper exposing tools in the given language.

        Args:
            tools: Tools to expose, in the order they should appear.
            language: Target language.
            script: Optional caller code appended after the tool functions.
        """
        language = Language(language)
        if language == Language.TYPESCRIPT:
            rendered = [self._typescript_tool(t) for t in tools]
        else:
            rendered = [self._python_tool(t) for t in tools]
        _dedupe_functions(rendered)

        template = self._env.get_template(TEMPLATES[language])
        code = template.render(
            tools=rendered,
            tool_names=[t.name for t in tools],
            script=script.strip("\n") if script else None,
        )

        wrapper = GeneratedWrapper(
            language=language,
            code=code,
            estimated_tokens=self.estimate_tokens(code),
            dependencies=self.extract_dependencies(code, language),
            tools=[t.name for t in tools],
        )
        logger.debug(
            f"Generated {language.value} wrapper for {len(tools)} tools "
            f"(~{wrapper.estimated_tokens} tokens)",
            extra={"phase": "generation"},
        )
        return wrapper

    def generate_typescript(self, tools: list[Tool], script: str | None = None) -> GeneratedWrapper:
        return self.generate(tools, Language.TYPESCRIPT, script)

    def generate_python(self, tools: list[Tool], script: str | None = None) -> GeneratedWrapper:
        return self.generate(tools, Language.PYTHON, script)

    def estimate_tokens(self, code: str) -> int:
        """Approximate token count: one token per chars_per_token characters."""
        return math.ceil(len(code) / self._chars_per_token)

    def extract_dependencies(self, code: str, language: Language | str) -> set[str]:
        """External packages imported by the code.

        Relative imports, node builtins and Python standard-library modules
        are not dependencies.
        """
        language = Language(language)
        deps: set[str] = set()

        if language == Language.TYPESCRIPT:
            for spec in _TS_IMPORT.findall(code):
                if spec.startswith((".", "/", "node:")):
                    continue
                parts = spec.split("/")
                deps.add("/".join(parts[:2]) if spec.startswith("@") else parts[0])
            return deps

        modules: list[str] = []
        for group in _PY_IMPORT.findall(code):
            modules.extend(m.strip() for m in group.split(","))
        modules.extend(m for m in _PY_FROM_IMPORT.findall(code) if not m.startswith("."))
        for module in modules:
            top = module.split(".")[0]
            if top and top not in sys.stdlib_module_names:
                deps.add(top)
        return deps

    # ─── Per-language tool rendering ─────────────────────────

    def _typescript_tool(self, tool: Tool) -> dict[str, Any]:
        params = _ordered(tool.parameters)
        idents = _unique([_ts_ident(p.name) for p in params])
        signature = []
        for param, ident in zip(params, idents):
            ts_type = _ts_type(param.type)
            if param.required:
                signature.append(f"{ident}: {ts_type}")
            elif param.default is not None:
                signature.append(f"{ident}: {ts_type} = {_js_literal(param.default)}")
            else:
                signature.append(f"{ident}?: {ts_type}")

        return {
            "name": tool.name,
            "function": _ts_ident(_camel_case(tool.name)),
            "doc": tool.description or tool.name,
            "signature": ", ".join(signature),
            "return_type": _ts_type(tool.output.type, tool.output.items),
            "params": _param_views(params, idents),
        }

    def _python_tool(self, tool: Tool) -> dict[str, Any]:
        params = _ordered(tool.parameters)
        idents = _unique([_py_ident(p.name) for p in params])
        signature = []
        for param, ident in zip(params, idents):
            py_type = _py_type(param.type)
            if param.required:
                signature.append(f"{ident}: {py_type}")
            elif param.default is not None:
                signature.append(f"{ident}: {py_type} = {_py_literal(param.default)}")
            else:
                signature.append(f"{ident}: Optional[{py_type}] = None")

        return {
            "name": tool.name,
            "function": _py_ident(_snake_case(tool.name)),
            "doc": tool.description or tool.name,
            "signature": ", ".join(signature),
            "return_type": _py_type(tool.output.type, tool.output.items),
            "params": _param_views(params, idents),
        }


# ─── Helpers ─────────────────────────────────────────────────

def _ordered(parameters: tuple[ToolParameter, ...]) -> list[ToolParameter]:
    """Required parameters first, otherwise declaration order."""
    return [p for p in parameters if p.required] + [p for p in parameters if not p.required]


def _param_views(params: list[ToolParameter], idents: list[str]) -> list[dict[str, Any]]:
    return [
        {
            "name": p.name,
            "ident": ident,
            "required": p.required,
            "description": p.description or p.type,
        }
        for p, ident in zip(params, idents)
    ]


def _unique(names: list[str]) -> list[str]:
    seen: dict[str, int] = {}
    result = []
    for name in names:
        if name in seen:
            seen[name] += 1
            name = f"{name}{seen[name]}"
        else:
            seen[name] = 1
        result.append(name)
    return result


def _dedupe_functions(rendered: list[dict[str, Any]]) -> None:
    names = _unique([r["function"] for r in rendered])
    for view, name in zip(rendered, names):
        view["function"] = name


def _words(name: str) -> list[str]:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name)
    return [w for w in re.split(r"[^A-Za-z0-9]+", spaced) if w]


def _snake_case(name: str) -> str:
    return "_".join(w.lower() for w in _words(name)) or "tool"


def _camel_case(name: str) -> str:
    words = _words(name)
    if not words:
        return "tool"
    return words[0].lower() + "".join(w[:1].upper() + w[1:].lower() for w in words[1:])


def _py_ident(name: str) -> str:
    ident = re.sub(r"\W", "_", name).lstrip("_") or "value"
    if ident[0].isdigit():
        ident = f"arg_{ident}"
    if keyword.iskeyword(ident) or ident in PY_RESERVED:
        ident = f"{ident}_value"
    return ident


def _ts_ident(name: str) -> str:
    ident = re.sub(r"[^\w$]", "_", name) or "value"
    if ident[0].isdigit():
        ident = f"arg{ident}"
    if ident in TS_RESERVED:
        ident = f"{ident}Value"
    return ident


def _ts_type(type_name: str, items: str | None = None) -> str:
    type_name = type_name.lower()
    if type_name == "array":
        inner = _ts_type(items) if items else "unknown"
        return f"{inner}[]" if re.fullmatch(r"\w+", inner) else f"Array<{inner}>"
    return TS_TYPES.get(type_name, "unknown")


def _py_type(type_name: str, items: str | None = None) -> str:
    type_name = type_name.lower()
    if type_name == "array":
        return f"List[{_py_type(items) if items else 'Any'}]"
    return PY_TYPES.get(type_name, "Any")


def _py_literal(value: Any) -> str:
    return repr(value)


def _js_literal(value: Any) -> str:
    return json.dumps(value)


def _py_docstring(text: str) -> str:
    return str(text).replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")


def _ts_comment(text: str) -> str:
    return str(text).replace("*/", "* /").replace("\n", " ")
