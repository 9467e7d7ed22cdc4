"""Tests for mcpexec wrapper generation."""

import ast
import math

import pytest

from mcpexec.codegen.generator import CodeGenerator
from mcpexec.config import OutputSettings
from mcpexec.core.models import Language, Tool, ToolOutput, ToolParameter
from mcpexec.security.validator import CodeValidator


@pytest.fixture
def generator():
    return CodeGenerator()


# ─── TypeScript ────────────────────────────────────────────


class TestTypeScript:
    def test_function_per_tool(self, generator, sample_tools):
        wrapper = generator.generate(sample_tools, Language.TYPESCRIPT)
        assert wrapper.language == Language.TYPESCRIPT
        assert wrapper.tools == ["read_file", "write_file", "http_get", "search_web"]
        for fn in ("readFile", "writeFile", "httpGet", "searchWeb"):
            assert f"function {fn}(" in wrapper.code

    def test_optional_parameter_syntax(self, generator, sample_tools):
        code = generator.generate_typescript(sample_tools[:1]).code
        assert "function readFile(path: string, encoding?: string): Record<string, unknown>" in code
        assert "if (encoding !== undefined)" in code

    def test_required_parameters_first(self, generator):
        tool = Tool(
            name="read_file",
            parameters=(
                ToolParameter(name="encoding", required=False),
                ToolParameter(name="path"),
            ),
        )
        code = generator.generate_typescript([tool]).code
        assert "readFile(path: string, encoding?: string)" in code

    def test_schema_default(self, generator):
        tool = Tool(
            name="search",
            parameters=(
                ToolParameter(name="query"),
                ToolParameter(name="limit", type="integer", required=False, default=10),
            ),
        )
        assert "search(query: string, limit: number = 10)" in generator.generate_typescript([tool]).code

    def test_return_types(self, generator):
        tools = [
            Tool(name="names", output=ToolOutput(type="array", items="string")),
            Tool(name="rows", output=ToolOutput(type="array", items="object")),
            Tool(name="flag", output=ToolOutput(type="boolean")),
        ]
        code = generator.generate_typescript(tools).code
        assert "function names(): string[]" in code
        assert "function rows(): Array<Record<string, unknown>>" in code
        assert "function flag(): boolean" in code

    def test_reserved_identifiers_renamed(self, generator):
        tool = Tool(name="delete", parameters=(ToolParameter(name="class"), ToolParameter(name="params")))
        code = generator.generate_typescript([tool]).code
        assert "function deleteValue(classValue: string, paramsValue: string)" in code
        assert 'params["class"] = classValue;' in code

    def test_prints_call_summary(self, generator, sample_tools):
        code = generator.generate_typescript(sample_tools).code
        assert code.rstrip().splitlines()[-1].startswith("console.log(JSON.stringify({ tools:")

    def test_comment_terminator_escaped(self, generator):
        tool = Tool(name="odd", description="closes */ early")
        code = generator.generate_typescript([tool]).code
        assert "closes * / early" in code
        assert "closes */" not in code


# ─── Python ────────────────────────────────────────────────


class TestPython:
    def test_parses(self, generator, sample_tools):
        wrapper = generator.generate_python(sample_tools)
        ast.parse(wrapper.code)
        assert "def read_file(path: str, encoding: Optional[str] = None) -> Dict[str, Any]:" in wrapper.code

    def test_defaults_and_types(self, generator):
        tool = Tool(
            name="searchWeb",
            parameters=(
                ToolParameter(name="query"),
                ToolParameter(name="limit", type="integer", required=False, default=10),
                ToolParameter(name="safe", type="boolean", required=False, default=True),
            ),
            output=ToolOutput(type="array", items="object"),
        )
        code = generator.generate_python([tool]).code
        assert "def search_web(query: str, limit: int = 10, safe: bool = True) -> List[Dict[str, Any]]:" in code

    def test_reserved_identifiers_renamed(self, generator):
        tool = Tool(name="open", parameters=(ToolParameter(name="type"), ToolParameter(name="from")))
        code = generator.generate_python([tool]).code
        ast.parse(code)
        assert "def open_value(type_value: str, from_value: str)" in code
        assert "params['from'] = from_value" in code

    def test_duplicate_function_names(self, generator):
        tools = [Tool(name="read-file"), Tool(name="read_file")]
        code = generator.generate_python(tools).code
        assert "def read_file()" in code
        assert "def read_file2()" in code

    def test_quotes_in_description(self, generator):
        tool = Tool(name="quote", description='Say """hi""" \\ then\nstop')
        ast.parse(generator.generate_python([tool]).code)

    def test_script_appended_before_summary(self, generator, sample_tools):
        code = generator.generate_python(sample_tools, script="result = read_file('a.txt')").code
        assert code.index("result = read_file('a.txt')") < code.index("print(json.dumps(")
        ast.parse(code)

    def test_no_underscore_names(self, generator, sample_tools):
        tree = ast.parse(generator.generate_python(sample_tools).code)
        names = {node.id for node in ast.walk(tree) if isinstance(node, ast.Name)}
        names |= {node.name for node in ast.walk(tree) if isinstance(node, ast.FunctionDef)}
        assert not [n for n in names if n.startswith("_")]


# ─── Shared behaviour ──────────────────────────────────────


class TestTokensAndDependencies:
    def test_estimate_tokens(self, generator):
        assert generator.estimate_tokens("") == 0
        assert generator.estimate_tokens("abcd") == 1
        assert generator.estimate_tokens("abcde") == 2

    def test_chars_per_token_configurable(self):
        assert CodeGenerator(OutputSettings(chars_per_token=2)).estimate_tokens("abcde") == 3

    def test_wrapper_token_estimate(self, generator, sample_tools):
        wrapper = generator.generate_python(sample_tools)
        assert wrapper.estimated_tokens == math.ceil(len(wrapper.code) / 4)

    def test_typescript_dependencies(self, generator):
        code = (
            'import fs from "node:fs";\n'
            'import { helper } from "./local";\n'
            'import axios from "axios";\n'
            'import type { Foo } from "@scope/pkg/sub";\n'
            'import "lodash/fp";\n'
        )
        assert generator.extract_dependencies(code, Language.TYPESCRIPT) == {"axios", "@scope/pkg", "lodash"}

    def test_python_dependencies(self, generator):
        code = (
            "import os, sys\n"
            "import numpy as np\n"
            "from pandas.core import frame\n"
            "from . import sibling\n"
            "from .pkg import thing\n"
            "import requests.adapters\n"
        )
        assert generator.extract_dependencies(code, "python") == {"numpy", "pandas", "requests"}

    def test_generated_wrappers_have_no_dependencies(self, generator, sample_tools):
        assert generator.generate_python(sample_tools).dependencies == set()
        assert generator.generate_typescript(sample_tools).dependencies == set()

    @pytest.mark.parametrize("language", [Language.PYTHON, Language.TYPESCRIPT])
    def test_generated_wrapper_is_secure(self, generator, sample_tools, language):
        result = CodeValidator().validate(generator.generate(sample_tools, language).code)
        assert result.is_secure is True
        assert result.risk_score == 0
        assert result.issues == []

    def test_empty_tool_list(self, generator):
        wrapper = generator.generate([], Language.PYTHON)
        assert wrapper.tools == []
        ast.parse(wrapper.code)
